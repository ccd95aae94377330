"""Process entrypoint: `uvicorn rcmpay.services.api.main:app`."""

from rcmpay.common.config import settings
from rcmpay.common.logging import configure_logging
from rcmpay.common.startup import log_startup_config
from rcmpay.common.tracing import enable_tracing
from rcmpay.services.api.app import create_app
from rcmpay.services.api.container import build_container

configure_logging()
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_URL",
        "REDIS_URL",
        "CACHE_BACKEND",
        "KAFKA_ENABLED",
        "KAFKA_BOOTSTRAP_SERVERS",
        "JWT_ISSUER",
        "JWT_AUDIENCE",
        "JWT_SECRET",
        "GATEWAY_TIMEOUT_SECONDS",
        "GATEWAY_MAX_ATTEMPTS",
    ],
)
container = build_container()
app = create_app(container)
if settings.tracing_enabled:
    enable_tracing(app, settings.service_name)

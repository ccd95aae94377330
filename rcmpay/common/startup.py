"""Startup-time helpers for safe config logging."""

import os

from rcmpay.common.logging import logger


SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN", "CREDENTIAL")


def safe_env(name: str) -> str:
    """Return env value with redaction for secret-like variable names."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(marker in name.upper() for marker in SECRET_MARKERS):
        return "<redacted>"
    if "://" in value and "@" in value:
        # DSNs carry credentials in the userinfo part.
        scheme, _, rest = value.partition("://")
        return f"{scheme}://<redacted>@{rest.rpartition('@')[2]}"
    return value


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    config = {"service": service_name}
    for key in keys:
        config[key] = safe_env(key)
    logger.info("startup_config=%s", config)

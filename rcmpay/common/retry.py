"""Bounded retry with exponential backoff for transient gateway failures."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from rcmpay.common.errors import GatewayTimeout, TransientGatewayError
from rcmpay.common.logging import logger
from rcmpay.common.metrics import retries_total

T = TypeVar("T")


async def call_with_timeout(fn: Callable[[], Awaitable[T]], timeout_seconds: float) -> T:
    """Run one gateway call under a caller-side timeout."""

    try:
        return await asyncio.wait_for(fn(), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise GatewayTimeout() from exc


async def retry_transient(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    backoff_base_seconds: float,
    timeout_seconds: float,
    service_name: str,
    dependency: str = "gateway",
) -> T:
    """Retry `fn` on transient gateway errors only.

    Permanent gateway errors propagate on the first attempt. When every attempt
    fails transiently, the last transient error is raised.
    """

    last_error: TransientGatewayError | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await call_with_timeout(fn, timeout_seconds)
        except TransientGatewayError as exc:
            last_error = exc
            if attempt == max_attempts:
                break
            retries_total.labels(service=service_name, dependency=dependency).inc()
            # Exponential backoff: base, 2*base, 4*base...
            backoff_seconds = backoff_base_seconds * (2 ** (attempt - 1))
            logger.warning(
                "transient gateway error kind=%s attempt=%s/%s backoff_s=%s",
                exc.kind,
                attempt,
                max_attempts,
                backoff_seconds,
            )
            await asyncio.sleep(backoff_seconds)
    assert last_error is not None
    raise last_error

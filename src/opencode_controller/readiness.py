"""Readiness probing for a freshly spawned OpenCode server."""

import asyncio
import logging
from typing import Optional

import httpx

from .errors import ReadinessTimeout

logger = logging.getLogger("opencode_controller.readiness")

HEALTH_PATH = "/session"
DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_INTERVAL = 1.0         # seconds between attempts
DEFAULT_REQUEST_TIMEOUT = 2.0  # per-attempt request timeout


async def wait_until_ready(
    port: int,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    interval: float = DEFAULT_INTERVAL,
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    http_client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """Poll the session listing until the server answers.

    Any status below 500 means the server is up and routing, even if the
    call itself is rejected.

    Args:
        port: Port the server was told to bind
        max_attempts: Number of requests before giving up
        interval: Delay after each failed attempt
        request_timeout: Timeout for a single request
        http_client: Client to probe with (a short-lived one is created if None)

    Returns:
        True once the server answered

    Raises:
        ReadinessTimeout: If no attempt got a qualifying response
    """
    url = f"http://127.0.0.1:{port}{HEALTH_PATH}"
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=request_timeout)

    try:
        for attempt in range(1, max_attempts + 1):
            try:
                response = await client.get(url, timeout=request_timeout)
                if response.status_code < 500:
                    logger.debug(
                        f"Port {port} answered {response.status_code} on attempt {attempt}"
                    )
                    return True
                logger.debug(f"Port {port} answered {response.status_code}, retrying")
            except httpx.HTTPError as e:
                logger.debug(f"Probe {attempt}/{max_attempts} on port {port} failed: {e!r}")

            await asyncio.sleep(interval)
    finally:
        if owns_client:
            await client.aclose()

    raise ReadinessTimeout(port, max_attempts)

"""HTTP health probing helpers for spawned serve processes."""

from __future__ import annotations

import asyncio
import logging

import httpx

from serveman.contracts import (
    HEALTH_PATH,
    PROBE_HOST,
    PROBE_TIMEOUT_SECONDS,
    READY_POLL_INTERVAL_SECONDS,
    READY_TIMEOUT_SECONDS,
)
from serveman.errors import ReadinessTimeoutError

logger = logging.getLogger("serveman.supervisor.readiness")


def build_health_url(port: int, *, host: str = PROBE_HOST, path: str = HEALTH_PATH) -> str:
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}{path}"


async def probe_health(
    port: int,
    *,
    host: str = PROBE_HOST,
    path: str = HEALTH_PATH,
    timeout_seconds: float = PROBE_TIMEOUT_SECONDS,
    client: httpx.AsyncClient | None = None,
) -> bool:
    """Return True when one GET against the health endpoint succeeds."""
    url = build_health_url(port, host=host, path=path)
    try:
        if client is not None:
            response = await client.get(url, timeout=timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds), trust_env=False) as owned:
                response = await owned.get(url)
    except httpx.HTTPError as exc:
        logger.debug("Health probe %s failed: %s", url, exc)
        return False
    return response.is_success


async def wait_for_ready(
    port: int,
    timeout_seconds: float = READY_TIMEOUT_SECONDS,
    *,
    host: str = PROBE_HOST,
    path: str = HEALTH_PATH,
    interval_seconds: float = READY_POLL_INTERVAL_SECONDS,
    probe_timeout_seconds: float = PROBE_TIMEOUT_SECONDS,
    client: httpx.AsyncClient | None = None,
) -> None:
    """
    Poll the health endpoint until it answers with a success status.

    Connection errors and per-probe timeouts count as "not ready yet"; only
    the overall deadline is fatal and raises ReadinessTimeoutError.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds
    attempts = 0
    owned_client = None
    if client is None:
        owned_client = httpx.AsyncClient(timeout=httpx.Timeout(probe_timeout_seconds), trust_env=False)
        client = owned_client
    try:
        while True:
            attempts += 1
            if await probe_health(
                port,
                host=host,
                path=path,
                timeout_seconds=probe_timeout_seconds,
                client=client,
            ):
                logger.info("Service on port %s ready after %d probe(s)", port, attempts)
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval_seconds, remaining))
    finally:
        if owned_client is not None:
            await owned_client.aclose()

    logger.warning(
        "Service on port %s not ready after %d probe(s) in %.1fs",
        port,
        attempts,
        timeout_seconds,
    )
    raise ReadinessTimeoutError(port, timeout_seconds)

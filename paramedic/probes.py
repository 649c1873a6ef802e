"""Ready-made async probes: HTTP(S) and TCP connect.

Each factory returns a coroutine function taking the two completion handles:

    server.register_test("API", http_probe("https://api.example.com/health"))
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from typing import Any

import httpx

from .health.engine import ProbeError

logger = logging.getLogger(__name__)

AsyncProbe = Callable[[Callable[..., None], Callable[..., None]], Coroutine[Any, Any, None]]


def http_probe(
    url: str,
    method: str = "GET",
    expected_status: int = 200,
    timeout_ms: int = 10_000,
    warn_after_ms: int | None = 3_000,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncProbe:
    """HTTP(S) probe: status code check, warns when the response is slow."""

    async def probe(done: Callable[..., None], warn: Callable[..., None]) -> None:
        t0 = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=timeout_ms / 1000, follow_redirects=True, transport=transport,
            ) as client:
                resp = await client.request(method, url)
        except httpx.TimeoutException:
            done(ProbeError(f"Connection timed out ({timeout_ms}ms)", detail={"url": url}))
            return
        except httpx.HTTPError as e:
            done(ProbeError(f"Connection error: {type(e).__name__}: {e}", detail={"url": url}))
            return

        latency = (time.perf_counter() - t0) * 1000
        if resp.status_code != expected_status:
            done(ProbeError(
                f"Expected {expected_status}, got {resp.status_code}",
                detail={"url": url, "status_code": resp.status_code},
            ))
        elif warn_after_ms is not None and latency > warn_after_ms:
            warn(ProbeError(
                f"Slow response: {latency:.0f}ms (warn > {warn_after_ms}ms)",
                detail={"url": url, "latency_ms": round(latency, 1)},
            ))
        else:
            done()

    probe.__name__ = f"http_probe[{url}]"
    return probe


def tcp_probe(hostname: str, port: int = 443, timeout_ms: int = 5_000) -> AsyncProbe:
    """Raw TCP port connectivity probe."""

    async def probe(done: Callable[..., None], warn: Callable[..., None]) -> None:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(hostname, port), timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            done(ProbeError(f"TCP connect to {hostname}:{port} timed out ({timeout_ms}ms)"))
            return
        except OSError as e:
            done(ProbeError(f"TCP connect failed: {type(e).__name__}: {e}"))
            return

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            logger.debug("Error closing probe connection to %s:%s", hostname, port)
        done()

    probe.__name__ = f"tcp_probe[{hostname}:{port}]"
    return probe

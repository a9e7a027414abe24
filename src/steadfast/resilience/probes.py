"""
Probe helpers — build health probes for common collaborators.

The monitor never fabricates health data; these only adapt real checks
(an HTTP endpoint, an existing async predicate) to the probe contract.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from .health import HealthProbe, ProbeResult

logger = logging.getLogger("steadfast.probes")


def http_probe(
    url: str,
    *,
    expected_status: int | tuple[int, ...] = 200,
    timeout: float = 5.0,
    headers: dict[str, str] | None = None,
    client: httpx.AsyncClient | None = None,
    name: str | None = None,
) -> HealthProbe:
    """
    Probe that GETs `url` and is healthy when the response status is expected.

    Pass `client` to reuse a connection pool (or a MockTransport in tests);
    otherwise a short-lived client is opened per probe.
    """
    expected = (expected_status,) if isinstance(expected_status, int) else tuple(expected_status)

    async def probe() -> ProbeResult:
        start = time.monotonic()
        try:
            if client is not None:
                resp = await client.get(url, headers=headers, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as c:
                    resp = await c.get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.debug(f"HTTP probe {url} failed: {e}")
            return ProbeResult(healthy=False, details={"url": url}, error=f"{type(e).__name__}: {e}")
        details: dict[str, Any] = {
            "url": url, "status_code": resp.status_code,
            "latency_ms": round((time.monotonic() - start) * 1000, 2),
        }
        if resp.status_code in expected:
            return ProbeResult(healthy=True, details=details)
        return ProbeResult(healthy=False, details=details, error=f"Unexpected status {resp.status_code}")

    probe.__name__ = name or f"http:{url}"
    return probe


def callable_probe(fn: Callable[[], Awaitable[bool]], name: str | None = None) -> HealthProbe:
    """Adapt a coroutine function returning a bool (e.g. a client's ping) into a probe."""

    async def probe() -> ProbeResult:
        ok = await fn()
        return ProbeResult(healthy=bool(ok), error=None if ok else "check returned false")

    probe.__name__ = name or getattr(fn, "__name__", "callable")
    return probe

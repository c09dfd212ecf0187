from __future__ import annotations

import time

import httpx


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Probe a backend liveness endpoint on the internal network.

    Any 2xx answer counts as alive; a JSON body with a ``status`` other than
    ``healthy``/``ok`` counts as unhealthy.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if not 200 <= resp.status_code < 300:
            return False, f"HTTP {resp.status_code}", latency_ms
        if resp.headers.get("content-type", "").startswith("application/json"):
            try:
                data = resp.json()
            except ValueError:
                return False, "Invalid JSON", latency_ms
            if isinstance(data, dict) and data.get("status") not in (None, "healthy", "ok"):
                return False, f"Unhealthy payload: {data!r}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms

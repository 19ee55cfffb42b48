"""In-memory enrichment metrics.

Asyncio is single-threaded, so plain dicts are safe without locking.
"""

import time

_start_time = time.monotonic()

_COUNTERS = (
    "recomputations",
    "remote_fetch_attempts",
    "remote_fetch_successes",
    "remote_fetch_failures",
    "cache_hits",
    "quota_denials",
    "superseded_runs",
)

_metrics: dict = {
    **{name: 0 for name in _COUNTERS},
    "failures_by_code": {},
    "last_fetch_duration_ms": None,
}


def record_recomputation() -> None:
    _metrics["recomputations"] += 1


def record_cache_hit() -> None:
    _metrics["cache_hits"] += 1


def record_quota_denial() -> None:
    _metrics["quota_denials"] += 1


def record_superseded() -> None:
    _metrics["superseded_runs"] += 1


def record_remote_fetch(duration_ms: float, success: bool, error_code: str | None = None) -> None:
    """Record a single remote prior fetch with timing."""
    _metrics["remote_fetch_attempts"] += 1
    _metrics["last_fetch_duration_ms"] = round(duration_ms, 1)
    if success:
        _metrics["remote_fetch_successes"] += 1
        return
    _metrics["remote_fetch_failures"] += 1
    code = error_code or "other"
    _metrics["failures_by_code"][code] = _metrics["failures_by_code"].get(code, 0) + 1


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    return {
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        **{name: _metrics[name] for name in _COUNTERS},
        "failures_by_code": dict(_metrics["failures_by_code"]),
        "last_fetch_duration_ms": _metrics["last_fetch_duration_ms"],
    }


def reset_metrics() -> None:
    for name in _COUNTERS:
        _metrics[name] = 0
    _metrics["failures_by_code"] = {}
    _metrics["last_fetch_duration_ms"] = None

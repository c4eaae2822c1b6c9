"""
In-process queue metrics.

Job outcomes are counted overall and per job type, handler and generation
call durations are kept per job type in a rolling window, and the processor
publishes its in-flight depth as a gauge. Everything is exposed through
/api/jobs/metrics; nothing is exported.

Usage:
    record_job("completed", "audio-generate")
    async with track_duration("handler", "audio-generate"):
        result = await handler(params)
"""

import math
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from typing import Any, Deque, Dict, List

from mediaqueue.utils.logger import get_logger

logger = get_logger("metrics")

MAX_DURATION_SAMPLES = 200  # per service/job type

_counters: Dict[str, int] = defaultdict(int)
_by_type: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
_gauges: Dict[str, float] = {}
_durations: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=MAX_DURATION_SAMPLES))


def inc(name: str, value: int = 1) -> None:
    _counters[name] += value


def gauge(name: str, value: float) -> None:
    _gauges[name] = value


def record_job(outcome: str, job_type: str) -> None:
    """Count a job outcome (dispatched, completed, failed, timed_out) for its type."""
    _counters[f"jobs.{outcome}"] += 1
    _by_type[job_type][outcome] += 1


@asynccontextmanager
async def track_duration(service: str, job_type: str):
    """Record how long a handler or generation call for `job_type` took."""
    start = time.monotonic()
    status = "error"
    try:
        yield
        status = "success"
    finally:
        duration_ms = (time.monotonic() - start) * 1000
        _durations[f"{service}.{job_type}"].append(duration_ms)
        inc(f"{service}.{status}")
        logger.debug(
            "metrics.call",
            extra={
                "service": service,
                "job_type": job_type,
                "duration_ms": round(duration_ms, 1),
                "status": status,
            },
        )


def _nearest_rank(ordered: List[float], fraction: float) -> float:
    rank = max(1, math.ceil(fraction * len(ordered)))
    return ordered[rank - 1]


def _summarize(samples: Deque[float]) -> Dict[str, float]:
    ordered = sorted(samples)
    return {
        "count": len(ordered),
        "mean_ms": round(sum(ordered) / len(ordered), 1),
        "p50_ms": round(_nearest_rank(ordered, 0.5), 1),
        "p95_ms": round(_nearest_rank(ordered, 0.95), 1),
        "max_ms": round(ordered[-1], 1),
    }


def get_snapshot() -> Dict[str, Any]:
    return {
        "counters": dict(_counters),
        "by_type": {job_type: dict(outcomes) for job_type, outcomes in _by_type.items()},
        "gauges": dict(_gauges),
        "durations": {name: _summarize(samples) for name, samples in _durations.items() if samples},
    }


def reset() -> None:
    """Clear all metrics (tests)."""
    _counters.clear()
    _by_type.clear()
    _gauges.clear()
    _durations.clear()

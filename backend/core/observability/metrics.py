"""In-process metrics counters and histograms."""

import threading
import time
from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})
_lock = threading.Lock()


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def increment_counter(name: str, labels: dict[str, str] = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return
    with _lock:
        _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    with _lock:
        metrics = _metrics[_key(name, labels)]
        metrics["count"] += 1
        metrics["sum"] += value
        metrics["values"].append(value)

        if value < 10:
            metrics["buckets"]["<10"] += 1
        elif value < 100:
            metrics["buckets"]["10-100"] += 1
        elif value < 1000:
            metrics["buckets"]["100-1000"] += 1
        elif value < 10000:
            metrics["buckets"]["1000-10000"] += 1
        else:
            metrics["buckets"][">=10000"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] = None) -> None:
    """Observe a duration measurement in milliseconds."""
    record_histogram(name, (time.time() - start_time) * 1000, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
    with _lock:
        for key, data in _metrics.items():
            metric_result = {"count": data["count"], "sum": data["sum"]}
            if data["values"]:
                values = data["values"]
                metric_result.update(
                    {
                        "min": min(values),
                        "max": max(values),
                        "avg": data["sum"] / len(values),
                        "buckets": dict(data["buckets"]),
                    }
                )
            result[key] = metric_result
    return result


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    with _lock:
        _metrics.clear()


# Chase engine metrics
def increment_chase_sent() -> None:
    increment_counter("chase_sent_total")


def increment_chase_failed() -> None:
    increment_counter("chase_failed_total")


def increment_chase_conflicts() -> None:
    increment_counter("chase_conflicts_total")


def increment_chase_skipped(state: str) -> None:
    increment_counter("chase_skipped_total", labels={"state": state})


def record_batch_duration(duration_ms: float) -> None:
    record_histogram("chase_batch_duration_ms", duration_ms)


# Billing sync metrics
def increment_billing_events(event_type: str) -> None:
    increment_counter("billing_events_total", labels={"type": event_type})

from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    with _lock:
        _metrics[key] += amount


def record_job_leased() -> None:
    _inc("jobs_leased")


def record_job_completed() -> None:
    _inc("jobs_completed")


def record_job_failed() -> None:
    _inc("jobs_failed")


def record_job_retried() -> None:
    _inc("jobs_retried")


def record_job_dead_lettered() -> None:
    _inc("jobs_dead_lettered")


def record_job_dropped() -> None:
    _inc("jobs_dropped")


def record_stale_write_discarded() -> None:
    _inc("stale_writes_discarded")


def record_stalled_lease_recovered() -> None:
    _inc("stalled_leases_recovered")


def record_cleanup_blob_failures(count: int) -> None:
    if count > 0:
        _inc("cleanup_blob_failures", count)


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()

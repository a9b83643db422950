from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_file_imported() -> None:
    _inc("files_imported")


def record_compensation() -> None:
    _inc("compensations")


def record_store_inconsistency() -> None:
    _inc("store_inconsistencies")


def record_job_acked(job_type: str) -> None:
    _inc("jobs_acked")
    _inc(f"jobs_acked:{job_type}")


def record_job_rejected(job_type: str) -> None:
    _inc("jobs_rejected")
    _inc(f"jobs_rejected:{job_type}")


def record_job_dead_lettered() -> None:
    _inc("jobs_dead_lettered")


def record_folder_recalculated() -> None:
    _inc("folders_recalculated")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()

from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    with _lock:
        _metrics[key] += amount


def record_charge() -> None:
    _inc("deposit_charges")


def record_refund() -> None:
    _inc("deposit_refunds")


def record_adjustment() -> None:
    _inc("deposit_adjustments")


def record_void() -> None:
    _inc("deposit_voids")


def record_return_processed() -> None:
    _inc("returns_processed")


def record_return_replayed() -> None:
    _inc("returns_replayed")


def record_credit_cancelled() -> None:
    _inc("credits_cancelled")


def record_credits_expired(count: int) -> None:
    if count > 0:
        _inc("credits_expired", count)


def record_optimistic_conflict() -> None:
    _inc("optimistic_conflicts")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID


class DepositError(Exception):
    """Base class for every typed ledger failure."""

    status_code: int = 400
    code: str = "deposit_error"

    def __init__(self, detail: str, **extra: Any) -> None:
        self.detail = detail
        self.extra = extra
        super().__init__(detail)


class ValidationError(DepositError):
    status_code = 400
    code = "validation_error"


class NotFound(DepositError):
    status_code = 404
    code = "not_found"


class RateNotFound(NotFound):
    code = "rate_not_found"

    def __init__(self, capacity_l: Decimal, currency_code: str, as_of: date) -> None:
        super().__init__(
            f"No active deposit rate for {capacity_l}L in {currency_code} on {as_of.isoformat()}",
            capacity_l=str(capacity_l),
            currency_code=currency_code,
            as_of=as_of.isoformat(),
        )


class InsufficientBalance(DepositError):
    status_code = 409
    code = "insufficient_balance"

    def __init__(self, required: Decimal, available: Decimal) -> None:
        self.required = required
        self.available = available
        super().__init__(
            f"Refund of {required} exceeds available deposit balance {available}",
            required=str(required),
            available=str(available),
        )


class QuantityExceedsRemaining(DepositError):
    status_code = 409
    code = "quantity_exceeds_remaining"

    def __init__(self, requested: int, remaining: int) -> None:
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Cannot return {requested} cylinders. Only {remaining} remaining.",
            requested=requested,
            remaining=remaining,
        )


class CreditAlreadyClosed(DepositError):
    status_code = 409
    code = "credit_already_closed"

    def __init__(self, credit_id: UUID, status: str) -> None:
        self.credit_id = credit_id
        self.status = status
        super().__init__(f"Empty return credit {credit_id} is already {status}", credit_id=str(credit_id), status=status)


class ConcurrentModification(DepositError):
    status_code = 409
    code = "concurrent_modification"


@dataclass(frozen=True)
class ConflictingRate:
    """Advisory warning: another active rate overlaps the same capacity and currency."""

    existing_rate_id: UUID
    capacity_l: Decimal
    currency_code: str
    effective_date: date
    end_date: date | None
    conflict_type: str = "date_overlap"

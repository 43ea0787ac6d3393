from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cylinder_ledger.core.errors import ValidationError
from cylinder_ledger.models.credit import BrandReconciliationStatus, EmptyReturnCredit, EmptyReturnEvent
from cylinder_ledger.services.policy import DepositPolicy, normalize_brand
from cylinder_ledger.services.pricing import ZERO, quantize_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrandExchange:
    fee: Decimal
    reconciliation_status: BrandReconciliationStatus | None


@dataclass
class BrandBalance:
    brand_code: str
    capacity_l: Decimal
    cylinders_given: int = 0
    cylinders_received: int = 0
    pending_reconciliation: int = 0

    @property
    def net_balance(self) -> int:
        return self.cylinders_received - self.cylinders_given


@dataclass
class BrandReconciliationReport:
    from_date: date
    to_date: date
    brand_balances: list[BrandBalance] = field(default_factory=list)
    total_exchange_fees: Decimal = ZERO
    pending_reconciliations: int = 0


def is_cross_brand(original_brand: str | None, accepted_brand: str | None) -> bool:
    original = normalize_brand(original_brand)
    accepted = normalize_brand(accepted_brand)
    return bool(original and accepted and original != accepted)


def exchange_fee(
    policy: DepositPolicy,
    original_brand: str | None,
    accepted_brand: str | None,
    quantity: int,
) -> BrandExchange:
    """Fee for accepting a different brand than the one handed out.

    Matching brands (or a missing side) cost nothing. Generic brands are accepted free but
    flagged ``generic_accepted``; any other cross-brand exchange is ``pending`` until the
    brands are settled with the other distributor.
    """
    if not is_cross_brand(original_brand, accepted_brand):
        status = BrandReconciliationStatus.matched if original_brand and accepted_brand else None
        return BrandExchange(fee=ZERO, reconciliation_status=status)
    if policy.is_generic_brand(accepted_brand):
        return BrandExchange(fee=ZERO, reconciliation_status=BrandReconciliationStatus.generic_accepted)
    fee = quantize_money(policy.exchange_fee_for(accepted_brand) * int(quantity), rounding=policy.rounding)
    return BrandExchange(fee=fee, reconciliation_status=BrandReconciliationStatus.pending)


async def update_reconciliation_status(
    session: AsyncSession,
    credit_ids: list[UUID],
    new_status: BrandReconciliationStatus,
) -> int:
    if not credit_ids:
        raise ValidationError("At least one credit id is required")
    result = await session.execute(
        update(EmptyReturnCredit)
        .where(EmptyReturnCredit.id.in_(credit_ids), EmptyReturnCredit.brand_reconciliation_status.is_not(None))
        .values(brand_reconciliation_status=new_status, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    updated = int(result.rowcount or 0)
    logger.info("brand_reconciliation_updated", extra={"updated_count": updated, "new_status": new_status.value})
    return updated


def _day_bounds(from_date: date, to_date: date) -> tuple[datetime, datetime]:
    start = datetime.combine(from_date, time.min, tzinfo=timezone.utc)
    end = datetime.combine(to_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end


async def reconciliation_report(
    session: AsyncSession,
    *,
    from_date: date,
    to_date: date,
    brand_code: str | None = None,
) -> BrandReconciliationReport:
    if to_date < from_date:
        raise ValidationError("to_date cannot be before from_date")
    start, end = _day_bounds(from_date, to_date)
    rows = (
        await session.execute(
            select(EmptyReturnEvent, EmptyReturnCredit.capacity_l, EmptyReturnCredit.brand_reconciliation_status)
            .join(EmptyReturnCredit, EmptyReturnEvent.credit_id == EmptyReturnCredit.id)
            .where(
                EmptyReturnEvent.created_at >= start,
                EmptyReturnEvent.created_at < end,
                EmptyReturnEvent.original_brand.is_not(None),
                EmptyReturnEvent.accepted_brand.is_not(None),
            )
            .order_by(EmptyReturnEvent.created_at)
        )
    ).all()

    wanted = normalize_brand(brand_code) if brand_code else None
    balances: dict[tuple[str, Decimal], BrandBalance] = {}
    report = BrandReconciliationReport(from_date=from_date, to_date=to_date)
    pending_credits: set[UUID] = set()

    def _balance(brand: str, capacity: Decimal) -> BrandBalance:
        key = (brand, capacity)
        if key not in balances:
            balances[key] = BrandBalance(brand_code=brand, capacity_l=capacity)
        return balances[key]

    for event, capacity_l, credit_status in rows:
        if not is_cross_brand(event.original_brand, event.accepted_brand):
            continue
        given = normalize_brand(event.original_brand)
        received = normalize_brand(event.accepted_brand)
        if wanted and wanted not in (given, received):
            continue
        capacity = Decimal(capacity_l)
        quantity = int(event.quantity)
        pending = credit_status == BrandReconciliationStatus.pending
        _balance(given, capacity).cylinders_given += quantity
        received_balance = _balance(received, capacity)
        received_balance.cylinders_received += quantity
        if pending:
            received_balance.pending_reconciliation += quantity
            pending_credits.add(event.credit_id)
        report.total_exchange_fees += Decimal(event.brand_exchange_fee or 0)

    report.brand_balances = sorted(balances.values(), key=lambda b: (b.brand_code, b.capacity_l))
    if wanted:
        report.brand_balances = [b for b in report.brand_balances if b.brand_code == wanted]
    report.total_exchange_fees = quantize_money(report.total_exchange_fees)
    report.pending_reconciliations = len(pending_credits)
    return report

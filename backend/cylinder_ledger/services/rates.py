from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cylinder_ledger.core.errors import ConflictingRate, NotFound, RateNotFound, ValidationError
from cylinder_ledger.models.deposit import DepositRate
from cylinder_ledger.schemas.deposit import DepositRateUpsert
from cylinder_ledger.services.pricing import quantize_money, to_decimal

logger = logging.getLogger(__name__)


@dataclass
class RateUpsertResult:
    rate: DepositRate
    conflicts: list[ConflictingRate] = field(default_factory=list)


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _normalize_capacity(capacity_l: object) -> Decimal:
    capacity = to_decimal(capacity_l)
    if capacity <= 0:
        raise ValidationError("Cylinder capacity must be greater than zero")
    return capacity


async def lookup_rate(
    session: AsyncSession,
    capacity_l: Decimal,
    currency_code: str,
    as_of_date: date | None = None,
) -> DepositRate:
    """Return the rate in force for ``capacity_l`` and ``currency_code`` on ``as_of_date``.

    When several active rates cover the date, the one with the latest effective date wins.
    There is no fallback to another currency or capacity.
    """
    capacity = _normalize_capacity(capacity_l)
    currency = (currency_code or "").strip().upper()
    as_of = as_of_date or _today()
    stmt = (
        select(DepositRate)
        .where(
            DepositRate.capacity_l == capacity,
            DepositRate.currency_code == currency,
            DepositRate.is_active.is_(True),
            DepositRate.effective_date <= as_of,
            or_(DepositRate.end_date.is_(None), DepositRate.end_date >= as_of),
        )
        .order_by(DepositRate.effective_date.desc(), DepositRate.created_at.desc())
        .limit(1)
    )
    rate = (await session.execute(stmt)).scalars().first()
    if rate is None:
        raise RateNotFound(capacity, currency, as_of)
    return rate


async def find_conflicts(
    session: AsyncSession,
    *,
    capacity_l: Decimal,
    currency_code: str,
    effective_date: date,
    end_date: date | None,
    exclude_id: UUID | None = None,
) -> list[ConflictingRate]:
    filters = [
        DepositRate.capacity_l == _normalize_capacity(capacity_l),
        DepositRate.currency_code == currency_code,
        DepositRate.is_active.is_(True),
        or_(DepositRate.end_date.is_(None), DepositRate.end_date >= effective_date),
    ]
    if end_date is not None:
        filters.append(DepositRate.effective_date <= end_date)
    if exclude_id is not None:
        filters.append(DepositRate.id != exclude_id)
    rows = (await session.execute(select(DepositRate).where(and_(*filters)).order_by(DepositRate.effective_date))).scalars().all()
    return [
        ConflictingRate(
            existing_rate_id=row.id,
            capacity_l=row.capacity_l,
            currency_code=row.currency_code,
            effective_date=row.effective_date,
            end_date=row.end_date,
        )
        for row in rows
    ]


async def get_rate(session: AsyncSession, rate_id: UUID) -> DepositRate:
    rate = await session.get(DepositRate, rate_id)
    if rate is None:
        raise NotFound("Deposit rate not found", rate_id=str(rate_id))
    return rate


async def upsert_rate(
    session: AsyncSession,
    payload: DepositRateUpsert,
    *,
    actor_id: UUID | None = None,
) -> RateUpsertResult:
    capacity = _normalize_capacity(payload.capacity_l)
    amount = quantize_money(payload.deposit_amount)
    if amount < 0:
        raise ValidationError("Deposit amount cannot be negative")
    if payload.end_date is not None and payload.end_date <= payload.effective_date:
        raise ValidationError("end_date must be after effective_date")

    now = datetime.now(timezone.utc)
    if payload.id is not None:
        rate = await get_rate(session, payload.id)
    else:
        rate = DepositRate(created_by=actor_id, created_at=now)
        session.add(rate)

    rate.capacity_l = capacity
    rate.deposit_amount = amount
    rate.currency_code = payload.currency_code
    rate.effective_date = payload.effective_date
    rate.end_date = payload.end_date
    rate.is_active = payload.is_active
    rate.notes = payload.notes
    rate.updated_at = now

    conflicts: list[ConflictingRate] = []
    if payload.is_active:
        conflicts = await find_conflicts(
            session,
            capacity_l=capacity,
            currency_code=payload.currency_code,
            effective_date=payload.effective_date,
            end_date=payload.end_date,
            exclude_id=payload.id,
        )
    await session.commit()

    if conflicts:
        logger.warning(
            "deposit_rate_conflict",
            extra={
                "rate_id": str(rate.id),
                "capacity_l": str(capacity),
                "currency_code": rate.currency_code,
                "conflicting_rate_ids": [str(c.existing_rate_id) for c in conflicts],
            },
        )
    logger.info(
        "deposit_rate_saved",
        extra={"rate_id": str(rate.id), "capacity_l": str(capacity), "currency_code": rate.currency_code, "amount": str(amount)},
    )
    return RateUpsertResult(rate=rate, conflicts=conflicts)


async def retire_rate(session: AsyncSession, rate_id: UUID, end_date: date | None = None) -> DepositRate:
    """Deactivate a rate, closing its window on ``end_date`` (default today).

    An explicit ``end_date`` on or before the effective date is rejected. When the default
    would do the same (a rate that starts today or later) the window is left untouched.
    """
    rate = await get_rate(session, rate_id)
    if end_date is not None and end_date <= rate.effective_date:
        raise ValidationError("end_date must be after effective_date", rate_id=str(rate.id))
    retire_on = end_date or _today()
    rate.is_active = False
    if retire_on > rate.effective_date and (rate.end_date is None or retire_on < rate.end_date):
        rate.end_date = retire_on
    rate.updated_at = datetime.now(timezone.utc)
    await session.commit()
    logger.info(
        "deposit_rate_retired",
        extra={"rate_id": str(rate.id), "end_date": rate.end_date.isoformat() if rate.end_date else None},
    )
    return rate


async def list_rates(
    session: AsyncSession,
    *,
    capacity_l: Decimal | None = None,
    currency_code: str | None = None,
    active_only: bool = True,
) -> list[DepositRate]:
    stmt = select(DepositRate)
    if capacity_l is not None:
        stmt = stmt.where(DepositRate.capacity_l == _normalize_capacity(capacity_l))
    if currency_code:
        stmt = stmt.where(DepositRate.currency_code == currency_code.strip().upper())
    if active_only:
        stmt = stmt.where(DepositRate.is_active.is_(True))
    stmt = stmt.order_by(DepositRate.capacity_l, DepositRate.currency_code, DepositRate.effective_date.desc())
    return list((await session.execute(stmt)).scalars().all())

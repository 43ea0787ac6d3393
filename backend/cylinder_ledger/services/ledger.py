from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cylinder_ledger.core import metrics
from cylinder_ledger.core.errors import InsufficientBalance, NotFound, ValidationError
from cylinder_ledger.models.deposit import (
    CustomerDepositAccount,
    CylinderStatus,
    DepositTransaction,
    DepositTransactionLine,
    RefundMethod,
    TransactionType,
)
from cylinder_ledger.schemas.deposit import ChargeLine, RefundLine
from cylinder_ledger.services import unit_of_work, valuation
from cylinder_ledger.services.policy import DepositPolicy, get_policy
from cylinder_ledger.services.pricing import ZERO, clamp_non_negative, line_total, quantize_money, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerTotals:
    total_charged: Decimal
    total_refunded: Decimal
    total_adjustments: Decimal

    @property
    def current_balance(self) -> Decimal:
        return self.total_charged - self.total_refunded + self.total_adjustments


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def lock_account(session: AsyncSession, customer_id: UUID, currency_code: str) -> CustomerDepositAccount:
    """Load (or open) the row that serializes every mutation of this customer's balance."""
    account = (
        (
            await session.execute(
                select(CustomerDepositAccount)
                .where(
                    CustomerDepositAccount.customer_id == customer_id,
                    CustomerDepositAccount.currency_code == currency_code,
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        )
        .scalars()
        .first()
    )
    if account is None:
        now = _now()
        account = CustomerDepositAccount(
            customer_id=customer_id,
            currency_code=currency_code,
            balance=ZERO,
            created_at=now,
            updated_at=now,
        )
        session.add(account)
        await session.flush()
    return account


def build_charge_lines(lines: Sequence[ChargeLine], policy: DepositPolicy) -> list[DepositTransactionLine]:
    built: list[DepositTransactionLine] = []
    for position, line in enumerate(lines):
        unit = quantize_money(line.unit_deposit, rounding=policy.rounding)
        if unit < 0:
            raise ValidationError("Unit deposit cannot be negative")
        built.append(
            DepositTransactionLine(
                position=position,
                product_id=line.product_id,
                capacity_l=to_decimal(line.capacity_l),
                quantity=int(line.quantity),
                unit_deposit=unit,
                deductions=ZERO,
                line_total=line_total(unit, line.quantity, rounding=policy.rounding),
            )
        )
    return built


def build_refund_lines(lines: Sequence[RefundLine], policy: DepositPolicy) -> list[DepositTransactionLine]:
    built: list[DepositTransactionLine] = []
    for position, line in enumerate(lines):
        if line.cylinder_status == CylinderStatus.lost:
            raise ValidationError(
                "Lost cylinders are not refunded; record them on an empty return credit to charge the lost-cylinder fee",
                position=position,
            )
        unit = quantize_money(line.unit_deposit, rounding=policy.rounding)
        valued = valuation.value_return(
            policy,
            capacity_l=to_decimal(line.capacity_l),
            unit_amount=unit,
            quantity=int(line.quantity),
            cylinder_status=line.cylinder_status,
            condition=line.condition,
            damage_assessment=line.damage_assessment,
            refund_percentage=line.refund_percentage,
            original_brand=line.original_brand,
            accepted_brand=line.accepted_brand,
        )
        full_value = line_total(unit, line.quantity, rounding=policy.rounding)
        built.append(
            DepositTransactionLine(
                position=position,
                product_id=line.product_id,
                capacity_l=to_decimal(line.capacity_l),
                quantity=int(line.quantity),
                unit_deposit=unit,
                condition=line.condition,
                cylinder_status=line.cylinder_status,
                refund_percentage=valued.evaluation.refund_percentage,
                deductions=clamp_non_negative(full_value - valued.net_credit),
                line_total=valued.net_credit,
            )
        )
    return built


def _check_lines(lines: Sequence[DepositTransactionLine]) -> Decimal:
    if not lines:
        raise ValidationError("At least one line is required")
    for line in lines:
        if int(line.quantity) < 1:
            raise ValidationError("Line quantity must be at least 1")
        if to_decimal(line.capacity_l) <= 0:
            raise ValidationError("Cylinder capacity must be greater than zero")
    return sum((to_decimal(line.line_total) for line in lines), ZERO)


def _ensure_available(account: CustomerDepositAccount, required: Decimal) -> None:
    available = clamp_non_negative(to_decimal(account.balance))
    if required > available:
        raise InsufficientBalance(required, available)


def _new_transaction(
    *,
    customer_id: UUID,
    currency_code: str,
    transaction_type: TransactionType,
    amount: Decimal,
    lines: list[DepositTransactionLine],
    order_id: UUID | None,
    notes: str | None,
    reference: str | None,
    actor_id: UUID | None,
    refund_method: RefundMethod | None = None,
) -> DepositTransaction:
    now = _now()
    return DepositTransaction(
        customer_id=customer_id,
        transaction_type=transaction_type,
        amount=amount,
        currency_code=currency_code,
        transaction_date=now,
        order_id=order_id,
        refund_method=refund_method,
        notes=notes,
        reference=reference,
        is_voided=False,
        created_by=actor_id,
        created_at=now,
        lines=lines,
    )


async def post_charge(
    session: AsyncSession,
    *,
    customer_id: UUID,
    currency_code: str,
    lines: list[DepositTransactionLine],
    order_id: UUID | None = None,
    notes: str | None = None,
    reference: str | None = None,
    actor_id: UUID | None = None,
) -> DepositTransaction:
    amount = _check_lines(lines)
    if amount <= 0:
        raise ValidationError("Charge amount must be greater than zero")
    account = await lock_account(session, customer_id, currency_code)
    record = _new_transaction(
        customer_id=customer_id,
        currency_code=currency_code,
        transaction_type=TransactionType.charge,
        amount=amount,
        lines=lines,
        order_id=order_id,
        notes=notes,
        reference=reference,
        actor_id=actor_id,
    )
    session.add(record)
    account.balance = to_decimal(account.balance) + amount
    account.updated_at = _now()
    await session.flush()
    return record


async def post_refund(
    session: AsyncSession,
    *,
    customer_id: UUID,
    currency_code: str,
    lines: list[DepositTransactionLine],
    refund_method: RefundMethod,
    order_id: UUID | None = None,
    notes: str | None = None,
    reference: str | None = None,
    actor_id: UUID | None = None,
) -> DepositTransaction:
    amount = _check_lines(lines)
    if amount <= 0:
        raise ValidationError("Refund amount must be greater than zero")
    account = await lock_account(session, customer_id, currency_code)
    _ensure_available(account, amount)
    record = _new_transaction(
        customer_id=customer_id,
        currency_code=currency_code,
        transaction_type=TransactionType.refund,
        amount=amount,
        lines=lines,
        order_id=order_id,
        notes=notes,
        reference=reference,
        actor_id=actor_id,
        refund_method=refund_method,
    )
    session.add(record)
    account.balance = to_decimal(account.balance) - amount
    account.updated_at = _now()
    await session.flush()
    return record


async def post_adjustment(
    session: AsyncSession,
    *,
    customer_id: UUID,
    currency_code: str,
    amount: Decimal,
    reason: str,
    actor_id: UUID | None = None,
) -> DepositTransaction:
    signed = quantize_money(amount)
    if signed == 0:
        raise ValidationError("Adjustment amount cannot be zero")
    if not (reason or "").strip():
        raise ValidationError("Adjustment reason is required")
    account = await lock_account(session, customer_id, currency_code)
    if signed < 0:
        _ensure_available(account, -signed)
    record = _new_transaction(
        customer_id=customer_id,
        currency_code=currency_code,
        transaction_type=TransactionType.adjustment,
        amount=signed,
        lines=[],
        order_id=None,
        notes=reason.strip(),
        reference=None,
        actor_id=actor_id,
    )
    session.add(record)
    account.balance = to_decimal(account.balance) + signed
    account.updated_at = _now()
    await session.flush()
    return record


async def post_void(session: AsyncSession, *, transaction_id: UUID, reason: str, actor_id: UUID | None = None) -> DepositTransaction:
    if not (reason or "").strip():
        raise ValidationError("Void reason is required")
    record = (
        (
            await session.execute(
                select(DepositTransaction)
                .where(DepositTransaction.id == transaction_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        )
        .scalars()
        .first()
    )
    if record is None:
        raise NotFound("Deposit transaction not found", transaction_id=str(transaction_id))
    if record.is_voided:
        raise ValidationError("Transaction is already voided", transaction_id=str(transaction_id))

    account = await lock_account(session, record.customer_id, record.currency_code)
    reversal = -record.signed_amount
    if reversal < 0:
        _ensure_available(account, -reversal)

    now = _now()
    record.is_voided = True
    record.voided_at = now
    record.voided_by = actor_id
    record.void_reason = reason.strip()
    account.balance = to_decimal(account.balance) + reversal
    account.updated_at = now
    await session.flush()
    return record


def _log_posted(event: str, record: DepositTransaction) -> None:
    logger.info(
        event,
        extra={
            "transaction_id": str(record.id),
            "customer_id": str(record.customer_id),
            "currency_code": record.currency_code,
            "amount": str(record.amount),
        },
    )


async def charge(
    session: AsyncSession,
    customer_id: UUID,
    lines: Sequence[ChargeLine],
    *,
    currency_code: str | None = None,
    order_id: UUID | None = None,
    notes: str | None = None,
    actor_id: UUID | None = None,
    policy: DepositPolicy | None = None,
) -> DepositTransaction:
    policy = policy or get_policy()
    currency = policy.currency(currency_code)

    async def _work() -> DepositTransaction:
        return await post_charge(
            session,
            customer_id=customer_id,
            currency_code=currency,
            lines=build_charge_lines(lines, policy),
            order_id=order_id,
            notes=notes,
            actor_id=actor_id,
        )

    record = await unit_of_work.run_atomic(session, _work, operation="deposit_charge")
    metrics.record_charge()
    _log_posted("deposit_charged", record)
    return record


async def refund(
    session: AsyncSession,
    customer_id: UUID,
    lines: Sequence[RefundLine],
    *,
    refund_method: RefundMethod,
    currency_code: str | None = None,
    order_id: UUID | None = None,
    notes: str | None = None,
    actor_id: UUID | None = None,
    policy: DepositPolicy | None = None,
) -> DepositTransaction:
    """Refund returned cylinders, valuing each line by condition, damage and brand.

    The total may not exceed the customer's available deposit balance.
    """
    policy = policy or get_policy()
    currency = policy.currency(currency_code)

    async def _work() -> DepositTransaction:
        return await post_refund(
            session,
            customer_id=customer_id,
            currency_code=currency,
            lines=build_refund_lines(lines, policy),
            refund_method=refund_method,
            order_id=order_id,
            notes=notes,
            actor_id=actor_id,
        )

    record = await unit_of_work.run_atomic(session, _work, operation="deposit_refund")
    metrics.record_refund()
    _log_posted("deposit_refunded", record)
    return record


async def adjust(
    session: AsyncSession,
    customer_id: UUID,
    amount: Decimal,
    reason: str,
    *,
    currency_code: str | None = None,
    actor_id: UUID | None = None,
    policy: DepositPolicy | None = None,
) -> DepositTransaction:
    policy = policy or get_policy()
    currency = policy.currency(currency_code)

    async def _work() -> DepositTransaction:
        return await post_adjustment(
            session, customer_id=customer_id, currency_code=currency, amount=amount, reason=reason, actor_id=actor_id
        )

    record = await unit_of_work.run_atomic(session, _work, operation="deposit_adjustment")
    metrics.record_adjustment()
    _log_posted("deposit_adjusted", record)
    return record


async def void(session: AsyncSession, transaction_id: UUID, reason: str, *, actor_id: UUID | None = None) -> DepositTransaction:
    async def _work() -> DepositTransaction:
        return await post_void(session, transaction_id=transaction_id, reason=reason, actor_id=actor_id)

    record = await unit_of_work.run_atomic(session, _work, operation="deposit_void")
    metrics.record_void()
    _log_posted("deposit_voided", record)
    return record


async def get_transaction(session: AsyncSession, transaction_id: UUID) -> DepositTransaction:
    record = (
        (await session.execute(select(DepositTransaction).where(DepositTransaction.id == transaction_id))).scalars().first()
    )
    if record is None:
        raise NotFound("Deposit transaction not found", transaction_id=str(transaction_id))
    return record


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


async def get_history(
    session: AsyncSession,
    customer_id: UUID,
    *,
    currency_code: str | None = None,
    transaction_type: TransactionType | None = None,
    include_voided: bool = False,
    from_date: date | None = None,
    to_date: date | None = None,
    page: int = 1,
    limit: int = 25,
) -> tuple[list[DepositTransaction], int]:
    filters = [DepositTransaction.customer_id == customer_id]
    if currency_code:
        filters.append(DepositTransaction.currency_code == currency_code.strip().upper())
    if transaction_type is not None:
        filters.append(DepositTransaction.transaction_type == transaction_type)
    if not include_voided:
        filters.append(DepositTransaction.is_voided.is_(False))
    if from_date is not None:
        filters.append(DepositTransaction.transaction_date >= _day_start(from_date))
    if to_date is not None:
        filters.append(DepositTransaction.transaction_date < _day_start(to_date + timedelta(days=1)))

    page = max(1, int(page))
    limit = max(1, min(200, int(limit)))
    offset = (page - 1) * limit

    total = await session.scalar(select(func.count()).select_from(DepositTransaction).where(*filters))
    rows = (
        (
            await session.execute(
                select(DepositTransaction)
                .where(*filters)
                .order_by(DepositTransaction.transaction_date.desc(), DepositTransaction.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
        )
        .scalars()
        .all()
    )
    return list(rows), int(total or 0)


async def transaction_totals(session: AsyncSession, customer_id: UUID, currency_code: str) -> LedgerTotals:
    """Sum the non-voided log by transaction type."""

    def _sum_of(kind: TransactionType):
        return func.coalesce(func.sum(case((DepositTransaction.transaction_type == kind, DepositTransaction.amount), else_=0)), 0)

    row = (
        await session.execute(
            select(
                _sum_of(TransactionType.charge),
                _sum_of(TransactionType.refund),
                _sum_of(TransactionType.adjustment),
            ).where(
                DepositTransaction.customer_id == customer_id,
                DepositTransaction.currency_code == currency_code,
                DepositTransaction.is_voided.is_(False),
            )
        )
    ).one()
    charged, refunded, adjusted = (quantize_money(value) for value in row)
    return LedgerTotals(total_charged=charged, total_refunded=refunded, total_adjustments=adjusted)


async def summarize_history(session: AsyncSession, customer_id: UUID, currency_code: str) -> LedgerTotals:
    return await transaction_totals(session, customer_id, currency_code.strip().upper())

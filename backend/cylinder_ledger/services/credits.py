from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cylinder_ledger.core import metrics
from cylinder_ledger.core.errors import (
    ConcurrentModification,
    CreditAlreadyClosed,
    NotFound,
    QuantityExceedsRemaining,
    ValidationError,
)
from cylinder_ledger.models.credit import (
    OPEN_CREDIT_STATUSES,
    CreditStatus,
    EmptyReturnCredit,
    EmptyReturnCreditStatusHistory,
    EmptyReturnEvent,
)
from cylinder_ledger.models.deposit import CylinderStatus, DepositTransaction, DepositTransactionLine, RefundMethod
from cylinder_ledger.schemas.credit import CreditCreate, ReturnProcess
from cylinder_ledger.services import ledger, lost_fees, rates, unit_of_work, valuation
from cylinder_ledger.services.policy import DepositPolicy, get_policy
from cylinder_ledger.services.pricing import ZERO, line_total, quantize_money, to_decimal

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[CreditStatus, set[CreditStatus]] = {
    CreditStatus.pending: {
        CreditStatus.partial_returned,
        CreditStatus.fully_returned,
        CreditStatus.cancelled,
        CreditStatus.grace_period,
        CreditStatus.expired,
    },
    CreditStatus.partial_returned: {
        CreditStatus.partial_returned,
        CreditStatus.fully_returned,
        CreditStatus.cancelled,
        CreditStatus.grace_period,
        CreditStatus.expired,
    },
    CreditStatus.grace_period: {
        CreditStatus.grace_period,
        CreditStatus.fully_returned,
        CreditStatus.cancelled,
        CreditStatus.expired,
    },
    CreditStatus.fully_returned: set(),
    CreditStatus.cancelled: set(),
    CreditStatus.expired: set(),
}

EXPIRING_SOON_SUMMARY_DAYS = 7


@dataclass
class ExpirySweepResult:
    expired: int = 0
    entered_grace: int = 0
    skipped_conflicts: int = 0
    forfeited_amount: Decimal = ZERO
    charged_amount: Decimal = ZERO
    lost_fee_amount: Decimal = ZERO
    processed_at: datetime | None = None


@dataclass(frozen=True)
class CreditsSummary:
    total_pending_credits: Decimal
    total_pending_quantity: int
    credits_expiring_soon: Decimal
    credits_overdue: Decimal
    credits_in_grace_period: int


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _today() -> date:
    return _now().date()


def final_expiration(credit: EmptyReturnCredit) -> date:
    if credit.final_expiration_date is not None:
        return credit.final_expiration_date
    return credit.return_deadline + timedelta(days=int(credit.grace_period_days or 0))


def _transition(
    session: AsyncSession,
    credit: EmptyReturnCredit,
    new_status: CreditStatus,
    *,
    actor_id: UUID | None,
    reason: str | None,
    quantity_change: int = 0,
) -> None:
    old_status = CreditStatus(credit.status)
    if new_status not in ALLOWED_TRANSITIONS[old_status]:
        if not ALLOWED_TRANSITIONS[old_status]:
            raise CreditAlreadyClosed(credit.id, old_status.value)
        raise ValidationError(f"Invalid status transition {old_status.value} -> {new_status.value}")
    credit.status = new_status
    session.add(
        EmptyReturnCreditStatusHistory(
            credit_id=credit.id,
            old_status=old_status,
            new_status=new_status,
            quantity_returned_change=quantity_change,
            changed_by=actor_id,
            change_reason=reason,
            created_at=_now(),
        )
    )


async def _load_credit(session: AsyncSession, credit_id: UUID) -> EmptyReturnCredit:
    credit = (
        (
            await session.execute(
                select(EmptyReturnCredit)
                .where(EmptyReturnCredit.id == credit_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        )
        .scalars()
        .first()
    )
    if credit is None:
        raise NotFound("Empty return credit not found", credit_id=str(credit_id))
    return credit


def _require_open(credit: EmptyReturnCredit) -> None:
    if not credit.is_open:
        raise CreditAlreadyClosed(credit.id, CreditStatus(credit.status).value)


async def get_credit(session: AsyncSession, credit_id: UUID) -> EmptyReturnCredit:
    credit = (
        (
            await session.execute(
                select(EmptyReturnCredit)
                .where(EmptyReturnCredit.id == credit_id)
                .execution_options(populate_existing=True)
            )
        )
        .scalars()
        .first()
    )
    if credit is None:
        raise NotFound("Empty return credit not found", credit_id=str(credit_id))
    return credit


async def _post_chargeback(
    session: AsyncSession,
    credit: EmptyReturnCredit,
    *,
    quantity: int,
    unit_amount: Decimal,
    amount: Decimal,
    notes: str,
    actor_id: UUID | None,
    cylinder_status: CylinderStatus | None = None,
) -> DepositTransaction:
    line = DepositTransactionLine(
        position=0,
        product_id=credit.product_id,
        capacity_l=credit.capacity_l,
        quantity=quantity,
        unit_deposit=unit_amount,
        cylinder_status=cylinder_status,
        deductions=ZERO,
        line_total=amount,
    )
    return await ledger.post_charge(
        session,
        customer_id=credit.customer_id,
        currency_code=credit.currency_code,
        lines=[line],
        order_id=credit.order_id,
        notes=notes,
        reference=str(credit.id),
        actor_id=actor_id,
    )


async def open_credit(
    session: AsyncSession,
    payload: CreditCreate,
    *,
    policy: DepositPolicy | None = None,
    actor_id: UUID | None = None,
    charge_deposit: bool | None = None,
) -> EmptyReturnCredit:
    """Open a pending credit for cylinders the customer is expected to bring back.

    Without an explicit unit amount the deposit rate in force today is used. With
    ``charge_deposit`` the matching deposit charge is posted in the same commit.
    """
    policy = policy or get_policy()
    currency = policy.currency(payload.currency_code)
    charge_deposit = payload.charge_deposit if charge_deposit is None else charge_deposit
    today = _today()

    if payload.unit_credit_amount is not None:
        unit = quantize_money(payload.unit_credit_amount, rounding=policy.rounding)
    else:
        unit = quantize_money((await rates.lookup_rate(session, payload.capacity_l, currency, today)).deposit_amount)
    deadline = payload.return_deadline or payload.expected_return_date or today + timedelta(days=policy.return_window_days)
    grace_days = policy.grace_period_days if payload.grace_period_days is None else int(payload.grace_period_days)
    credit_id = uuid.uuid4()
    total = line_total(unit, payload.quantity, rounding=policy.rounding)
    charging = bool(charge_deposit) and total > 0

    async def _work() -> None:
        now = _now()
        credit = EmptyReturnCredit(
            id=credit_id,
            order_id=payload.order_id,
            customer_id=payload.customer_id,
            product_id=payload.product_id,
            capacity_l=to_decimal(payload.capacity_l),
            quantity=int(payload.quantity),
            quantity_returned=0,
            unit_credit_amount=unit,
            total_credit_amount=total,
            currency_code=currency,
            expected_return_date=payload.expected_return_date,
            return_deadline=deadline,
            grace_period_days=grace_days,
            status=CreditStatus.pending,
            brand_exchange_fee=ZERO,
            forfeited_amount=ZERO,
            deposit_charged=charging,
            processing_notes=payload.notes,
            created_by=actor_id,
            updated_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        session.add(credit)
        session.add(
            EmptyReturnCreditStatusHistory(
                credit_id=credit_id,
                old_status=None,
                new_status=CreditStatus.pending,
                changed_by=actor_id,
                change_reason="Credit opened",
                created_at=now,
            )
        )
        await session.flush()
        if charging:
            await _post_chargeback(
                session,
                credit,
                quantity=credit.quantity,
                unit_amount=unit,
                amount=credit.total_credit_amount,
                notes="Cylinder deposit",
                actor_id=actor_id,
            )

    await unit_of_work.run_atomic(session, _work, operation="open_credit")
    credit = await get_credit(session, credit_id)
    logger.info(
        "empty_return_credit_opened",
        extra={
            "credit_id": str(credit.id),
            "customer_id": str(credit.customer_id),
            "currency_code": credit.currency_code,
            "amount": str(credit.total_credit_amount),
            "charged": bool(charge_deposit),
        },
    )
    return credit


async def _find_event(session: AsyncSession, idempotency_key: str) -> EmptyReturnEvent | None:
    return (
        (await session.execute(select(EmptyReturnEvent).where(EmptyReturnEvent.idempotency_key == idempotency_key)))
        .scalars()
        .first()
    )


async def process_return(
    session: AsyncSession,
    credit_id: UUID,
    payload: ReturnProcess,
    *,
    policy: DepositPolicy | None = None,
    actor_id: UUID | None = None,
) -> EmptyReturnCredit:
    """Apply one return event to a credit.

    Replaying an ``idempotency_key`` returns the credit unchanged. Returned cylinders are
    refunded to the customer's deposit balance at the evaluated percentage less any brand
    exchange fee when the deposit was charged at open; otherwise only the deductions are
    charged. Lost cylinders are charged the lost-cylinder fee instead.
    """
    policy = policy or get_policy()
    key = payload.idempotency_key.strip()
    if not key:
        raise ValidationError("idempotency_key is required")
    quantity = int(payload.quantity)

    async def _work() -> bool:
        existing = await _find_event(session, key)
        if existing is not None:
            if existing.credit_id != credit_id:
                raise ValidationError("Idempotency key was already used for another credit", idempotency_key=key)
            return True

        credit = await _load_credit(session, credit_id)
        _require_open(credit)
        if quantity < 1:
            raise ValidationError("Return quantity must be at least 1")
        if quantity > credit.quantity_remaining:
            raise QuantityExceedsRemaining(quantity, credit.quantity_remaining)

        unit = quantize_money(credit.unit_credit_amount)
        valued = valuation.value_return(
            policy,
            capacity_l=credit.capacity_l,
            unit_amount=unit,
            quantity=quantity,
            cylinder_status=payload.cylinder_status,
            condition=payload.condition_at_return,
            damage_assessment=payload.damage_assessment,
            original_brand=payload.original_brand,
            accepted_brand=payload.accepted_brand,
        )

        transaction: DepositTransaction | None = None
        lost_fee_amount = ZERO
        if valued.lost_fee is not None:
            fee = valued.lost_fee
            transaction = await _post_chargeback(
                session,
                credit,
                quantity=quantity,
                unit_amount=fee.unit_total_fee,
                amount=fee.total_fee,
                notes="Lost cylinder fee",
                actor_id=actor_id,
                cylinder_status=CylinderStatus.lost,
            )
            lost_fee_amount = fee.total_fee
            credit.lost_cylinder_fee = fee.as_dict()
        elif credit.deposit_charged and valued.net_credit > 0:
            refund_line = DepositTransactionLine(
                position=0,
                product_id=credit.product_id,
                capacity_l=credit.capacity_l,
                quantity=quantity,
                unit_deposit=unit,
                condition=payload.condition_at_return,
                cylinder_status=payload.cylinder_status,
                refund_percentage=valued.evaluation.refund_percentage,
                deductions=line_total(unit, quantity) - valued.net_credit,
                line_total=valued.net_credit,
            )
            transaction = await ledger.post_refund(
                session,
                customer_id=credit.customer_id,
                currency_code=credit.currency_code,
                lines=[refund_line],
                refund_method=RefundMethod.account_credit,
                order_id=credit.order_id,
                notes=payload.notes,
                reference=str(credit.id),
                actor_id=actor_id,
            )
        elif not credit.deposit_charged:
            # Deferred deposit: only the shortfall against full value is owed.
            deduction = line_total(unit, quantity) - valued.net_credit
            if deduction > 0:
                transaction = await _post_chargeback(
                    session,
                    credit,
                    quantity=quantity,
                    unit_amount=unit,
                    amount=deduction,
                    notes="Return deductions",
                    actor_id=actor_id,
                    cylinder_status=payload.cylinder_status,
                )

        now = _now()
        previous = CreditStatus(credit.status)
        credit.quantity_returned = int(credit.quantity_returned) + quantity
        if credit.quantity_remaining == 0:
            next_status = CreditStatus.fully_returned
        elif previous == CreditStatus.grace_period:
            next_status = CreditStatus.grace_period
        else:
            next_status = CreditStatus.partial_returned

        credit.cylinder_status = payload.cylinder_status
        credit.condition_at_return = payload.condition_at_return
        credit.return_reason = payload.return_reason
        if payload.damage_assessment is not None:
            credit.damage_assessment = {
                **payload.damage_assessment.model_dump(mode="json"),
                "deduction_breakdown": valued.evaluation.deduction_breakdown,
            }
        if payload.original_brand or payload.accepted_brand:
            credit.original_brand = payload.original_brand
            credit.accepted_brand = payload.accepted_brand
        if valued.brand.reconciliation_status is not None:
            credit.brand_reconciliation_status = valued.brand.reconciliation_status
        credit.brand_exchange_fee = quantize_money(to_decimal(credit.brand_exchange_fee) + valued.brand.fee)
        if payload.photo_urls:
            credit.photo_urls = [*(credit.photo_urls or []), *payload.photo_urls]
        credit.actual_return_date = now.date()
        if payload.notes:
            credit.processing_notes = payload.notes
        credit.updated_by = actor_id
        credit.updated_at = now

        credit.events.append(
            EmptyReturnEvent(
                idempotency_key=key,
                quantity=quantity,
                cylinder_status=payload.cylinder_status,
                condition_at_return=payload.condition_at_return,
                refund_percentage=valued.evaluation.refund_percentage,
                original_brand=payload.original_brand,
                accepted_brand=payload.accepted_brand,
                gross_credit=valued.gross_credit,
                brand_exchange_fee=valued.brand.fee,
                credit_amount=valued.net_credit,
                lost_fee_amount=lost_fee_amount,
                deposit_transaction_id=transaction.id if transaction is not None else None,
                created_by=actor_id,
                created_at=now,
            )
        )
        _transition(
            session,
            credit,
            next_status,
            actor_id=actor_id,
            reason=payload.return_reason or f"Returned {quantity} cylinder(s)",
            quantity_change=quantity,
        )
        await session.flush()
        return False

    replayed = await unit_of_work.run_atomic(session, _work, operation="process_return")
    credit = await get_credit(session, credit_id)
    if replayed:
        metrics.record_return_replayed()
        logger.info("empty_return_replayed", extra={"credit_id": str(credit_id), "idempotency_key": key})
    else:
        metrics.record_return_processed()
        logger.info(
            "empty_return_processed",
            extra={
                "credit_id": str(credit.id),
                "customer_id": str(credit.customer_id),
                "quantity": quantity,
                "status": CreditStatus(credit.status).value,
            },
        )
    return credit


async def cancel(
    session: AsyncSession,
    credit_id: UUID,
    reason: str,
    *,
    policy: DepositPolicy | None = None,
    actor_id: UUID | None = None,
) -> EmptyReturnCredit:
    policy = policy or get_policy()
    cleaned = (reason or "").strip()
    if not cleaned:
        raise ValidationError("Cancellation reason is required")

    async def _work() -> None:
        credit = await _load_credit(session, credit_id)
        _require_open(credit)
        remaining = credit.quantity_remaining
        if remaining <= 0:
            raise CreditAlreadyClosed(credit.id, CreditStatus(credit.status).value)
        amount = credit.remaining_credit_amount
        if policy.cancel_chargeback and not credit.deposit_charged and amount > 0:
            await _post_chargeback(
                session,
                credit,
                quantity=remaining,
                unit_amount=quantize_money(credit.unit_credit_amount),
                amount=amount,
                notes=f"Empty return credit cancelled: {cleaned}",
                actor_id=actor_id,
            )
        credit.cancelled_reason = cleaned
        credit.updated_by = actor_id
        credit.updated_at = _now()
        _transition(session, credit, CreditStatus.cancelled, actor_id=actor_id, reason=cleaned)
        await session.flush()

    await unit_of_work.run_atomic(session, _work, operation="cancel_credit")
    credit = await get_credit(session, credit_id)
    metrics.record_credit_cancelled()
    logger.info("empty_return_credit_cancelled", extra={"credit_id": str(credit.id), "customer_id": str(credit.customer_id)})
    return credit


async def _expire_one(
    session: AsyncSession,
    credit_id: UUID,
    *,
    policy: DepositPolicy,
    today: date,
    result: ExpirySweepResult,
) -> str | None:
    credit = await _load_credit(session, credit_id)
    if not credit.is_open:
        return "closed"
    if today <= credit.return_deadline:
        return None

    final = final_expiration(credit)
    if today <= final:
        if CreditStatus(credit.status) == CreditStatus.grace_period:
            return None
        credit.final_expiration_date = final
        credit.updated_at = _now()
        _transition(session, credit, CreditStatus.grace_period, actor_id=None, reason="Return deadline passed, grace period started")
        await session.flush()
        return "grace"

    remaining = credit.quantity_remaining
    forfeited = credit.remaining_credit_amount
    charged = ZERO
    lost_fee = ZERO
    lost_fee_applies = policy.expiry_lost_fee and remaining > 0
    if policy.expiry_chargeback and not credit.deposit_charged and not lost_fee_applies and forfeited > 0:
        await _post_chargeback(
            session,
            credit,
            quantity=remaining,
            unit_amount=quantize_money(credit.unit_credit_amount),
            amount=forfeited,
            notes=f"Empty cylinders not returned by {final.isoformat()}",
            actor_id=None,
        )
        charged = forfeited
    if lost_fee_applies:
        fee = lost_fees.compute_fee(policy, credit.capacity_l, credit.unit_credit_amount, remaining)
        await _post_chargeback(
            session,
            credit,
            quantity=remaining,
            unit_amount=fee.unit_total_fee,
            amount=fee.total_fee,
            notes="Lost cylinder fee on expiry",
            actor_id=None,
            cylinder_status=CylinderStatus.lost,
        )
        credit.lost_cylinder_fee = fee.as_dict()
        lost_fee = fee.total_fee

    credit.forfeited_amount = quantize_money(to_decimal(credit.forfeited_amount) + forfeited)
    credit.final_expiration_date = final
    credit.updated_at = _now()
    _transition(session, credit, CreditStatus.expired, actor_id=None, reason="Final expiration date passed")
    await session.flush()

    result.forfeited_amount += forfeited
    result.charged_amount += charged
    result.lost_fee_amount += lost_fee
    return "expired"


async def expire_overdue(
    session: AsyncSession,
    *,
    policy: DepositPolicy | None = None,
    today: date | None = None,
    limit: int | None = None,
) -> ExpirySweepResult:
    """Move overdue open credits into grace, and expire those past their final date.

    Every credit commits on its own; one that loses a race with a foreground return is
    skipped and counted in ``skipped_conflicts``.
    """
    policy = policy or get_policy()
    today = today or _today()
    stmt = (
        select(EmptyReturnCredit.id)
        .where(EmptyReturnCredit.status.in_(list(OPEN_CREDIT_STATUSES)), EmptyReturnCredit.return_deadline < today)
        .order_by(EmptyReturnCredit.return_deadline, EmptyReturnCredit.created_at)
    )
    if limit:
        stmt = stmt.limit(int(limit))
    candidate_ids = list((await session.execute(stmt)).scalars().all())

    result = ExpirySweepResult()
    for credit_id in candidate_ids:
        # Amounts are only kept for the attempt that commits.
        attempt = ExpirySweepResult()

        async def _work(credit_id: UUID = credit_id, attempt: ExpirySweepResult = attempt) -> str | None:
            attempt.forfeited_amount = attempt.charged_amount = attempt.lost_fee_amount = ZERO
            return await _expire_one(session, credit_id, policy=policy, today=today, result=attempt)

        try:
            outcome = await unit_of_work.run_atomic(session, _work, operation="expire_credit")
        except ConcurrentModification:
            result.skipped_conflicts += 1
            logger.warning("empty_return_expiry_skipped", extra={"credit_id": str(credit_id)})
            continue
        if outcome == "expired":
            result.expired += 1
            result.forfeited_amount += attempt.forfeited_amount
            result.charged_amount += attempt.charged_amount
            result.lost_fee_amount += attempt.lost_fee_amount
        elif outcome == "grace":
            result.entered_grace += 1
        elif outcome == "closed":
            result.skipped_conflicts += 1

    result.processed_at = _now()
    metrics.record_credits_expired(result.expired)
    if result.expired or result.entered_grace or result.skipped_conflicts:
        logger.info(
            "empty_return_credits_expired",
            extra={
                "expired": result.expired,
                "entered_grace": result.entered_grace,
                "skipped_conflicts": result.skipped_conflicts,
                "forfeited_amount": str(result.forfeited_amount),
                "charged_amount": str(result.charged_amount),
            },
        )
    return result


async def list_credits(
    session: AsyncSession,
    *,
    customer_id: UUID | None = None,
    order_id: UUID | None = None,
    status: CreditStatus | None = None,
    page: int = 1,
    limit: int = 25,
) -> tuple[list[EmptyReturnCredit], int]:
    filters = []
    if customer_id:
        filters.append(EmptyReturnCredit.customer_id == customer_id)
    if order_id:
        filters.append(EmptyReturnCredit.order_id == order_id)
    if status is not None:
        filters.append(EmptyReturnCredit.status == status)

    page = max(1, int(page))
    limit = max(1, min(200, int(limit)))
    offset = (page - 1) * limit

    total = await session.scalar(select(func.count()).select_from(EmptyReturnCredit).where(*filters))
    rows = (
        (
            await session.execute(
                select(EmptyReturnCredit)
                .where(*filters)
                .order_by(EmptyReturnCredit.return_deadline, EmptyReturnCredit.created_at)
                .offset(offset)
                .limit(limit)
            )
        )
        .scalars()
        .all()
    )
    return list(rows), int(total or 0)


async def _open_credits(session: AsyncSession, customer_id: UUID | None) -> list[EmptyReturnCredit]:
    stmt = select(EmptyReturnCredit).where(EmptyReturnCredit.status.in_(list(OPEN_CREDIT_STATUSES)))
    if customer_id:
        stmt = stmt.where(EmptyReturnCredit.customer_id == customer_id)
    return list((await session.execute(stmt.order_by(EmptyReturnCredit.return_deadline))).scalars().all())


async def credits_summary(
    session: AsyncSession,
    *,
    customer_id: UUID | None = None,
    today: date | None = None,
) -> CreditsSummary:
    today = today or _today()
    soon = today + timedelta(days=EXPIRING_SOON_SUMMARY_DAYS)
    open_credits = await _open_credits(session, customer_id)
    return CreditsSummary(
        total_pending_credits=sum((c.remaining_credit_amount for c in open_credits), ZERO),
        total_pending_quantity=sum(c.quantity_remaining for c in open_credits),
        credits_expiring_soon=sum((c.remaining_credit_amount for c in open_credits if today <= c.return_deadline <= soon), ZERO),
        credits_overdue=sum((c.remaining_credit_amount for c in open_credits if c.return_deadline < today), ZERO),
        credits_in_grace_period=sum(1 for c in open_credits if CreditStatus(c.status) == CreditStatus.grace_period),
    )


async def credits_expiring_soon(
    session: AsyncSession,
    *,
    days: int = 3,
    today: date | None = None,
) -> list[EmptyReturnCredit]:
    today = today or _today()
    horizon = today + timedelta(days=max(0, int(days)))
    return [c for c in await _open_credits(session, None) if today <= c.return_deadline <= horizon]


async def get_status_history(session: AsyncSession, credit_id: UUID) -> list[EmptyReturnCreditStatusHistory]:
    await get_credit(session, credit_id)
    rows = (
        (
            await session.execute(
                select(EmptyReturnCreditStatusHistory)
                .where(EmptyReturnCreditStatusHistory.credit_id == credit_id)
                .order_by(EmptyReturnCreditStatusHistory.created_at)
            )
        )
        .scalars()
        .all()
    )
    return list(rows)

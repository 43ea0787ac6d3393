import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from cylinder_ledger.core import metrics
from cylinder_ledger.core.errors import (
    CreditAlreadyClosed,
    NotFound,
    QuantityExceedsRemaining,
    ValidationError,
)
from cylinder_ledger.models.credit import BrandReconciliationStatus, CreditStatus
from cylinder_ledger.models.deposit import CylinderCondition, CylinderStatus, DamageSeverity, RefundMethod, TransactionType
from cylinder_ledger.schemas.credit import ReturnProcess
from cylinder_ledger.schemas.deposit import DamageAssessment, DepositRateUpsert
from cylinder_ledger.services import balances, credits, ledger, rates


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _return(quantity: int = 1, key: str | None = None, **kwargs) -> ReturnProcess:
    return ReturnProcess(quantity=quantity, idempotency_key=key or uuid.uuid4().hex, **kwargs)


@pytest.mark.anyio
async def test_open_credit_charges_deposit_and_records_history(session_factory, policy, make_credit) -> None:
    payload = make_credit()
    async with session_factory() as session:
        credit = await credits.open_credit(session, payload, policy=policy)
        assert credit.status == CreditStatus.pending
        assert credit.total_credit_amount == Decimal("4500.00")
        assert credit.remaining_credit_amount == Decimal("4500.00")
        assert credit.grace_period_days == policy.grace_period_days
        assert credit.version == 1

        balance = await balances.get_balance(session, payload.customer_id, "KES")
        assert balance.total_deposit_balance == Decimal("4500.00")
        assert balance.pending_refunds == Decimal("4500.00")
        assert balance.open_credit_count == 1

        history = await credits.get_status_history(session, credit.id)
        assert [(row.old_status, row.new_status) for row in history] == [(None, CreditStatus.pending)]


@pytest.mark.anyio
async def test_open_credit_without_amount_uses_rate_in_force(session_factory, policy, make_credit) -> None:
    async with session_factory() as session:
        await rates.upsert_rate(
            session,
            DepositRateUpsert(
                capacity_l=Decimal("6"),
                deposit_amount=Decimal("900.00"),
                currency_code="KES",
                effective_date=_today() - timedelta(days=10),
            ),
        )
        payload = make_credit(capacity="6", quantity=2, charge_deposit=False).model_copy(update={"unit_credit_amount": None})
        credit = await credits.open_credit(session, payload, policy=policy)
        assert credit.unit_credit_amount == Decimal("900.00")
        assert credit.total_credit_amount == Decimal("1800.00")

        balance = await balances.get_balance(session, payload.customer_id, "KES")
        assert balance.total_deposit_balance == Decimal("0.00")


@pytest.mark.anyio
async def test_damaged_return_moves_credit_to_partial(session_factory, policy, make_credit) -> None:
    payload = make_credit()
    async with session_factory() as session:
        credit = await credits.open_credit(session, payload, policy=policy)
        credit = await credits.process_return(
            session,
            credit.id,
            _return(
                cylinder_status=CylinderStatus.damaged,
                damage_assessment=DamageAssessment(
                    damage_type="dented_body", severity=DamageSeverity.moderate, repair_cost_estimate=Decimal("400")
                ),
            ),
            policy=policy,
        )
        assert credit.status == CreditStatus.partial_returned
        assert credit.quantity_returned == 1
        assert credit.quantity_remaining == 2
        assert credit.remaining_credit_amount == Decimal("3000.00")
        assert credit.damage_assessment["deduction_breakdown"]["deduction_pct"] == "40"

        [event] = credit.events
        assert event.refund_percentage == Decimal("60")
        assert event.credit_amount == Decimal("900.00")

        refund = await ledger.get_transaction(session, event.deposit_transaction_id)
        assert refund.transaction_type == TransactionType.refund
        assert refund.refund_method == RefundMethod.account_credit
        assert refund.amount == Decimal("900.00")

        balance = await balances.get_balance(session, payload.customer_id, "KES")
        assert balance.total_deposit_balance == Decimal("3600.00")
        assert balance.pending_refunds == Decimal("3000.00")


@pytest.mark.anyio
async def test_return_quantity_boundaries(session_factory, policy, make_credit) -> None:
    async with session_factory() as session:
        credit = await credits.open_credit(session, make_credit(quantity=3), policy=policy)
        credit_id = credit.id

        with pytest.raises(QuantityExceedsRemaining) as excinfo:
            await credits.process_return(session, credit_id, _return(4), policy=policy)
        assert excinfo.value.remaining == 3

        credit = await credits.process_return(session, credit_id, _return(2), policy=policy)
        assert credit.status == CreditStatus.partial_returned

        credit = await credits.process_return(session, credit_id, _return(1), policy=policy)
        assert credit.status == CreditStatus.fully_returned
        assert credit.quantity_remaining == 0
        assert credit.remaining_credit_amount == Decimal("0.00")

        with pytest.raises(CreditAlreadyClosed):
            await credits.process_return(session, credit_id, _return(1), policy=policy)
        with pytest.raises(NotFound):
            await credits.process_return(session, uuid.uuid4(), _return(1), policy=policy)


@pytest.mark.anyio
async def test_good_return_without_condition_refunds_full_unit(session_factory, policy, make_credit) -> None:
    payload = make_credit(quantity=1)
    async with session_factory() as session:
        credit = await credits.open_credit(session, payload, policy=policy)
        credit = await credits.process_return(session, credit.id, _return(), policy=policy)
        assert credit.status == CreditStatus.fully_returned
        assert credit.events[0].credit_amount == Decimal("1500.00")

        balance = await balances.get_balance(session, payload.customer_id, "KES")
        assert balance.total_deposit_balance == Decimal("0.00")


@pytest.mark.anyio
async def test_replayed_idempotency_key_is_applied_once(session_factory, policy, make_credit) -> None:
    payload = make_credit()
    async with session_factory() as session:
        credit = await credits.open_credit(session, payload, policy=policy)
        request = _return(1, key="scan-0001", condition_at_return=CylinderCondition.good)

        first = await credits.process_return(session, credit.id, request, policy=policy)
        second = await credits.process_return(session, credit.id, request, policy=policy)
        assert second.quantity_returned == first.quantity_returned == 1
        assert second.version == first.version
        assert len(second.events) == 1

        rows, total = await ledger.get_history(session, payload.customer_id, transaction_type=TransactionType.refund)
        assert total == 1
        assert rows[0].amount == Decimal("1350.00")

        other = await credits.open_credit(session, make_credit(), policy=policy)
        with pytest.raises(ValidationError):
            await credits.process_return(session, other.id, request, policy=policy)

    assert metrics.snapshot()["returns_processed"] == 1
    assert metrics.snapshot()["returns_replayed"] == 1


@pytest.mark.anyio
async def test_lost_return_charges_lost_cylinder_fee(session_factory, policy, make_credit) -> None:
    payload = make_credit(quantity=2)
    async with session_factory() as session:
        credit = await credits.open_credit(session, payload, policy=policy)
        credit = await credits.process_return(session, credit.id, _return(1, cylinder_status=CylinderStatus.lost), policy=policy)

        assert credit.status == CreditStatus.partial_returned
        assert credit.lost_cylinder_fee["total_fee"] == "6900.00"
        event = credit.events[0]
        assert event.credit_amount == Decimal("0.00")
        assert event.lost_fee_amount == Decimal("6900.00")

        charge = await ledger.get_transaction(session, event.deposit_transaction_id)
        assert charge.transaction_type == TransactionType.charge
        assert charge.amount == Decimal("6900.00")

        balance = await balances.get_balance(session, payload.customer_id, "KES")
        assert balance.total_deposit_balance == Decimal("9900.00")


@pytest.mark.anyio
async def test_cross_brand_return_deducts_exchange_fee(session_factory, policy, make_credit) -> None:
    async with session_factory() as session:
        credit = await credits.open_credit(session, make_credit(quantity=2), policy=policy)
        credit = await credits.process_return(
            session,
            credit.id,
            _return(2, condition_at_return=CylinderCondition.excellent, original_brand="TOTAL", accepted_brand="K-GAS"),
            policy=policy,
        )
        assert credit.status == CreditStatus.fully_returned
        assert credit.brand_exchange_fee == Decimal("100.00")
        assert credit.brand_reconciliation_status == BrandReconciliationStatus.pending
        event = credit.events[0]
        assert event.gross_credit == Decimal("3000.00")
        assert event.credit_amount == Decimal("2900.00")


@pytest.mark.anyio
async def test_cancel_keeps_deposit_already_charged(session_factory, policy, make_credit) -> None:
    payload = make_credit(quantity=3)
    async with session_factory() as session:
        credit = await credits.open_credit(session, payload, policy=policy)
        credit_id = credit.id
        await credits.process_return(session, credit_id, _return(1, condition_at_return=CylinderCondition.excellent), policy=policy)

        with pytest.raises(ValidationError):
            await credits.cancel(session, credit_id, "   ", policy=policy)

        credit = await credits.cancel(session, credit_id, "Order returned in full", policy=policy)
        assert credit.status == CreditStatus.cancelled
        assert credit.cancelled_reason == "Order returned in full"

        rows, _ = await ledger.get_history(session, payload.customer_id, transaction_type=TransactionType.charge)
        assert [row.amount for row in rows] == [Decimal("4500.00")]
        balance = await balances.get_balance(session, payload.customer_id, "KES")
        assert balance.total_deposit_balance == Decimal("3000.00")

        with pytest.raises(CreditAlreadyClosed):
            await credits.cancel(session, credit_id, "again", policy=policy)

        history = await credits.get_status_history(session, credit_id)
        assert [row.new_status for row in history] == [
            CreditStatus.pending,
            CreditStatus.partial_returned,
            CreditStatus.cancelled,
        ]
        assert history[1].quantity_returned_change == 1


@pytest.mark.anyio
async def test_deferred_deposit_charges_deductions_and_cancelled_remainder(session_factory, policy, make_credit) -> None:
    payload = make_credit(quantity=3, charge_deposit=False)
    async with session_factory() as session:
        credit = await credits.open_credit(session, payload, policy=policy)
        credit_id = credit.id
        assert credit.deposit_charged is False

        credit = await credits.process_return(session, credit_id, _return(1), policy=policy)
        assert credit.events[0].credit_amount == Decimal("1500.00")
        assert credit.events[0].deposit_transaction_id is None

        credit = await credits.process_return(
            session,
            credit_id,
            _return(
                cylinder_status=CylinderStatus.damaged,
                damage_assessment=DamageAssessment(damage_type="dented_body", severity=DamageSeverity.moderate),
            ),
            policy=policy,
        )
        deduction = await ledger.get_transaction(session, credit.events[1].deposit_transaction_id)
        assert deduction.transaction_type == TransactionType.charge
        assert deduction.amount == Decimal("600.00")

        await credits.cancel(session, credit_id, "Customer kept the last cylinder", policy=policy)

        rows, _ = await ledger.get_history(session, payload.customer_id, transaction_type=TransactionType.refund)
        assert rows == []
        rows, _ = await ledger.get_history(session, payload.customer_id, transaction_type=TransactionType.charge)
        assert sorted(row.amount for row in rows) == [Decimal("600.00"), Decimal("1500.00")]
        balance = await balances.get_balance(session, payload.customer_id, "KES")
        assert balance.total_deposit_balance == Decimal("2100.00")


@pytest.mark.anyio
async def test_summary_and_expiring_soon(session_factory, policy, make_credit) -> None:
    customer_id = uuid.uuid4()
    today = _today()
    async with session_factory() as session:
        await credits.open_credit(session, make_credit(customer_id=customer_id, quantity=1, deadline=today + timedelta(days=2)), policy=policy)
        await credits.open_credit(session, make_credit(customer_id=customer_id, quantity=2, deadline=today + timedelta(days=20)), policy=policy)
        await credits.open_credit(session, make_credit(customer_id=customer_id, quantity=1, deadline=today - timedelta(days=1)), policy=policy)

        summary = await credits.credits_summary(session, customer_id=customer_id, today=today)
        assert summary.total_pending_credits == Decimal("6000.00")
        assert summary.total_pending_quantity == 4
        assert summary.credits_expiring_soon == Decimal("1500.00")
        assert summary.credits_overdue == Decimal("1500.00")
        assert summary.credits_in_grace_period == 0

        soon = await credits.credits_expiring_soon(session, days=3, today=today)
        assert [credit.quantity for credit in soon] == [1]

        rows, total = await credits.list_credits(session, customer_id=customer_id, status=CreditStatus.pending, limit=2)
        assert total == 3
        assert len(rows) == 2
        assert rows[0].return_deadline == today - timedelta(days=1)

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
import uuid

import pytest

from cylinder_ledger.core import metrics
from cylinder_ledger.core.errors import CreditAlreadyClosed
from cylinder_ledger.models.credit import CreditStatus
from cylinder_ledger.models.deposit import CylinderCondition, TransactionType
from cylinder_ledger.schemas.credit import ReturnProcess
from cylinder_ledger.services import balances, credit_expiration_scheduler, credits, ledger


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _return(quantity: int = 1) -> ReturnProcess:
    return ReturnProcess(quantity=quantity, idempotency_key=uuid.uuid4().hex, condition_at_return=CylinderCondition.excellent)


@pytest.mark.anyio
async def test_expiry_forfeits_deposit_already_charged(session_factory, policy, make_credit) -> None:
    payload = make_credit(quantity=2, deadline=_today() - timedelta(days=1), grace_days=0)
    async with session_factory() as session:
        credit = await credits.open_credit(session, payload, policy=policy)

        result = await credits.expire_overdue(session, policy=policy)
        assert result.expired == 1
        assert result.entered_grace == 0
        assert result.forfeited_amount == Decimal("3000.00")
        assert result.charged_amount == Decimal("0.00")

        credit = await credits.get_credit(session, credit.id)
        assert credit.status == CreditStatus.expired
        assert credit.forfeited_amount == Decimal("3000.00")
        assert credit.final_expiration_date == payload.return_deadline

        with pytest.raises(CreditAlreadyClosed):
            await credits.process_return(session, credit.id, _return(), policy=policy)

        rows, _ = await ledger.get_history(session, payload.customer_id, transaction_type=TransactionType.charge)
        assert [row.amount for row in rows] == [Decimal("3000.00")]

        again = await credits.expire_overdue(session, policy=policy)
        assert again.expired == 0
    assert metrics.snapshot()["credits_expired"] == 1


@pytest.mark.anyio
async def test_expiry_charges_back_deferred_deposit(session_factory, policy, make_credit) -> None:
    payload = make_credit(quantity=2, deadline=_today() - timedelta(days=1), grace_days=0, charge_deposit=False)
    async with session_factory() as session:
        await credits.open_credit(session, payload, policy=policy)

        result = await credits.expire_overdue(session, policy=policy)
        assert result.expired == 1
        assert result.forfeited_amount == Decimal("3000.00")
        assert result.charged_amount == Decimal("3000.00")

        balance = await balances.get_balance(session, payload.customer_id, "KES")
        assert balance.total_deposit_balance == Decimal("3000.00")


@pytest.mark.anyio
async def test_grace_period_then_expiry(session_factory, policy, make_credit) -> None:
    today = _today()
    payload = make_credit(quantity=3, deadline=today - timedelta(days=2), grace_days=7)
    async with session_factory() as session:
        credit = await credits.open_credit(session, payload, policy=policy)

        result = await credits.expire_overdue(session, policy=policy, today=today)
        assert result.entered_grace == 1
        assert result.expired == 0
        credit = await credits.get_credit(session, credit.id)
        assert credit.status == CreditStatus.grace_period
        assert credit.final_expiration_date == today + timedelta(days=5)

        # Still in grace: a second sweep leaves it alone.
        result = await credits.expire_overdue(session, policy=policy, today=today + timedelta(days=1))
        assert result.entered_grace == 0

        credit = await credits.process_return(session, credit.id, _return(), policy=policy)
        assert credit.status == CreditStatus.grace_period
        assert credit.quantity_remaining == 2

        summary = await credits.credits_summary(session, customer_id=payload.customer_id, today=today)
        assert summary.credits_in_grace_period == 1

        result = await credits.expire_overdue(session, policy=policy, today=today + timedelta(days=6))
        assert result.expired == 1
        assert result.forfeited_amount == Decimal("3000.00")
        credit = await credits.get_credit(session, credit.id)
        assert credit.status == CreditStatus.expired

        history = await credits.get_status_history(session, credit.id)
        assert [row.new_status for row in history] == [
            CreditStatus.pending,
            CreditStatus.grace_period,
            CreditStatus.grace_period,
            CreditStatus.expired,
        ]


@pytest.mark.anyio
async def test_expiry_can_charge_lost_fee_instead_of_chargeback(session_factory, policy, make_credit) -> None:
    lost_fee_policy = replace(policy, expiry_chargeback=False, expiry_lost_fee=True)
    payload = make_credit(quantity=1, deadline=_today() - timedelta(days=30))
    async with session_factory() as session:
        credit = await credits.open_credit(session, payload, policy=lost_fee_policy)
        result = await credits.expire_overdue(session, policy=lost_fee_policy)
        assert result.expired == 1
        assert result.charged_amount == Decimal("0.00")
        assert result.lost_fee_amount == Decimal("6900.00")

        credit = await credits.get_credit(session, credit.id)
        assert credit.lost_cylinder_fee["total_fee"] == "6900.00"

        balance = await balances.get_balance(session, payload.customer_id, "KES")
        assert balance.total_deposit_balance == Decimal("8400.00")


@pytest.mark.anyio
async def test_expiry_lost_fee_replaces_deferred_chargeback(session_factory, policy, make_credit) -> None:
    both_policy = replace(policy, expiry_lost_fee=True)
    assert both_policy.expiry_chargeback is True
    payload = make_credit(quantity=1, deadline=_today() - timedelta(days=30), charge_deposit=False)
    async with session_factory() as session:
        await credits.open_credit(session, payload, policy=both_policy)
        result = await credits.expire_overdue(session, policy=both_policy)
        assert result.charged_amount == Decimal("0.00")
        assert result.lost_fee_amount == Decimal("6900.00")

        rows, _ = await ledger.get_history(session, payload.customer_id, transaction_type=TransactionType.charge)
        assert [row.amount for row in rows] == [Decimal("6900.00")]
        balance = await balances.get_balance(session, payload.customer_id, "KES")
        assert balance.total_deposit_balance == Decimal("6900.00")


@pytest.mark.anyio
async def test_return_racing_expiry_surfaces_closed_credit(session_factory, policy, make_credit, monkeypatch) -> None:
    payload = make_credit(quantity=3, deadline=_today() - timedelta(days=30))
    async with session_factory() as session:
        credit = await credits.open_credit(session, payload, policy=policy)
    credit_id = credit.id

    original_load = credits._load_credit
    calls = {"count": 0}

    async def load_then_expire(session, credit_id):
        loaded = await original_load(session, credit_id)
        calls["count"] += 1
        if calls["count"] == 1:
            async with session_factory() as sweeper:
                sweep = await credits.expire_overdue(sweeper, policy=policy)
                assert sweep.expired == 1
        return loaded

    monkeypatch.setattr(credits, "_load_credit", load_then_expire)

    async with session_factory() as session:
        with pytest.raises(CreditAlreadyClosed):
            await credits.process_return(session, credit_id, _return(), policy=policy)

        credit = await credits.get_credit(session, credit_id)
        assert credit.status == CreditStatus.expired
        assert credit.quantity_returned == 0
        assert credit.events == []

        rows, _ = await ledger.get_history(session, payload.customer_id, transaction_type=TransactionType.refund)
        assert rows == []

    assert calls["count"] == 3
    assert metrics.snapshot()["optimistic_conflicts"] == 1


@pytest.mark.anyio
async def test_scheduler_run_once_uses_session_factory(session_factory, make_credit, monkeypatch) -> None:
    payload = make_credit(quantity=1, deadline=_today() - timedelta(days=30))
    async with session_factory() as session:
        credit = await credits.open_credit(session, payload)

    monkeypatch.setattr(credit_expiration_scheduler, "SessionLocal", session_factory)
    result = await credit_expiration_scheduler.run_once()
    assert result.expired == 1
    assert result.processed_at is not None

    async with session_factory() as session:
        credit = await credits.get_credit(session, credit.id)
        assert credit.status == CreditStatus.expired

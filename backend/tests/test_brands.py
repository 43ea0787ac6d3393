from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import MappingProxyType

import pytest

from cylinder_ledger.models.credit import BrandReconciliationStatus
from cylinder_ledger.schemas.credit import ReturnProcess
from cylinder_ledger.services import brands, credits
from cylinder_ledger.services.policy import DepositPolicy


def test_matching_brands_cost_nothing() -> None:
    result = brands.exchange_fee(DepositPolicy(), "Total", "TOTAL", 2)
    assert result.fee == Decimal("0")
    assert result.reconciliation_status == BrandReconciliationStatus.matched


def test_missing_brand_side_is_not_an_exchange() -> None:
    result = brands.exchange_fee(DepositPolicy(), "TOTAL", None, 2)
    assert result.fee == Decimal("0")
    assert result.reconciliation_status is None


def test_generic_brand_is_accepted_free() -> None:
    result = brands.exchange_fee(DepositPolicy(), "TOTAL", "generic", 3)
    assert result.fee == Decimal("0")
    assert result.reconciliation_status == BrandReconciliationStatus.generic_accepted


def test_cross_brand_fee_per_unit_with_override() -> None:
    policy = DepositPolicy(brand_exchange_fee_overrides=MappingProxyType({"SHELL": Decimal("75")}))
    assert brands.exchange_fee(policy, "TOTAL", "K-GAS", 2).fee == Decimal("100.00")
    shell = brands.exchange_fee(policy, "TOTAL", "shell", 2)
    assert shell.fee == Decimal("150.00")
    assert shell.reconciliation_status == BrandReconciliationStatus.pending


@pytest.mark.anyio
async def test_brand_fee_is_clamped_and_reported(session_factory, make_credit) -> None:
    policy = DepositPolicy(brand_exchange_fee=Decimal("500.00"))
    async with session_factory() as session:
        credit = await credits.open_credit(session, make_credit(quantity=2, unit="400.00"), policy=policy)
        credit = await credits.process_return(
            session,
            credit.id,
            ReturnProcess(
                quantity=2,
                condition_at_return="good",
                idempotency_key="brand-1",
                original_brand="TOTAL",
                accepted_brand="K-GAS",
            ),
            policy=policy,
        )
        event = credit.events[0]
        assert event.gross_credit == Decimal("720.00")
        assert event.brand_exchange_fee == Decimal("1000.00")
        assert event.credit_amount == Decimal("0.00")
        assert event.deposit_transaction_id is None
        assert credit.brand_reconciliation_status == BrandReconciliationStatus.pending

        today = datetime.now(timezone.utc).date()
        report = await brands.reconciliation_report(
            session, from_date=today - timedelta(days=1), to_date=today + timedelta(days=1)
        )
        by_brand = {balance.brand_code: balance for balance in report.brand_balances}
        assert by_brand["TOTAL"].cylinders_given == 2
        assert by_brand["K-GAS"].cylinders_received == 2
        assert by_brand["K-GAS"].pending_reconciliation == 2
        assert report.total_exchange_fees == Decimal("1000.00")
        assert report.pending_reconciliations == 1

        updated = await brands.update_reconciliation_status(session, [credit.id], BrandReconciliationStatus.matched)
        assert updated == 1
        refreshed = await credits.get_credit(session, credit.id)
        assert refreshed.brand_reconciliation_status == BrandReconciliationStatus.matched

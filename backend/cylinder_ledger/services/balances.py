from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cylinder_ledger.models.credit import OPEN_CREDIT_STATUSES, EmptyReturnCredit
from cylinder_ledger.models.deposit import CustomerDepositAccount
from cylinder_ledger.services import ledger, unit_of_work
from cylinder_ledger.services.pricing import ZERO, clamp_non_negative, quantize_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CustomerDepositBalance:
    customer_id: UUID
    currency_code: str
    total_deposit_balance: Decimal
    pending_refunds: Decimal
    available_for_refund: Decimal
    open_credit_count: int
    as_of: datetime


@dataclass(frozen=True)
class AccountReconciliation:
    customer_id: UUID
    currency_code: str
    cached_balance: Decimal
    ledger_balance: Decimal
    corrected: bool

    @property
    def drift(self) -> Decimal:
        return self.ledger_balance - self.cached_balance


async def recompute_balance(session: AsyncSession, customer_id: UUID, currency_code: str) -> Decimal:
    """Balance straight from the log: charges - refunds + adjustments, voided rows excluded."""
    totals = await ledger.transaction_totals(session, customer_id, currency_code)
    return quantize_money(totals.current_balance)


async def get_balance(session: AsyncSession, customer_id: UUID, currency_code: str) -> CustomerDepositBalance:
    """Deposits and pending credits are separate pools.

    ``pending_refunds`` reports what open credits may still pay out, but it is not
    reserved against the deposit balance, so ``available_for_refund`` is just the
    non-negative part of the balance.
    """
    currency = currency_code.strip().upper()
    total = await recompute_balance(session, customer_id, currency)

    credits = (
        (
            await session.execute(
                select(EmptyReturnCredit).where(
                    EmptyReturnCredit.customer_id == customer_id,
                    EmptyReturnCredit.currency_code == currency,
                    EmptyReturnCredit.status.in_(list(OPEN_CREDIT_STATUSES)),
                )
            )
        )
        .scalars()
        .all()
    )
    pending = sum((credit.remaining_credit_amount for credit in credits), ZERO)
    return CustomerDepositBalance(
        customer_id=customer_id,
        currency_code=currency,
        total_deposit_balance=total,
        pending_refunds=quantize_money(pending),
        available_for_refund=clamp_non_negative(total),
        open_credit_count=len(credits),
        as_of=datetime.now(timezone.utc),
    )


async def reconcile_account(session: AsyncSession, customer_id: UUID, currency_code: str) -> AccountReconciliation:
    currency = currency_code.strip().upper()

    async def _work() -> AccountReconciliation:
        account = await ledger.lock_account(session, customer_id, currency)
        cached = quantize_money(account.balance)
        actual = await recompute_balance(session, customer_id, currency)
        corrected = cached != actual
        if corrected:
            account.balance = actual
            account.updated_at = datetime.now(timezone.utc)
            await session.flush()
        return AccountReconciliation(
            customer_id=customer_id,
            currency_code=currency,
            cached_balance=cached,
            ledger_balance=actual,
            corrected=corrected,
        )

    result = await unit_of_work.run_atomic(session, _work, operation="reconcile_account")
    if result.corrected:
        logger.warning(
            "deposit_account_drift_corrected",
            extra={
                "customer_id": str(customer_id),
                "currency_code": currency,
                "cached_balance": str(result.cached_balance),
                "ledger_balance": str(result.ledger_balance),
            },
        )
    return result


async def list_accounts(session: AsyncSession, *, currency_code: str | None = None) -> list[CustomerDepositAccount]:
    stmt = select(CustomerDepositAccount).order_by(CustomerDepositAccount.customer_id)
    if currency_code:
        stmt = stmt.where(CustomerDepositAccount.currency_code == currency_code.strip().upper())
    return list((await session.execute(stmt)).scalars().all())


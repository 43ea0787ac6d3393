from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from cylinder_ledger.core.dependencies import get_actor_id, get_deposit_policy
from cylinder_ledger.db.session import get_session
from cylinder_ledger.models.deposit import TransactionType
from cylinder_ledger.schemas.common import pagination_meta
from cylinder_ledger.schemas.deposit import (
    AdjustmentRequest,
    BalanceRead,
    ChargeRequest,
    DepositRateRead,
    DepositRateRetire,
    DepositRateUpsert,
    DepositRateUpsertResponse,
    HistoryResponse,
    HistorySummary,
    LostFeeQuoteRequest,
    LostFeeRead,
    RateConflictRead,
    RefundRequest,
    TransactionRead,
    VoidRequest,
)
from cylinder_ledger.services import balances, ledger, lost_fees, rates
from cylinder_ledger.services.policy import DepositPolicy

router = APIRouter(prefix="/deposits", tags=["deposits"])


@router.get("/rates", response_model=list[DepositRateRead])
async def list_rates(
    capacity_l: Decimal | None = Query(default=None, gt=0),
    currency_code: str | None = Query(default=None, min_length=3, max_length=3),
    active_only: bool = Query(default=True),
    session: AsyncSession = Depends(get_session),
) -> list[DepositRateRead]:
    rows = await rates.list_rates(session, capacity_l=capacity_l, currency_code=currency_code, active_only=active_only)
    return [DepositRateRead.model_validate(row) for row in rows]


@router.post("/rates", response_model=DepositRateUpsertResponse)
async def upsert_rate(
    payload: DepositRateUpsert,
    session: AsyncSession = Depends(get_session),
    actor_id: UUID | None = Depends(get_actor_id),
) -> DepositRateUpsertResponse:
    result = await rates.upsert_rate(session, payload, actor_id=actor_id)
    return DepositRateUpsertResponse(
        rate=DepositRateRead.model_validate(result.rate),
        conflicts=[RateConflictRead.model_validate(conflict) for conflict in result.conflicts],
    )


@router.get("/rates/lookup", response_model=DepositRateRead)
async def lookup_rate(
    capacity_l: Decimal = Query(gt=0),
    currency_code: str | None = Query(default=None, min_length=3, max_length=3),
    as_of: date | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
    policy: DepositPolicy = Depends(get_deposit_policy),
) -> DepositRateRead:
    rate = await rates.lookup_rate(session, capacity_l, policy.currency(currency_code), as_of)
    return DepositRateRead.model_validate(rate)


@router.post("/rates/{rate_id}/retire", response_model=DepositRateRead)
async def retire_rate(
    rate_id: UUID,
    payload: DepositRateRetire,
    session: AsyncSession = Depends(get_session),
) -> DepositRateRead:
    rate = await rates.retire_rate(session, rate_id, payload.end_date)
    return DepositRateRead.model_validate(rate)


@router.post("/customers/{customer_id}/charge", response_model=TransactionRead, status_code=status.HTTP_201_CREATED)
async def charge_deposit(
    customer_id: UUID,
    payload: ChargeRequest,
    session: AsyncSession = Depends(get_session),
    actor_id: UUID | None = Depends(get_actor_id),
    policy: DepositPolicy = Depends(get_deposit_policy),
) -> TransactionRead:
    record = await ledger.charge(
        session,
        customer_id,
        payload.lines,
        currency_code=payload.currency_code,
        order_id=payload.order_id,
        notes=payload.notes,
        actor_id=actor_id,
        policy=policy,
    )
    return TransactionRead.model_validate(record)


@router.post("/customers/{customer_id}/refund", response_model=TransactionRead, status_code=status.HTTP_201_CREATED)
async def refund_deposit(
    customer_id: UUID,
    payload: RefundRequest,
    session: AsyncSession = Depends(get_session),
    actor_id: UUID | None = Depends(get_actor_id),
    policy: DepositPolicy = Depends(get_deposit_policy),
) -> TransactionRead:
    record = await ledger.refund(
        session,
        customer_id,
        payload.lines,
        refund_method=payload.refund_method,
        currency_code=payload.currency_code,
        order_id=payload.order_id,
        notes=payload.notes,
        actor_id=actor_id,
        policy=policy,
    )
    return TransactionRead.model_validate(record)


@router.post("/customers/{customer_id}/adjust", response_model=TransactionRead, status_code=status.HTTP_201_CREATED)
async def adjust_deposit(
    customer_id: UUID,
    payload: AdjustmentRequest,
    session: AsyncSession = Depends(get_session),
    actor_id: UUID | None = Depends(get_actor_id),
    policy: DepositPolicy = Depends(get_deposit_policy),
) -> TransactionRead:
    record = await ledger.adjust(
        session,
        customer_id,
        payload.amount,
        payload.reason,
        currency_code=payload.currency_code,
        actor_id=actor_id,
        policy=policy,
    )
    return TransactionRead.model_validate(record)


@router.get("/customers/{customer_id}/balance", response_model=BalanceRead)
async def customer_balance(
    customer_id: UUID,
    currency_code: str | None = Query(default=None, min_length=3, max_length=3),
    session: AsyncSession = Depends(get_session),
    policy: DepositPolicy = Depends(get_deposit_policy),
) -> BalanceRead:
    balance = await balances.get_balance(session, customer_id, policy.currency(currency_code))
    return BalanceRead.model_validate(balance, from_attributes=True)


@router.get("/customers/{customer_id}/history", response_model=HistoryResponse)
async def customer_history(
    customer_id: UUID,
    currency_code: str | None = Query(default=None, min_length=3, max_length=3),
    transaction_type: TransactionType | None = Query(default=None),
    include_voided: bool = Query(default=False),
    from_date: date | None = Query(default=None),
    to_date: date | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=25, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
    policy: DepositPolicy = Depends(get_deposit_policy),
) -> HistoryResponse:
    rows, total_items = await ledger.get_history(
        session,
        customer_id,
        currency_code=currency_code,
        transaction_type=transaction_type,
        include_voided=include_voided,
        from_date=from_date,
        to_date=to_date,
        page=page,
        limit=limit,
    )
    totals = await ledger.summarize_history(session, customer_id, policy.currency(currency_code))
    return HistoryResponse(
        customer_id=customer_id,
        items=[TransactionRead.model_validate(row) for row in rows],
        meta=pagination_meta(total_items=total_items, page=page, limit=limit),
        summary=HistorySummary(
            total_charged=totals.total_charged,
            total_refunded=totals.total_refunded,
            total_adjustments=totals.total_adjustments,
            current_balance=totals.current_balance,
        ),
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionRead)
async def get_transaction(transaction_id: UUID, session: AsyncSession = Depends(get_session)) -> TransactionRead:
    return TransactionRead.model_validate(await ledger.get_transaction(session, transaction_id))


@router.post("/transactions/{transaction_id}/void", response_model=TransactionRead)
async def void_transaction(
    transaction_id: UUID,
    payload: VoidRequest,
    session: AsyncSession = Depends(get_session),
    actor_id: UUID | None = Depends(get_actor_id),
) -> TransactionRead:
    record = await ledger.void(session, transaction_id, payload.reason, actor_id=actor_id)
    return TransactionRead.model_validate(record)


@router.post("/lost-fee/quote", response_model=LostFeeRead)
def quote_lost_fee(payload: LostFeeQuoteRequest, policy: DepositPolicy = Depends(get_deposit_policy)) -> LostFeeRead:
    fee = lost_fees.compute_fee(policy, payload.capacity_l, payload.unit_deposit, payload.quantity)
    return LostFeeRead.model_validate(fee)

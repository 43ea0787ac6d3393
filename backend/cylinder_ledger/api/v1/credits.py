from __future__ import annotations

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from cylinder_ledger.core.dependencies import get_actor_id, get_deposit_policy
from cylinder_ledger.db.session import get_session
from cylinder_ledger.models.credit import CreditStatus
from cylinder_ledger.schemas.common import pagination_meta
from cylinder_ledger.schemas.credit import (
    BrandReconciliationReportRead,
    BrandReconciliationUpdate,
    BrandReconciliationUpdateRead,
    CreditCancel,
    CreditCreate,
    CreditListResponse,
    CreditRead,
    CreditSummaryRead,
    ExpiryRunRead,
    ReturnProcess,
    StatusHistoryRead,
)
from cylinder_ledger.services import brands, credits
from cylinder_ledger.services.policy import DepositPolicy

router = APIRouter(prefix="/empty-returns", tags=["empty-returns"])


@router.post("", response_model=CreditRead, status_code=status.HTTP_201_CREATED)
async def open_credit(
    payload: CreditCreate,
    session: AsyncSession = Depends(get_session),
    actor_id: UUID | None = Depends(get_actor_id),
    policy: DepositPolicy = Depends(get_deposit_policy),
) -> CreditRead:
    credit = await credits.open_credit(session, payload, policy=policy, actor_id=actor_id)
    return CreditRead.model_validate(credit)


@router.get("", response_model=CreditListResponse)
async def list_credits(
    customer_id: UUID | None = Query(default=None),
    order_id: UUID | None = Query(default=None),
    status_filter: CreditStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=25, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
) -> CreditListResponse:
    rows, total_items = await credits.list_credits(
        session, customer_id=customer_id, order_id=order_id, status=status_filter, page=page, limit=limit
    )
    return CreditListResponse(
        items=[CreditRead.model_validate(row) for row in rows],
        meta=pagination_meta(total_items=total_items, page=page, limit=limit),
    )


@router.get("/summary", response_model=CreditSummaryRead)
async def credits_summary(
    customer_id: UUID | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> CreditSummaryRead:
    summary = await credits.credits_summary(session, customer_id=customer_id)
    return CreditSummaryRead.model_validate(summary, from_attributes=True)


@router.post("/expire", response_model=ExpiryRunRead)
async def expire_overdue(
    today: date | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
    policy: DepositPolicy = Depends(get_deposit_policy),
) -> ExpiryRunRead:
    result = await credits.expire_overdue(session, policy=policy, today=today)
    return ExpiryRunRead.model_validate(result)


@router.get("/brand-reconciliation", response_model=BrandReconciliationReportRead)
async def brand_reconciliation_report(
    from_date: date = Query(),
    to_date: date = Query(),
    brand_code: str | None = Query(default=None, max_length=40),
    session: AsyncSession = Depends(get_session),
) -> BrandReconciliationReportRead:
    report = await brands.reconciliation_report(session, from_date=from_date, to_date=to_date, brand_code=brand_code)
    return BrandReconciliationReportRead.model_validate(report)


@router.post("/brand-reconciliation", response_model=BrandReconciliationUpdateRead)
async def update_brand_reconciliation(
    payload: BrandReconciliationUpdate,
    session: AsyncSession = Depends(get_session),
) -> BrandReconciliationUpdateRead:
    updated = await brands.update_reconciliation_status(session, payload.credit_ids, payload.new_status)
    return BrandReconciliationUpdateRead(updated_count=updated, new_status=payload.new_status)


@router.get("/{credit_id}", response_model=CreditRead)
async def get_credit(credit_id: UUID, session: AsyncSession = Depends(get_session)) -> CreditRead:
    return CreditRead.model_validate(await credits.get_credit(session, credit_id))


@router.get("/{credit_id}/history", response_model=list[StatusHistoryRead])
async def credit_status_history(credit_id: UUID, session: AsyncSession = Depends(get_session)) -> list[StatusHistoryRead]:
    rows = await credits.get_status_history(session, credit_id)
    return [StatusHistoryRead.model_validate(row) for row in rows]


@router.post("/{credit_id}/returns", response_model=CreditRead)
async def process_return(
    credit_id: UUID,
    payload: ReturnProcess,
    session: AsyncSession = Depends(get_session),
    actor_id: UUID | None = Depends(get_actor_id),
    policy: DepositPolicy = Depends(get_deposit_policy),
) -> CreditRead:
    credit = await credits.process_return(session, credit_id, payload, policy=policy, actor_id=actor_id)
    return CreditRead.model_validate(credit)


@router.post("/{credit_id}/cancel", response_model=CreditRead)
async def cancel_credit(
    credit_id: UUID,
    payload: CreditCancel,
    session: AsyncSession = Depends(get_session),
    actor_id: UUID | None = Depends(get_actor_id),
    policy: DepositPolicy = Depends(get_deposit_policy),
) -> CreditRead:
    credit = await credits.cancel(session, credit_id, payload.reason, policy=policy, actor_id=actor_id)
    return CreditRead.model_validate(credit)

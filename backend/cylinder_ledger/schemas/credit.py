from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cylinder_ledger.models.credit import BrandReconciliationStatus, CreditStatus
from cylinder_ledger.models.deposit import CylinderCondition, CylinderStatus
from cylinder_ledger.schemas.common import PaginationMeta, normalize_currency
from cylinder_ledger.schemas.deposit import DamageAssessment


class CreditCreate(BaseModel):
    order_id: UUID
    customer_id: UUID
    product_id: UUID
    capacity_l: Decimal = Field(gt=0)
    quantity: int = Field(ge=1)
    unit_credit_amount: Decimal | None = Field(default=None, ge=0)
    currency_code: str | None = Field(default=None, min_length=3, max_length=3)
    expected_return_date: date | None = None
    return_deadline: date | None = None
    grace_period_days: int | None = Field(default=None, ge=0, le=365)
    notes: str | None = Field(default=None, max_length=2000)
    charge_deposit: bool = False

    @field_validator("currency_code")
    @classmethod
    def validate_currency(cls, value: str | None) -> str | None:
        return normalize_currency(value)

    @model_validator(mode="after")
    def validate_dates(self) -> "CreditCreate":
        if self.expected_return_date and self.return_deadline and self.return_deadline < self.expected_return_date:
            raise ValueError("return_deadline cannot be before expected_return_date")
        return self


class ReturnProcess(BaseModel):
    quantity: int = Field(ge=1)
    cylinder_status: CylinderStatus = CylinderStatus.good
    condition_at_return: CylinderCondition | None = None
    idempotency_key: str = Field(min_length=1, max_length=120)
    return_reason: str | None = Field(default=None, max_length=2000)
    notes: str | None = Field(default=None, max_length=2000)
    original_brand: str | None = Field(default=None, max_length=40)
    accepted_brand: str | None = Field(default=None, max_length=40)
    damage_assessment: DamageAssessment | None = None
    photo_urls: list[str] = Field(default_factory=list)


class CreditCancel(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class ReturnEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    idempotency_key: str
    quantity: int
    cylinder_status: CylinderStatus
    condition_at_return: CylinderCondition | None = None
    refund_percentage: Decimal
    original_brand: str | None = None
    accepted_brand: str | None = None
    gross_credit: Decimal
    brand_exchange_fee: Decimal
    credit_amount: Decimal
    lost_fee_amount: Decimal
    deposit_transaction_id: UUID | None = None
    created_at: datetime


class CreditRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    customer_id: UUID
    product_id: UUID
    capacity_l: Decimal
    quantity: int
    quantity_returned: int
    quantity_remaining: int
    unit_credit_amount: Decimal
    total_credit_amount: Decimal
    remaining_credit_amount: Decimal
    currency_code: str
    expected_return_date: date | None = None
    return_deadline: date
    grace_period_days: int
    final_expiration_date: date | None = None
    actual_return_date: date | None = None
    status: CreditStatus
    cylinder_status: CylinderStatus | None = None
    condition_at_return: CylinderCondition | None = None
    return_reason: str | None = None
    damage_assessment: dict | None = None
    lost_cylinder_fee: dict | None = None
    original_brand: str | None = None
    accepted_brand: str | None = None
    brand_reconciliation_status: BrandReconciliationStatus | None = None
    brand_exchange_fee: Decimal
    photo_urls: list[str] | None = None
    cancelled_reason: str | None = None
    forfeited_amount: Decimal
    deposit_charged: bool
    processing_notes: str | None = None
    version: int
    created_at: datetime
    updated_at: datetime
    events: list[ReturnEventRead] = Field(default_factory=list)


class CreditListResponse(BaseModel):
    items: list[CreditRead]
    meta: PaginationMeta


class CreditSummaryRead(BaseModel):
    total_pending_credits: Decimal
    total_pending_quantity: int
    credits_expiring_soon: Decimal
    credits_overdue: Decimal
    credits_in_grace_period: int


class StatusHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    credit_id: UUID
    old_status: CreditStatus | None = None
    new_status: CreditStatus
    quantity_returned_change: int
    changed_by: UUID | None = None
    change_reason: str | None = None
    created_at: datetime


class ExpiryRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    expired: int
    entered_grace: int
    skipped_conflicts: int
    forfeited_amount: Decimal
    charged_amount: Decimal
    lost_fee_amount: Decimal
    processed_at: datetime


class BrandReconciliationUpdate(BaseModel):
    credit_ids: list[UUID] = Field(min_length=1)
    new_status: BrandReconciliationStatus


class BrandReconciliationUpdateRead(BaseModel):
    updated_count: int
    new_status: BrandReconciliationStatus


class BrandBalanceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    brand_code: str
    capacity_l: Decimal
    cylinders_given: int
    cylinders_received: int
    net_balance: int
    pending_reconciliation: int


class BrandReconciliationReportRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_date: date
    to_date: date
    brand_balances: list[BrandBalanceRead]
    total_exchange_fees: Decimal
    pending_reconciliations: int

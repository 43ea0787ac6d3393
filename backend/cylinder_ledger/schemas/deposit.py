from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cylinder_ledger.models.deposit import CylinderCondition, CylinderStatus, DamageSeverity, RefundMethod, TransactionType
from cylinder_ledger.schemas.common import PaginationMeta, normalize_currency


class DamageAssessment(BaseModel):
    damage_type: str = Field(min_length=1, max_length=80)
    severity: DamageSeverity
    repair_cost_estimate: Decimal | None = Field(default=None, ge=0)
    description: str | None = Field(default=None, max_length=2000)
    photos: list[str] = Field(default_factory=list)


class DepositRateUpsert(BaseModel):
    id: UUID | None = None
    capacity_l: Decimal = Field(gt=0)
    deposit_amount: Decimal = Field(ge=0)
    currency_code: str = Field(min_length=3, max_length=3)
    effective_date: date
    end_date: date | None = None
    is_active: bool = True
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("currency_code")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        return normalize_currency(value) or value

    @model_validator(mode="after")
    def validate_window(self) -> "DepositRateUpsert":
        if self.end_date is not None and self.end_date <= self.effective_date:
            raise ValueError("end_date must be after effective_date")
        return self


class DepositRateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    capacity_l: Decimal
    deposit_amount: Decimal
    currency_code: str
    effective_date: date
    end_date: date | None = None
    is_active: bool
    notes: str | None = None
    created_at: datetime
    updated_at: datetime


class RateConflictRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    existing_rate_id: UUID
    capacity_l: Decimal
    currency_code: str
    effective_date: date
    end_date: date | None = None
    conflict_type: str


class DepositRateUpsertResponse(BaseModel):
    rate: DepositRateRead
    conflicts: list[RateConflictRead] = Field(default_factory=list)


class DepositRateRetire(BaseModel):
    end_date: date | None = None


class ChargeLine(BaseModel):
    product_id: UUID | None = None
    capacity_l: Decimal = Field(gt=0)
    quantity: int = Field(ge=1)
    unit_deposit: Decimal = Field(ge=0)


class ChargeRequest(BaseModel):
    lines: list[ChargeLine] = Field(min_length=1)
    currency_code: str | None = Field(default=None, min_length=3, max_length=3)
    order_id: UUID | None = None
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("currency_code")
    @classmethod
    def validate_currency(cls, value: str | None) -> str | None:
        return normalize_currency(value)


class RefundLine(BaseModel):
    product_id: UUID | None = None
    capacity_l: Decimal = Field(gt=0)
    quantity: int = Field(ge=1)
    unit_deposit: Decimal = Field(ge=0)
    condition: CylinderCondition | None = None
    cylinder_status: CylinderStatus | None = None
    damage_assessment: DamageAssessment | None = None
    refund_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    original_brand: str | None = Field(default=None, max_length=40)
    accepted_brand: str | None = Field(default=None, max_length=40)


class RefundRequest(BaseModel):
    lines: list[RefundLine] = Field(min_length=1)
    refund_method: RefundMethod
    currency_code: str | None = Field(default=None, min_length=3, max_length=3)
    order_id: UUID | None = None
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("currency_code")
    @classmethod
    def validate_currency(cls, value: str | None) -> str | None:
        return normalize_currency(value)


class AdjustmentRequest(BaseModel):
    amount: Decimal
    reason: str = Field(min_length=1, max_length=2000)
    currency_code: str | None = Field(default=None, min_length=3, max_length=3)

    @field_validator("currency_code")
    @classmethod
    def validate_currency(cls, value: str | None) -> str | None:
        return normalize_currency(value)


class VoidRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class TransactionLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID | None = None
    capacity_l: Decimal
    quantity: int
    unit_deposit: Decimal
    condition: CylinderCondition | None = None
    cylinder_status: CylinderStatus | None = None
    refund_percentage: Decimal | None = None
    deductions: Decimal
    line_total: Decimal


class TransactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    transaction_type: TransactionType
    amount: Decimal
    currency_code: str
    transaction_date: datetime
    order_id: UUID | None = None
    refund_method: RefundMethod | None = None
    notes: str | None = None
    reference: str | None = None
    is_voided: bool
    voided_at: datetime | None = None
    voided_by: UUID | None = None
    void_reason: str | None = None
    created_by: UUID | None = None
    lines: list[TransactionLineRead] = Field(default_factory=list)


class BalanceRead(BaseModel):
    customer_id: UUID
    currency_code: str
    total_deposit_balance: Decimal
    pending_refunds: Decimal
    available_for_refund: Decimal
    open_credit_count: int
    as_of: datetime


class HistorySummary(BaseModel):
    total_charged: Decimal
    total_refunded: Decimal
    total_adjustments: Decimal
    current_balance: Decimal


class HistoryResponse(BaseModel):
    customer_id: UUID
    items: list[TransactionRead]
    meta: PaginationMeta
    summary: HistorySummary


class LostFeeQuoteRequest(BaseModel):
    capacity_l: Decimal = Field(gt=0)
    unit_deposit: Decimal = Field(ge=0)
    quantity: int = Field(default=1, ge=1)


class LostFeeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    base_fee: Decimal
    replacement_cost: Decimal
    administrative_fee: Decimal
    total_fee: Decimal
    quantity: int

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy import JSON, Boolean, Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cylinder_ledger.db.base import Base
from cylinder_ledger.models.deposit import CylinderCondition, CylinderStatus


class CreditStatus(str, enum.Enum):
    pending = "pending"
    partial_returned = "partial_returned"
    fully_returned = "fully_returned"
    cancelled = "cancelled"
    expired = "expired"
    grace_period = "grace_period"


OPEN_CREDIT_STATUSES = frozenset({CreditStatus.pending, CreditStatus.partial_returned, CreditStatus.grace_period})
TERMINAL_CREDIT_STATUSES = frozenset({CreditStatus.fully_returned, CreditStatus.cancelled, CreditStatus.expired})


class BrandReconciliationStatus(str, enum.Enum):
    matched = "matched"
    generic_accepted = "generic_accepted"
    pending = "pending"


class EmptyReturnCredit(Base):
    __tablename__ = "empty_return_credits"
    __table_args__ = (
        sa.CheckConstraint("quantity > 0", name="quantity_positive"),
        sa.CheckConstraint("quantity_returned >= 0 AND quantity_returned <= quantity", name="quantity_returned_bounds"),
        sa.Index("ix_empty_return_credits_status_deadline", "status", "return_deadline"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    customer_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    capacity_l: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_returned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unit_credit_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_credit_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)

    expected_return_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    return_deadline: Mapped[date] = mapped_column(Date, nullable=False)
    grace_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    final_expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    actual_return_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[CreditStatus] = mapped_column(
        Enum(CreditStatus, name="empty_return_credit_status"),
        nullable=False,
        default=CreditStatus.pending,
        index=True,
    )

    cylinder_status: Mapped[CylinderStatus | None] = mapped_column(Enum(CylinderStatus, name="cylinder_status"), nullable=True)
    condition_at_return: Mapped[CylinderCondition | None] = mapped_column(
        Enum(CylinderCondition, name="cylinder_condition"), nullable=True
    )
    return_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    damage_assessment: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    lost_cylinder_fee: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    original_brand: Mapped[str | None] = mapped_column(String(40), nullable=True)
    accepted_brand: Mapped[str | None] = mapped_column(String(40), nullable=True)
    brand_reconciliation_status: Mapped[BrandReconciliationStatus | None] = mapped_column(
        Enum(BrandReconciliationStatus, name="brand_reconciliation_status"), nullable=True
    )
    brand_exchange_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    photo_urls: Mapped[list | None] = mapped_column(JSON, nullable=True)

    cancelled_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    forfeited_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    # True when opening the credit posted the deposit charge; returns then refund it.
    deposit_charged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processing_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    updated_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    events: Mapped[list["EmptyReturnEvent"]] = relationship(
        "EmptyReturnEvent",
        back_populates="credit",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="EmptyReturnEvent.created_at",
    )

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    @property
    def quantity_remaining(self) -> int:
        return int(self.quantity) - int(self.quantity_returned or 0)

    @property
    def remaining_credit_amount(self) -> Decimal:
        return (Decimal(self.unit_credit_amount) * self.quantity_remaining).quantize(Decimal("0.01"))

    @property
    def is_open(self) -> bool:
        return CreditStatus(self.status) in OPEN_CREDIT_STATUSES


class EmptyReturnEvent(Base):
    __tablename__ = "empty_return_events"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    credit_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("empty_return_credits.id", ondelete="CASCADE"), nullable=False, index=True
    )
    idempotency_key: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    cylinder_status: Mapped[CylinderStatus] = mapped_column(Enum(CylinderStatus, name="cylinder_status"), nullable=False)
    condition_at_return: Mapped[CylinderCondition | None] = mapped_column(
        Enum(CylinderCondition, name="cylinder_condition"), nullable=True
    )
    refund_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    original_brand: Mapped[str | None] = mapped_column(String(40), nullable=True)
    accepted_brand: Mapped[str | None] = mapped_column(String(40), nullable=True)
    gross_credit: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    brand_exchange_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    credit_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    lost_fee_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    deposit_transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("deposit_transactions.id", ondelete="SET NULL"), nullable=True
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    credit: Mapped[EmptyReturnCredit] = relationship("EmptyReturnCredit", back_populates="events")

    __mapper_args__ = {"eager_defaults": True}


class EmptyReturnCreditStatusHistory(Base):
    __tablename__ = "empty_return_credit_status_history"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    credit_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("empty_return_credits.id", ondelete="CASCADE"), nullable=False, index=True
    )
    old_status: Mapped[CreditStatus | None] = mapped_column(Enum(CreditStatus, name="empty_return_credit_status"), nullable=True)
    new_status: Mapped[CreditStatus] = mapped_column(Enum(CreditStatus, name="empty_return_credit_status"), nullable=False)
    quantity_returned_change: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    changed_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __mapper_args__ = {"eager_defaults": True}

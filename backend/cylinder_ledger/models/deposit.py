import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cylinder_ledger.db.base import Base


class TransactionType(str, enum.Enum):
    charge = "charge"
    refund = "refund"
    adjustment = "adjustment"


class RefundMethod(str, enum.Enum):
    cash = "cash"
    check = "check"
    bank_transfer = "bank_transfer"
    credit_note = "credit_note"
    account_credit = "account_credit"


class CylinderCondition(str, enum.Enum):
    excellent = "excellent"
    good = "good"
    fair = "fair"
    poor = "poor"
    damaged = "damaged"
    scrap = "scrap"


class CylinderStatus(str, enum.Enum):
    good = "good"
    damaged = "damaged"
    lost = "lost"


class DamageSeverity(str, enum.Enum):
    minor = "minor"
    moderate = "moderate"
    severe = "severe"


class DepositRate(Base):
    __tablename__ = "deposit_rates"
    __table_args__ = (sa.Index("ix_deposit_rates_lookup", "capacity_l", "currency_code", "is_active", "effective_date"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    capacity_l: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    deposit_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=sa.true(), default=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __mapper_args__ = {"eager_defaults": True}


class CustomerDepositAccount(Base):
    """Per customer+currency row that serializes ledger mutations.

    ``balance`` mirrors the signed sum of non-voided transactions; the ledger log stays
    authoritative and ``balances.reconcile_account`` can resync it.
    """

    __tablename__ = "customer_deposit_accounts"
    __table_args__ = (UniqueConstraint("customer_id", "currency_code", name="uq_customer_deposit_accounts_customer_currency"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}


class DepositTransaction(Base):
    __tablename__ = "deposit_transactions"
    __table_args__ = (sa.Index("ix_deposit_transactions_customer_currency", "customer_id", "currency_code"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="deposit_transaction_type"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    transaction_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    order_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    refund_method: Mapped[RefundMethod | None] = mapped_column(Enum(RefundMethod, name="deposit_refund_method"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)

    is_voided: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=sa.false(), default=False)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    lines: Mapped[list["DepositTransactionLine"]] = relationship(
        "DepositTransactionLine",
        back_populates="transaction",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DepositTransactionLine.position",
    )

    __mapper_args__ = {"eager_defaults": True}

    @property
    def signed_amount(self) -> Decimal:
        if self.transaction_type == TransactionType.refund:
            return -Decimal(self.amount)
        return Decimal(self.amount)


class DepositTransactionLine(Base):
    __tablename__ = "deposit_transaction_lines"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("deposit_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    product_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    capacity_l: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_deposit: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    condition: Mapped[CylinderCondition | None] = mapped_column(Enum(CylinderCondition, name="cylinder_condition"), nullable=True)
    cylinder_status: Mapped[CylinderStatus | None] = mapped_column(Enum(CylinderStatus, name="cylinder_status"), nullable=True)
    refund_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    deductions: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    transaction: Mapped[DepositTransaction] = relationship("DepositTransaction", back_populates="lines")

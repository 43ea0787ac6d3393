"""deposit ledger and empty return credits

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None


transaction_type = postgresql.ENUM("charge", "refund", "adjustment", name="deposit_transaction_type", create_type=False)
refund_method = postgresql.ENUM(
    "cash", "check", "bank_transfer", "credit_note", "account_credit", name="deposit_refund_method", create_type=False
)
cylinder_condition = postgresql.ENUM(
    "excellent", "good", "fair", "poor", "damaged", "scrap", name="cylinder_condition", create_type=False
)
cylinder_status = postgresql.ENUM("good", "damaged", "lost", name="cylinder_status", create_type=False)
credit_status = postgresql.ENUM(
    "pending",
    "partial_returned",
    "fully_returned",
    "cancelled",
    "expired",
    "grace_period",
    name="empty_return_credit_status",
    create_type=False,
)
brand_status = postgresql.ENUM("matched", "generic_accepted", "pending", name="brand_reconciliation_status", create_type=False)

ENUMS = (transaction_type, refund_method, cylinder_condition, cylinder_status, credit_status, brand_status)


def _timestamps(*, with_updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if with_updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False))
    return columns


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "deposit_rates",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("capacity_l", sa.Numeric(10, 2), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("effective_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_deposit_rates"),
    )
    op.create_index(
        "ix_deposit_rates_lookup", "deposit_rates", ["capacity_l", "currency_code", "is_active", "effective_date"]
    )

    op.create_table(
        "customer_deposit_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_customer_deposit_accounts"),
        sa.UniqueConstraint("customer_id", "currency_code", name="uq_customer_deposit_accounts_customer_currency"),
    )
    op.create_index("ix_customer_deposit_accounts_customer_id", "customer_deposit_accounts", ["customer_id"])

    op.create_table(
        "deposit_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("transaction_type", transaction_type, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("transaction_date", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("refund_method", refund_method, nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("reference", sa.String(length=120), nullable=True),
        sa.Column("is_voided", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("voided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voided_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("void_reason", sa.Text(), nullable=True),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(with_updated=False),
        sa.PrimaryKeyConstraint("id", name="pk_deposit_transactions"),
    )
    op.create_index(
        "ix_deposit_transactions_customer_currency", "deposit_transactions", ["customer_id", "currency_code"]
    )
    op.create_index("ix_deposit_transactions_transaction_type", "deposit_transactions", ["transaction_type"])
    op.create_index("ix_deposit_transactions_order_id", "deposit_transactions", ["order_id"])
    op.create_index("ix_deposit_transactions_reference", "deposit_transactions", ["reference"])

    op.create_table(
        "deposit_transaction_lines",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("transaction_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("product_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("capacity_l", sa.Numeric(10, 2), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_deposit", sa.Numeric(12, 2), nullable=False),
        sa.Column("condition", cylinder_condition, nullable=True),
        sa.Column("cylinder_status", cylinder_status, nullable=True),
        sa.Column("refund_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("deductions", sa.Numeric(12, 2), nullable=False),
        sa.Column("line_total", sa.Numeric(12, 2), nullable=False),
        sa.ForeignKeyConstraint(
            ["transaction_id"],
            ["deposit_transactions.id"],
            name="fk_deposit_transaction_lines_transaction_id_deposit_transactions",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_deposit_transaction_lines"),
    )
    op.create_index("ix_deposit_transaction_lines_transaction_id", "deposit_transaction_lines", ["transaction_id"])

    op.create_table(
        "empty_return_credits",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("product_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("capacity_l", sa.Numeric(10, 2), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("quantity_returned", sa.Integer(), nullable=False),
        sa.Column("unit_credit_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_credit_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("expected_return_date", sa.Date(), nullable=True),
        sa.Column("return_deadline", sa.Date(), nullable=False),
        sa.Column("grace_period_days", sa.Integer(), nullable=False),
        sa.Column("final_expiration_date", sa.Date(), nullable=True),
        sa.Column("actual_return_date", sa.Date(), nullable=True),
        sa.Column("status", credit_status, nullable=False),
        sa.Column("cylinder_status", cylinder_status, nullable=True),
        sa.Column("condition_at_return", cylinder_condition, nullable=True),
        sa.Column("return_reason", sa.Text(), nullable=True),
        sa.Column("damage_assessment", sa.JSON(), nullable=True),
        sa.Column("lost_cylinder_fee", sa.JSON(), nullable=True),
        sa.Column("original_brand", sa.String(length=40), nullable=True),
        sa.Column("accepted_brand", sa.String(length=40), nullable=True),
        sa.Column("brand_reconciliation_status", brand_status, nullable=True),
        sa.Column("brand_exchange_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("photo_urls", sa.JSON(), nullable=True),
        sa.Column("cancelled_reason", sa.Text(), nullable=True),
        sa.Column("forfeited_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("deposit_charged", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("processing_notes", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("updated_by", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("quantity > 0", name="ck_empty_return_credits_quantity_positive"),
        sa.CheckConstraint(
            "quantity_returned >= 0 AND quantity_returned <= quantity",
            name="ck_empty_return_credits_quantity_returned_bounds",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_empty_return_credits"),
    )
    op.create_index("ix_empty_return_credits_order_id", "empty_return_credits", ["order_id"])
    op.create_index("ix_empty_return_credits_customer_id", "empty_return_credits", ["customer_id"])
    op.create_index("ix_empty_return_credits_status", "empty_return_credits", ["status"])
    op.create_index("ix_empty_return_credits_status_deadline", "empty_return_credits", ["status", "return_deadline"])

    op.create_table(
        "empty_return_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("credit_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("idempotency_key", sa.String(length=120), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("cylinder_status", cylinder_status, nullable=False),
        sa.Column("condition_at_return", cylinder_condition, nullable=True),
        sa.Column("refund_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("original_brand", sa.String(length=40), nullable=True),
        sa.Column("accepted_brand", sa.String(length=40), nullable=True),
        sa.Column("gross_credit", sa.Numeric(12, 2), nullable=False),
        sa.Column("brand_exchange_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("credit_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("lost_fee_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("deposit_transaction_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(with_updated=False),
        sa.ForeignKeyConstraint(
            ["credit_id"],
            ["empty_return_credits.id"],
            name="fk_empty_return_events_credit_id_empty_return_credits",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["deposit_transaction_id"],
            ["deposit_transactions.id"],
            name="fk_empty_return_events_deposit_transaction_id_deposit_transactions",
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_empty_return_events"),
        sa.UniqueConstraint("idempotency_key", name="uq_empty_return_events_idempotency_key"),
    )
    op.create_index("ix_empty_return_events_credit_id", "empty_return_events", ["credit_id"])

    op.create_table(
        "empty_return_credit_status_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("credit_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("old_status", credit_status, nullable=True),
        sa.Column("new_status", credit_status, nullable=False),
        sa.Column("quantity_returned_change", sa.Integer(), nullable=False),
        sa.Column("changed_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("change_reason", sa.Text(), nullable=True),
        *_timestamps(with_updated=False),
        sa.ForeignKeyConstraint(
            ["credit_id"],
            ["empty_return_credits.id"],
            name="fk_empty_return_credit_status_history_credit_id_empty_return_credits",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_empty_return_credit_status_history"),
    )
    op.create_index(
        "ix_empty_return_credit_status_history_credit_id", "empty_return_credit_status_history", ["credit_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_empty_return_credit_status_history_credit_id", table_name="empty_return_credit_status_history")
    op.drop_table("empty_return_credit_status_history")
    op.drop_index("ix_empty_return_events_credit_id", table_name="empty_return_events")
    op.drop_table("empty_return_events")
    for name in (
        "ix_empty_return_credits_status_deadline",
        "ix_empty_return_credits_status",
        "ix_empty_return_credits_customer_id",
        "ix_empty_return_credits_order_id",
    ):
        op.drop_index(name, table_name="empty_return_credits")
    op.drop_table("empty_return_credits")
    op.drop_index("ix_deposit_transaction_lines_transaction_id", table_name="deposit_transaction_lines")
    op.drop_table("deposit_transaction_lines")
    for name in (
        "ix_deposit_transactions_reference",
        "ix_deposit_transactions_order_id",
        "ix_deposit_transactions_transaction_type",
        "ix_deposit_transactions_customer_currency",
    ):
        op.drop_index(name, table_name="deposit_transactions")
    op.drop_table("deposit_transactions")
    op.drop_index("ix_customer_deposit_accounts_customer_id", table_name="customer_deposit_accounts")
    op.drop_table("customer_deposit_accounts")
    op.drop_index("ix_deposit_rates_lookup", table_name="deposit_rates")
    op.drop_table("deposit_rates")

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)

"""Settlement engine schema: loans, commissions, financial transactions, audit and error logs.

Revision ID: 001_settlement_engine
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


revision = "001_settlement_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "loans",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.Integer(), nullable=False, unique=True, index=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("term", sa.Integer(), nullable=False),
        sa.Column("installment_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("gross_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("net_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("status", sa.Enum("ACTIVE", "FINALIZED", "CANCELED", "LATE", name="loanstatus"), nullable=False, index=True),
        sa.Column("customer_id", sa.Integer(), nullable=False, index=True),
        sa.Column("seller_id", sa.Integer(), nullable=False, index=True),
        sa.Column("organ_id", sa.Integer(), nullable=False),
        sa.Column("bank_id", sa.Integer(), nullable=False),
        sa.Column("product_type_id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("rate_table_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("term > 0", name="ck_loans_term_positive"),
        sa.CheckConstraint("installment_value > 0", name="ck_loans_installment_positive"),
        sa.CheckConstraint("gross_value > 0", name="ck_loans_gross_positive"),
        sa.CheckConstraint("net_value > 0", name="ck_loans_net_positive"),
    )
    op.create_index("ix_loans_seller_start", "loans", ["seller_id", "start_date"])

    op.create_table(
        "commissions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("loan_id", sa.Integer(), sa.ForeignKey("loans.id", ondelete="RESTRICT"), nullable=False, unique=True),
        sa.Column("seller_id", sa.Integer(), nullable=False, index=True),
        sa.Column("period", sa.String(7), nullable=False, index=True),
        sa.Column("commission_type", sa.Enum("PERCENTAGE", "FIXED_AMOUNT", name="commissiontype"), nullable=False),
        sa.Column("reference_value", sa.Numeric(12, 4), nullable=False),
        sa.Column("calculated_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.Enum("OPEN", "APPROVED", "CANCELED", name="commissionstatus"), nullable=False, index=True),
        sa.Column("approved_by", sa.Integer(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("reference_value > 0", name="ck_commissions_reference_positive"),
    )

    op.create_table(
        "financial_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("direction", sa.Enum("IN", "OUT", name="transactiondirection"), nullable=False),
        sa.Column(
            "category",
            sa.Enum("LOAN", "COMMISSION", "FIXED_EXPENSE", "VARIABLE_EXPENSE", "OTHER", name="transactioncategory"),
            nullable=False,
            index=True,
        ),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("origin_id", sa.Integer(), nullable=True),
        sa.Column("loan_id", sa.Integer(), sa.ForeignKey("loans.id", ondelete="RESTRICT"), nullable=True, index=True),
        sa.Column("idempotency_key", sa.String(128), nullable=True, unique=True),
        sa.Column("settled_on", sa.Date(), nullable=True),
        sa.Column("receipt_reference", sa.String(255), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("amount > 0", name="ck_fin_tx_amount_positive"),
    )
    op.create_index("ix_fin_tx_date", "financial_transactions", ["transaction_date"])
    op.create_index("ix_fin_tx_origin", "financial_transactions", ["origin_id", "category"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=True, index=True),
        sa.Column("module", sa.String(50), nullable=False, index=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "error_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("severity", sa.Enum("WARNING", "ERROR", "CRITICAL", name="errorseverity"), nullable=False),
        sa.Column("error_code", sa.String(100), nullable=False),
        sa.Column("detail", sa.Text(), nullable=False),
        sa.Column("stack", sa.Text(), nullable=True),
        sa.Column("source", sa.String(300), nullable=True),
        sa.Column("http_method", sa.String(10), nullable=True),
        sa.Column("path", sa.String(500), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("duration_ms", sa.Float(), nullable=True),
        sa.Column("requester_id", sa.Integer(), nullable=True),
        sa.Column("client_ip", sa.String(45), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_error_logs_occurred", "error_logs", ["occurred_at"])


def downgrade() -> None:
    op.drop_table("error_logs")
    op.drop_table("audit_log")
    op.drop_table("financial_transactions")
    op.drop_table("commissions")
    op.drop_table("loans")
    for enum_name in (
        "errorseverity",
        "transactioncategory",
        "transactiondirection",
        "commissionstatus",
        "commissiontype",
        "loanstatus",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")

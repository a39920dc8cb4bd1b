"""init settlement tables

Revision ID: 20261019_0001
Revises: None
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0001_init_settlement_tables"
down_revision = None
branch_labels = None
depends_on = None


def _enum(*values: str, name: str) -> sa.Enum:
    # Stored as VARCHAR on every dialect, matching the models (native_enum=False).
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=False)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


def upgrade() -> None:
    obligation_kind = _enum("invoice", "dividend", "equity_buyback", name="obligationkind")
    obligation_status = _enum(
        "received",
        "approved",
        "rejected",
        "payment_pending",
        "processing",
        "paid",
        "failed",
        "retained",
        name="obligationstatus",
    )
    retained_reason = _enum(
        "ofac_sanctioned_country", "below_minimum_payment_threshold", name="retainedreason"
    )
    batch_status = _enum("sent", "paid", "failed", "refunded", name="batchstatus")
    payment_status = _enum(
        "initialized", "processing", "succeeded", "failed", "cancelled", "refunded",
        name="paymentstatus",
    )
    transfer_bucket = _enum("success", "failure", "intermediate", name="transferbucket")
    notification_kind = _enum(
        "payment_sent", "payment_failed", "recipient_invalid", name="notificationkind"
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(64), nullable=False, index=True),
        sa.Column("payload_json", sa.Text()),
        sa.Column("idempotency_key", sa.String(128), unique=True, nullable=True),
        sa.Column("request_id", sa.String(64), nullable=True),
        _created_at(),
    )

    op.create_table(
        "companies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_trusted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("required_approvals", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "equity_compensation_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        _created_at(),
    )

    op.create_table(
        "payees",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("country_code", sa.String(2)),
        sa.Column("tax_information_confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("tax_id_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "minimum_dividend_payment_cents", sa.BigInteger(), nullable=False, server_default="1000"
        ),
        _created_at(),
    )

    op.create_table(
        "equity_elections",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("payee_id", sa.Integer(), sa.ForeignKey("payees.id"), nullable=False, index=True),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("equity_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("payee_id", "year", name="uq_equity_elections_payee_year"),
    )

    op.create_table(
        "recipients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("payee_id", sa.Integer(), sa.ForeignKey("payees.id"), nullable=False, index=True),
        sa.Column("provider_recipient_id", sa.String(64), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("last_four_digits", sa.String(4)),
        sa.Column("used_for_invoices", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("used_for_dividends", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "batches",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_id", sa.String(36), nullable=False, unique=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False, index=True),
        sa.Column("invoice_date", sa.Date(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("principal_cents", sa.BigInteger(), nullable=False),
        sa.Column("fee_cents", sa.BigInteger(), nullable=False),
        sa.Column("total_cents", sa.BigInteger(), nullable=False),
        sa.Column("status", batch_status, nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        _created_at(),
    )

    op.create_table(
        "obligations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_id", sa.String(36), nullable=False, unique=True),
        sa.Column("kind", obligation_kind, nullable=False, index=True),
        sa.Column("company_id", sa.Integer(), sa.ForeignKey("companies.id"), nullable=False, index=True),
        sa.Column("payee_id", sa.Integer(), sa.ForeignKey("payees.id"), nullable=False, index=True),
        sa.Column("obligation_date", sa.Date(), nullable=False),
        sa.Column("gross_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("cash_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("equity_amount_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("equity_units", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("equity_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("withheld_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("fee_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", obligation_status, nullable=False, index=True),
        sa.Column("approval_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("required_approvals", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("retained_reason", retained_reason, nullable=True),
        sa.Column("rejection_reason", sa.Text()),
        sa.Column("rejected_at", sa.DateTime(timezone=True)),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=True, index=True),
        sa.Column("active_payment_id", sa.Integer(), nullable=True, index=True),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )

    op.create_table(
        "obligation_approvals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "obligation_id", sa.Integer(), sa.ForeignKey("obligations.id"), nullable=False, index=True
        ),
        sa.Column("approver_id", sa.Integer(), nullable=False),
        sa.Column(
            "approved_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.UniqueConstraint(
            "obligation_id", "approver_id", name="uq_obligation_approvals_approver"
        ),
    )

    op.create_table(
        "batch_obligations",
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), primary_key=True),
        sa.Column("obligation_id", sa.Integer(), sa.ForeignKey("obligations.id"), primary_key=True),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_id", sa.String(36), nullable=False, unique=True),
        sa.Column("kind", obligation_kind, nullable=False),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("batches.id"), nullable=True, index=True),
        sa.Column("payee_id", sa.Integer(), sa.ForeignKey("payees.id"), nullable=False, index=True),
        sa.Column("recipient_id", sa.Integer(), sa.ForeignKey("recipients.id"), nullable=True),
        sa.Column("processor_reference", sa.String(36), nullable=False, unique=True),
        sa.Column("provider_profile_id", sa.String(64), index=True),
        sa.Column("quote_id", sa.String(64)),
        sa.Column("transfer_id", sa.String(64), index=True),
        sa.Column("transfer_status", sa.String(64)),
        sa.Column("transfer_bucket", transfer_bucket, nullable=True),
        sa.Column("transfer_currency", sa.String(3)),
        sa.Column("conversion_rate", sa.Numeric(18, 8)),
        sa.Column("transfer_amount", sa.Numeric(18, 2)),
        sa.Column("transfer_estimate", sa.DateTime(timezone=True)),
        sa.Column("recipient_last4", sa.String(4)),
        sa.Column("principal_cents", sa.BigInteger(), nullable=False),
        sa.Column("fee_cents", sa.BigInteger(), nullable=True),
        sa.Column("total_transaction_cents", sa.BigInteger(), nullable=True),
        sa.Column("status", payment_status, nullable=False, index=True),
        sa.Column("error", sa.Text()),
        sa.Column("succeeded_at", sa.DateTime(timezone=True)),
        sa.Column("last_event_at", sa.DateTime(timezone=True)),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )

    op.create_table(
        "payment_obligations",
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payments.id"), primary_key=True),
        sa.Column("obligation_id", sa.Integer(), sa.ForeignKey("obligations.id"), primary_key=True),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("kind", notification_kind, nullable=False, index=True),
        sa.Column("payee_id", sa.Integer(), sa.ForeignKey("payees.id"), nullable=False, index=True),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payments.id"), nullable=True),
        sa.Column("idempotency_key", sa.String(128), nullable=False, unique=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        _created_at(),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
    )


def downgrade() -> None:
    for table in (
        "notifications",
        "payment_obligations",
        "payments",
        "batch_obligations",
        "obligation_approvals",
        "obligations",
        "batches",
        "recipients",
        "equity_elections",
        "payees",
        "companies",
        "audit_logs",
    ):
        op.drop_table(table)

"""create_xero_sync_tables

Revision ID: c1d2e3f4a5b6
Revises:
Create Date: 2026-10-12 09:00:00.000000
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "c1d2e3f4a5b6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # ── contacts ───────────────────────────────────────────────────────────────
    op.create_table(
        "contacts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("xero_contact_id", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email_address", sa.String(255), nullable=True),
        sa.Column("first_name", sa.String(255), nullable=True),
        sa.Column("last_name", sa.String(255), nullable=True),
        sa.Column("is_supplier", sa.Boolean, nullable=False),
        sa.Column("is_customer", sa.Boolean, nullable=False),
        sa.Column("default_currency", sa.String(3), nullable=True),
        sa.Column("contact_status", sa.String(20), nullable=True),
        sa.Column("updated_date_utc", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_contacts_tenant_id", "contacts", ["tenant_id"])

    # ── bank_accounts ──────────────────────────────────────────────────────────
    op.create_table(
        "bank_accounts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("xero_account_id", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(20), nullable=True),
        sa.Column("currency_code", sa.String(3), nullable=True),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("account_number", sa.String(100), nullable=True),
        sa.Column("bank_account_type", sa.String(50), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_bank_accounts_tenant_id", "bank_accounts", ["tenant_id"])

    # ── gl_accounts ────────────────────────────────────────────────────────────
    op.create_table(
        "gl_accounts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("xero_account_id", sa.String(64), nullable=False, unique=True),
        sa.Column("code", sa.String(20), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("account_class", sa.String(20), nullable=True),
        sa.Column("tax_type", sa.String(50), nullable=True),
        sa.Column("system_account", sa.Boolean, nullable=False),
        sa.Column("enable_payments_to_account", sa.Boolean, nullable=False),
        sa.Column("show_in_expense_claims", sa.Boolean, nullable=False),
        sa.Column("reporting_code", sa.String(50), nullable=True),
        sa.Column("reporting_code_name", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_gl_accounts_tenant_id", "gl_accounts", ["tenant_id"])
    op.create_index("ix_gl_accounts_code", "gl_accounts", ["code"])

    # ── bank_transactions ──────────────────────────────────────────────────────
    op.create_table(
        "bank_transactions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("xero_transaction_id", sa.String(64), nullable=False, unique=True),
        sa.Column(
            "bank_account_id",
            UUID(as_uuid=True),
            sa.ForeignKey("bank_accounts.id"),
            nullable=False,
        ),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("xero_contact_id", sa.String(64), nullable=True),
        sa.Column("contact_name", sa.String(255), nullable=True),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reference", sa.String(255), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("account_code", sa.String(20), nullable=True),
        sa.Column("currency_code", sa.String(3), nullable=True),
        sa.Column("currency_rate", sa.Numeric(18, 6), nullable=True),
        sa.Column("sub_total", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_tax", sa.Numeric(14, 2), nullable=False),
        sa.Column("total", sa.Numeric(14, 2), nullable=False),
        sa.Column("is_reconciled", sa.Boolean, nullable=False),
        sa.Column("line_amount_types", sa.String(20), nullable=True),
        sa.Column("line_items", sa.Text, nullable=True),
        sa.Column("has_attachments", sa.Boolean, nullable=False),
        sa.Column("updated_date_utc", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_bank_transactions_tenant_id", "bank_transactions", ["tenant_id"])
    op.create_index("ix_bank_transactions_bank_account_id", "bank_transactions", ["bank_account_id"])
    op.create_index("ix_bank_transactions_date", "bank_transactions", ["date"])

    # ── invoices (ACCREC invoices and ACCPAY bills) ────────────────────────────
    op.create_table(
        "invoices",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("xero_invoice_id", sa.String(64), nullable=False, unique=True),
        sa.Column("type", sa.String(10), nullable=False),
        sa.Column(
            "contact_id",
            UUID(as_uuid=True),
            sa.ForeignKey("contacts.id"),
            nullable=True,
        ),
        sa.Column("xero_contact_id", sa.String(64), nullable=False),
        sa.Column("contact_name", sa.String(255), nullable=True),
        sa.Column("invoice_number", sa.String(255), nullable=True),
        sa.Column("reference", sa.String(255), nullable=True),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("line_amount_types", sa.String(20), nullable=True),
        sa.Column("sub_total", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_tax", sa.Numeric(14, 2), nullable=False),
        sa.Column("total", sa.Numeric(14, 2), nullable=False),
        sa.Column("amount_due", sa.Numeric(14, 2), nullable=False),
        sa.Column("amount_paid", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency_code", sa.String(3), nullable=True),
        sa.Column("updated_date_utc", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_invoices_tenant_id", "invoices", ["tenant_id"])
    op.create_index("ix_invoices_type", "invoices", ["type"])
    op.create_index("ix_invoices_contact_id", "invoices", ["contact_id"])
    op.create_index("ix_invoices_date", "invoices", ["date"])

    # ── sync_logs ──────────────────────────────────────────────────────────────
    op.create_table(
        "sync_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("sync_type", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("records_created", sa.Integer, nullable=False),
        sa.Column("parameters", sa.Text, nullable=True),
        sa.Column("details", sa.Text, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
    )
    op.create_index("ix_sync_logs_user_id", "sync_logs", ["user_id"])
    op.create_index("ix_sync_logs_tenant_id", "sync_logs", ["tenant_id"])


def downgrade() -> None:
    op.drop_table("sync_logs")
    op.drop_table("invoices")
    op.drop_table("bank_transactions")
    op.drop_table("gl_accounts")
    op.drop_table("bank_accounts")
    op.drop_table("contacts")

"""Local mirrors of Xero accounting entities.

Every table is keyed for upsert by the Xero-assigned identifier (the
``xero_*_id`` unique column). Parent references are resolved to local row ids
by the historical sync before a child row is written.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Numeric, String, Text, Uuid, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from xerosync.core.database import Base


class Contact(Base):
    """A Xero contact (customer and/or supplier)."""
    __tablename__ = "contacts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    xero_contact_id: Mapped[str] = mapped_column(String(64), unique=True)
    name: Mapped[str] = mapped_column(String(255))
    email_address: Mapped[str | None] = mapped_column(String(255))
    first_name: Mapped[str | None] = mapped_column(String(255))
    last_name: Mapped[str | None] = mapped_column(String(255))
    is_supplier: Mapped[bool] = mapped_column(Boolean, default=False)
    is_customer: Mapped[bool] = mapped_column(Boolean, default=False)
    default_currency: Mapped[str | None] = mapped_column(String(3))
    contact_status: Mapped[str | None] = mapped_column(String(20))
    updated_date_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    invoices: Mapped[list["Invoice"]] = relationship(back_populates="contact")


class BankAccount(Base):
    """A Xero account of type BANK."""
    __tablename__ = "bank_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    xero_account_id: Mapped[str] = mapped_column(String(64), unique=True)
    name: Mapped[str] = mapped_column(String(255))
    code: Mapped[str | None] = mapped_column(String(20))
    currency_code: Mapped[str | None] = mapped_column(String(3))
    status: Mapped[str | None] = mapped_column(String(20))
    account_number: Mapped[str | None] = mapped_column(String(100))
    bank_account_type: Mapped[str | None] = mapped_column(String(50))
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    transactions: Mapped[list["BankTransaction"]] = relationship(back_populates="bank_account")


class GLAccount(Base):
    """A chart-of-accounts entry that is not a bank account."""
    __tablename__ = "gl_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    xero_account_id: Mapped[str] = mapped_column(String(64), unique=True)
    code: Mapped[str | None] = mapped_column(String(20), index=True)
    name: Mapped[str] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(50))
    status: Mapped[str | None] = mapped_column(String(20))
    description: Mapped[str | None] = mapped_column(Text)
    account_class: Mapped[str | None] = mapped_column(String(20))  # ASSET, EQUITY, EXPENSE, LIABILITY, REVENUE
    tax_type: Mapped[str | None] = mapped_column(String(50))
    system_account: Mapped[bool] = mapped_column(Boolean, default=False)
    enable_payments_to_account: Mapped[bool] = mapped_column(Boolean, default=False)
    show_in_expense_claims: Mapped[bool] = mapped_column(Boolean, default=False)
    reporting_code: Mapped[str | None] = mapped_column(String(50))
    reporting_code_name: Mapped[str | None] = mapped_column(String(255))
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class BankTransaction(Base):
    __tablename__ = "bank_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    xero_transaction_id: Mapped[str] = mapped_column(String(64), unique=True)
    bank_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bank_accounts.id"), index=True
    )
    type: Mapped[str] = mapped_column(String(30))  # RECEIVE, SPEND, ...
    status: Mapped[str] = mapped_column(String(20))
    xero_contact_id: Mapped[str | None] = mapped_column(String(64))
    contact_name: Mapped[str | None] = mapped_column(String(255))
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    reference: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    account_code: Mapped[str | None] = mapped_column(String(20))
    currency_code: Mapped[str | None] = mapped_column(String(3))
    currency_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 6))
    sub_total: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    total_tax: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    is_reconciled: Mapped[bool] = mapped_column(Boolean, default=False)
    line_amount_types: Mapped[str | None] = mapped_column(String(20))
    line_items: Mapped[str | None] = mapped_column(Text)  # JSON
    has_attachments: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_date_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    bank_account: Mapped["BankAccount"] = relationship(back_populates="transactions")


class Invoice(Base):
    """Sales invoice (ACCREC) or bill (ACCPAY)."""
    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    xero_invoice_id: Mapped[str] = mapped_column(String(64), unique=True)
    type: Mapped[str] = mapped_column(String(10), index=True)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("contacts.id"), index=True, nullable=True
    )
    xero_contact_id: Mapped[str] = mapped_column(String(64))
    contact_name: Mapped[str | None] = mapped_column(String(255))
    invoice_number: Mapped[str | None] = mapped_column(String(255))
    reference: Mapped[str | None] = mapped_column(String(255))
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20))
    line_amount_types: Mapped[str | None] = mapped_column(String(20))
    sub_total: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    total_tax: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    amount_due: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    currency_code: Mapped[str | None] = mapped_column(String(3))
    updated_date_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    contact: Mapped["Contact | None"] = relationship(back_populates="invoices")

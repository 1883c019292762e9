"""
Xero JSON → local column dicts.

Mapping is best effort: a malformed field falls back to a safe default
instead of aborting the phase. The only hard requirement is the Xero id,
which is the upsert key; records without one map to None and are skipped.
"""

import json
import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

logger = logging.getLogger(__name__)

_XERO_DATE_RE = re.compile(r"/Date\((-?\d+)([+-]\d{4})?\)/")


def parse_xero_date(value: str | None) -> datetime | None:
    """Parse Xero's `/Date(1748476800000+0000)/` or an ISO-8601 string (UTC)."""
    if not value:
        return None

    match = _XERO_DATE_RE.match(str(value))
    if match:
        # The millisecond value is UTC; the offset suffix is informational
        return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)

    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable Xero date %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _date_or_now(value: str | None, now: datetime) -> datetime:
    return parse_xero_date(value) or now


def _decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def _optional_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ─── Contacts ───────────────────────────────────────────────────────────────

def map_contact(raw: dict, tenant_id: str) -> dict | None:
    xero_id = raw.get("ContactID")
    if not xero_id:
        return None
    now = _now()
    return {
        "tenant_id": tenant_id,
        "xero_contact_id": xero_id,
        "name": raw.get("Name") or "",
        "email_address": raw.get("EmailAddress") or None,
        "first_name": raw.get("FirstName") or None,
        "last_name": raw.get("LastName") or None,
        "is_supplier": bool(raw.get("IsSupplier", False)),
        "is_customer": bool(raw.get("IsCustomer", False)),
        "default_currency": raw.get("DefaultCurrency") or None,
        "contact_status": raw.get("ContactStatus") or None,
        "updated_date_utc": _date_or_now(raw.get("UpdatedDateUTC"), now),
        "last_synced_at": now,
    }


# ─── Accounts ───────────────────────────────────────────────────────────────

def is_bank_account(raw: dict) -> bool:
    return raw.get("Type") == "BANK"


def map_bank_account(raw: dict, tenant_id: str) -> dict | None:
    xero_id = raw.get("AccountID")
    if not xero_id:
        return None
    return {
        "tenant_id": tenant_id,
        "xero_account_id": xero_id,
        "name": raw.get("Name") or "",
        "code": raw.get("Code") or None,
        "currency_code": raw.get("CurrencyCode") or None,
        "status": raw.get("Status") or None,
        "account_number": raw.get("BankAccountNumber") or None,
        "bank_account_type": raw.get("BankAccountType") or None,
        "last_synced_at": _now(),
    }


def map_gl_account(raw: dict, tenant_id: str) -> dict | None:
    xero_id = raw.get("AccountID")
    if not xero_id:
        return None
    return {
        "tenant_id": tenant_id,
        "xero_account_id": xero_id,
        "code": raw.get("Code") or None,
        "name": raw.get("Name") or "",
        "type": raw.get("Type") or "",
        "status": raw.get("Status") or None,
        "description": raw.get("Description") or None,
        "account_class": raw.get("Class") or None,
        "tax_type": raw.get("TaxType") or None,
        "system_account": bool(raw.get("SystemAccount")),
        "enable_payments_to_account": bool(raw.get("EnablePaymentsToAccount", False)),
        "show_in_expense_claims": bool(raw.get("ShowInExpenseClaims", False)),
        "reporting_code": raw.get("ReportingCode") or None,
        "reporting_code_name": raw.get("ReportingCodeName") or None,
        "last_synced_at": _now(),
    }


# ─── Bank transactions ──────────────────────────────────────────────────────

def map_bank_transaction(raw: dict, tenant_id: str, bank_account_id) -> dict | None:
    """`bank_account_id` is the local BankAccount.id resolved by the caller."""
    xero_id = raw.get("BankTransactionID")
    if not xero_id:
        return None
    now = _now()
    line_items = raw.get("LineItems") or []
    first_line = line_items[0] if line_items else {}
    contact = raw.get("Contact") or {}

    return {
        "tenant_id": tenant_id,
        "xero_transaction_id": xero_id,
        "bank_account_id": bank_account_id,
        "type": raw.get("Type") or "",
        "status": raw.get("Status") or "",
        "xero_contact_id": contact.get("ContactID") or None,
        "contact_name": contact.get("Name") or None,
        "date": _date_or_now(raw.get("Date"), now),
        "reference": raw.get("Reference") or None,
        "description": first_line.get("Description") or None,
        "account_code": first_line.get("AccountCode") or None,
        "currency_code": raw.get("CurrencyCode") or None,
        "currency_rate": _optional_decimal(raw.get("CurrencyRate")),
        "sub_total": _decimal(raw.get("SubTotal")),
        "total_tax": _decimal(raw.get("TotalTax")),
        "total": _decimal(raw.get("Total")),
        "is_reconciled": bool(raw.get("IsReconciled", False)),
        "line_amount_types": raw.get("LineAmountTypes") or None,
        "line_items": json.dumps(line_items, default=str),
        "has_attachments": bool(raw.get("HasAttachments", False)),
        "updated_date_utc": _date_or_now(raw.get("UpdatedDateUTC"), now),
        "last_synced_at": now,
    }


# ─── Invoices and bills ─────────────────────────────────────────────────────

def map_invoice(raw: dict, tenant_id: str, contact_id) -> dict | None:
    """Map an ACCREC invoice or ACCPAY bill; `contact_id` may be None."""
    xero_id = raw.get("InvoiceID")
    if not xero_id:
        return None
    now = _now()
    contact = raw.get("Contact") or {}
    total = _decimal(raw.get("Total"))

    return {
        "tenant_id": tenant_id,
        "xero_invoice_id": xero_id,
        "type": raw.get("Type") or "",
        "contact_id": contact_id,
        "xero_contact_id": contact.get("ContactID") or "",
        "contact_name": contact.get("Name") or None,
        "invoice_number": raw.get("InvoiceNumber") or None,
        "reference": raw.get("Reference") or None,
        "date": _date_or_now(raw.get("Date"), now),
        "due_date": _date_or_now(raw.get("DueDate"), now),
        "status": raw.get("Status") or "",
        "line_amount_types": raw.get("LineAmountTypes") or None,
        "sub_total": _decimal(raw.get("SubTotal")),
        "total_tax": _decimal(raw.get("TotalTax")),
        "total": total,
        "amount_due": _decimal(raw.get("AmountDue"), default=total),
        "amount_paid": _decimal(raw.get("AmountPaid")),
        "currency_code": raw.get("CurrencyCode") or None,
        "updated_date_utc": _date_or_now(raw.get("UpdatedDateUTC"), now),
        "last_synced_at": now,
    }

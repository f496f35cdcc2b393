# Overview: Money arithmetic and status vocabulary shared by invoicing, coupons and reconciliation.

"""
Ledger Primitives

All amounts are integer minor units (cents/paise). Rates are basis points
(1800 = 18%, 1000 = 10%). Fractional intermediates go through Decimal and
are rounded half-up back to whole cents, so no binary floating point ever
touches an amount.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP


# =============================================================================
# INVOICE STATUS (CONSTANTS)
# =============================================================================

INVOICE_STATUS_DRAFT = "DRAFT"
INVOICE_STATUS_SENT = "SENT"
INVOICE_STATUS_PARTIALLY_PAID = "PARTIALLY_PAID"
INVOICE_STATUS_PAID = "PAID"
INVOICE_STATUS_OVERDUE = "OVERDUE"
INVOICE_STATUS_REFUNDED = "REFUNDED"

VALID_INVOICE_STATUSES = [
    INVOICE_STATUS_DRAFT,
    INVOICE_STATUS_SENT,
    INVOICE_STATUS_PARTIALLY_PAID,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_OVERDUE,
    INVOICE_STATUS_REFUNDED,
]


# =============================================================================
# PAYMENT RECORD STATUS AND METHODS (CONSTANTS)
# =============================================================================

PAYMENT_STATUS_COMPLETED = "COMPLETED"
PAYMENT_STATUS_FAILED = "FAILED"

PAYMENT_METHOD_CASH = "CASH"
PAYMENT_METHOD_CARD = "CARD"
PAYMENT_METHOD_UPI = "UPI"
PAYMENT_METHOD_BANK_TRANSFER = "BANK_TRANSFER"
PAYMENT_METHOD_CHEQUE = "CHEQUE"
PAYMENT_METHOD_WALLET = "WALLET"

VALID_PAYMENT_METHODS = [
    PAYMENT_METHOD_CASH,
    PAYMENT_METHOD_CARD,
    PAYMENT_METHOD_UPI,
    PAYMENT_METHOD_BANK_TRANSFER,
    PAYMENT_METHOD_CHEQUE,
    PAYMENT_METHOD_WALLET,
]

BPS_DENOMINATOR = Decimal(10000)


def to_cents(value: Decimal) -> int:
    """Round a Decimal amount half-up to whole cents."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, rate_bps: int) -> int:
    """amount * rate, rate in basis points."""
    return to_cents(Decimal(amount_cents) * Decimal(rate_bps) / BPS_DENOMINATOR)


def compute_line_tax(quantity: int, unit_price_cents: int, tax_rate_bps: int) -> int:
    return percent_of(quantity * unit_price_cents, tax_rate_bps)


def compute_line_total(quantity: int, unit_price_cents: int, tax_rate_bps: int = 0) -> int:
    """quantity * unit_price * (1 + tax_rate)."""
    base = Decimal(quantity) * Decimal(unit_price_cents)
    return to_cents(base * (BPS_DENOMINATOR + Decimal(tax_rate_bps)) / BPS_DENOMINATOR)


def clamp_non_negative(amount: int) -> int:
    return max(0, amount)


def format_cents(amount_cents: int | None) -> str:
    """250000 -> "2500.00" (display only)."""
    if amount_cents is None:
        return "-"
    return f"{Decimal(amount_cents) / 100:.2f}"


def derive_invoice_status(paid_cents: int, total_cents: int, previous_status: str) -> str:
    """
    Status as a pure function of paid vs total.

    Never downgrades: when nothing is paid the previous status is kept, so a
    SENT invoice stays SENT and a DRAFT stays DRAFT.
    """
    if paid_cents >= total_cents:
        return INVOICE_STATUS_PAID
    if paid_cents > 0:
        return INVOICE_STATUS_PARTIALLY_PAID
    return previous_status

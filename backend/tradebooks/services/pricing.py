# Overview: Line and invoice amount computation in integer cents.
"""
Pricing rules

- All money is integer cents; rates (discount, GST) are basis points.
- discount = gross x discount_bps / 10000, taxable = gross - discount,
  tax = taxable x tax_rate_bps / 10000. Each step rounds half away from zero.
- Amounts are computed on the absolute quantity and then signed, so a return
  line is the exact negative of the same line on the original invoice.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

BPS_DENOMINATOR = 10000


@dataclass(frozen=True)
class LineAmounts:
    gross_cents: int
    discount_cents: int
    taxable_cents: int
    tax_cents: int
    line_total_cents: int


@dataclass(frozen=True)
class Totals:
    subtotal_cents: int
    discount_cents: int
    tax_cents: int
    grand_total_cents: int

    def to_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "grand_total_cents": self.grand_total_cents,
        }


def apply_bps(amount_cents: int, bps: int) -> int:
    value = Decimal(amount_cents) * Decimal(bps) / Decimal(BPS_DENOMINATOR)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_line_amounts(
    quantity: int,
    unit_price_cents: int,
    discount_bps: int = 0,
    tax_rate_bps: int = 0,
) -> LineAmounts:
    sign = -1 if quantity < 0 else 1
    gross = abs(quantity) * unit_price_cents
    discount = apply_bps(gross, discount_bps)
    taxable = gross - discount
    tax = apply_bps(taxable, tax_rate_bps)
    return LineAmounts(
        gross_cents=sign * gross,
        discount_cents=sign * discount,
        taxable_cents=sign * taxable,
        tax_cents=sign * tax,
        line_total_cents=sign * (taxable + tax),
    )


def apply_line_amounts(line) -> LineAmounts:
    """Recompute and store the derived amount columns of an InvoiceLine."""
    amounts = compute_line_amounts(
        line.quantity, line.unit_price_cents, line.discount_bps or 0, line.tax_rate_bps or 0
    )
    return store_line_amounts(line, amounts)


def store_line_amounts(line, amounts: LineAmounts) -> LineAmounts:
    line.gross_cents = amounts.gross_cents
    line.discount_cents = amounts.discount_cents
    line.taxable_cents = amounts.taxable_cents
    line.tax_cents = amounts.tax_cents
    line.line_total_cents = amounts.line_total_cents
    return amounts


def compute_totals(lines: Iterable) -> Totals:
    """Sum stored line amounts. grand total = subtotal - discount + tax."""
    subtotal = discount = tax = 0
    for line in lines:
        subtotal += line.gross_cents
        discount += line.discount_cents
        tax += line.tax_cents
    return Totals(
        subtotal_cents=subtotal,
        discount_cents=discount,
        tax_cents=tax,
        grand_total_cents=subtotal - discount + tax,
    )


def remaining_amounts(original_line, returned: LineAmounts) -> LineAmounts:
    """
    Negated amounts still open on an original line after earlier returns.

    Used for the return that closes a line, so a fully returned line nets
    to exactly zero.
    """
    return LineAmounts(
        gross_cents=-(original_line.gross_cents + returned.gross_cents),
        discount_cents=-(original_line.discount_cents + returned.discount_cents),
        taxable_cents=-(original_line.taxable_cents + returned.taxable_cents),
        tax_cents=-(original_line.tax_cents + returned.tax_cents),
        line_total_cents=-(original_line.line_total_cents + returned.line_total_cents),
    )


def apply_totals(invoice, totals: Totals) -> None:
    invoice.subtotal_cents = totals.subtotal_cents
    invoice.discount_cents = totals.discount_cents
    invoice.tax_cents = totals.tax_cents
    invoice.grand_total_cents = totals.grand_total_cents


def validate_line_values(
    position: int,
    *,
    quantity,
    unit_price_cents,
    discount_bps,
    tax_rate_bps,
    tax_buckets: Iterable[int],
) -> list[str]:
    """Per-line input checks for draft (forward) invoices; returns messages."""
    errors = []
    prefix = f"Line {position}"
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        errors.append(f"{prefix}: quantity must be a positive integer")
    if not isinstance(unit_price_cents, int) or isinstance(unit_price_cents, bool) or unit_price_cents < 0:
        errors.append(f"{prefix}: unit_price_cents must be a non-negative integer")
    if not isinstance(discount_bps, int) or isinstance(discount_bps, bool) or not 0 <= discount_bps <= BPS_DENOMINATOR:
        errors.append(f"{prefix}: discount_bps must be between 0 and {BPS_DENOMINATOR}")
    buckets = tuple(tax_buckets)
    if tax_rate_bps not in buckets:
        allowed = ", ".join(str(b) for b in buckets)
        errors.append(f"{prefix}: tax_rate_bps must be one of {allowed}")
    return errors

"""
Return Processing Service

WHY: Goods come back from customers and go back to suppliers against a
specific original invoice. The critical challenge is over-return: the sum of
live returns for an item may never exceed what the original invoice moved,
even when two clerks book returns against the same invoice at once.

DESIGN PRINCIPLES:
- Returns reference the original invoice (and each line its original line)
- Return lines copy the original line's price, discount, tax rate, and batch,
  so the return is the exact negative of the returned share
- Quantities and amounts on return invoices are stored negative
- Return invoices are created confirmed: stock and ledger effects are posted
  in the same transaction as the validation that allowed them
- Cancelled returns do not count as returned quantity

CONCURRENCY:
validate_return() is advisory (a snapshot). create_return() re-validates
after locking the original invoice row and bumps the original's version in
the same transaction, so of two racing returns exactly one commits; the
other is retried and re-validated against the committed state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from flask import current_app
from sqlalchemy import func

from ..errors import InvalidState, NotFound, ValidationFailed
from ..extensions import db
from ..models import Invoice, InvoiceLine
from ..models.invoices import (
    INVOICE_PURCHASE,
    INVOICE_RETURN_PURCHASE,
    INVOICE_RETURN_SALES,
    INVOICE_SALES,
    PAYMENT_PENDING,
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    STATUS_PAID,
)
from ..time_utils import utcnow
from . import audit_service, pricing, stock_service
from .concurrency import begin_serialized, lock_for_update, run_with_retry
from .document_service import next_invoice_number
from .invoice_service import post_invoice_effects, stock_requirements


# =============================================================================
# RETURN TYPE CONSTANTS
# =============================================================================

# return type -> invoice type it may be raised against
RETURNABLE_TYPES = {
    INVOICE_RETURN_SALES: INVOICE_SALES,
    INVOICE_RETURN_PURCHASE: INVOICE_PURCHASE,
}

RETURNABLE_STATUSES = (STATUS_CONFIRMED, STATUS_PAID)


@dataclass(frozen=True)
class ReturnLineRequest:
    item_id: int
    quantity: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ReturnLineRequest":
        return cls(item_id=data.get("item_id"), quantity=data.get("quantity"))


@dataclass(frozen=True)
class ValidatedReturnLine:
    item_id: int
    quantity: int
    original_quantity: int
    already_returned: int
    available_for_return: int

    @property
    def remaining_after(self) -> int:
        return self.available_for_return - self.quantity

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "quantity": self.quantity,
            "original_quantity": self.original_quantity,
            "already_returned": self.already_returned,
            "available_for_return": self.available_for_return,
            "remaining_after": self.remaining_after,
        }


@dataclass
class ReturnValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    lines: list[ValidatedReturnLine] = field(default_factory=list)

    def raise_for_errors(self) -> None:
        if not self.valid:
            raise ValidationFailed("Return validation failed", errors=self.errors)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "lines": [line.to_dict() for line in self.lines],
        }


# =============================================================================
# SNAPSHOT QUERIES
# =============================================================================

def _coerce_requests(lines: Iterable) -> list[ReturnLineRequest]:
    requests = []
    for raw in lines or []:
        if isinstance(raw, ReturnLineRequest):
            requests.append(raw)
        elif isinstance(raw, Mapping):
            requests.append(ReturnLineRequest.from_dict(raw))
        else:
            raise ValidationFailed("Invalid return line", errors=["each line must be an object"])
    return requests


def _returned_by_line(original_invoice_id: int) -> dict[int, int]:
    """Quantity already returned per original line, over non-cancelled returns (positive)."""
    rows = (
        db.session.query(InvoiceLine.original_line_id, func.sum(InvoiceLine.quantity))
        .join(Invoice, Invoice.id == InvoiceLine.invoice_id)
        .filter(
            Invoice.original_invoice_id == original_invoice_id,
            Invoice.status != STATUS_CANCELLED,
            InvoiceLine.original_line_id.isnot(None),
        )
        .group_by(InvoiceLine.original_line_id)
        .all()
    )
    return {line_id: -int(total or 0) for line_id, total in rows}


def _returned_amounts_by_line(original_invoice_id: int) -> dict[int, pricing.LineAmounts]:
    """Summed (negative) amounts of non-cancelled returns per original line."""
    rows = (
        db.session.query(
            InvoiceLine.original_line_id,
            func.sum(InvoiceLine.gross_cents),
            func.sum(InvoiceLine.discount_cents),
            func.sum(InvoiceLine.taxable_cents),
            func.sum(InvoiceLine.tax_cents),
            func.sum(InvoiceLine.line_total_cents),
        )
        .join(Invoice, Invoice.id == InvoiceLine.invoice_id)
        .filter(
            Invoice.original_invoice_id == original_invoice_id,
            Invoice.status != STATUS_CANCELLED,
            InvoiceLine.original_line_id.isnot(None),
        )
        .group_by(InvoiceLine.original_line_id)
        .all()
    )
    return {
        line_id: pricing.LineAmounts(*(int(v or 0) for v in sums))
        for line_id, *sums in rows
    }


def _item_summary(original: Invoice, returned_by_line: dict[int, int]) -> dict[int, dict[str, int]]:
    """Per item: quantity on the original, quantity already returned, and first-line price."""
    summary: dict[int, dict[str, int]] = {}
    for line in original.lines:
        entry = summary.setdefault(
            line.item_id, {"original": 0, "returned": 0, "unit_price_cents": line.unit_price_cents}
        )
        entry["original"] += line.quantity
        entry["returned"] += returned_by_line.get(line.id, 0)
    return summary


def _ensure_returnable(original: Invoice, return_type: str) -> None:
    if return_type not in RETURNABLE_TYPES:
        raise ValidationFailed(
            "Invalid return type",
            errors=[f"return_type must be one of {', '.join(RETURNABLE_TYPES)}"],
        )
    expected = RETURNABLE_TYPES[return_type]
    if original.invoice_type != expected:
        raise ValidationFailed(
            "Return type does not match original invoice",
            errors=[f"{return_type} can only be raised against a {expected} invoice"],
        )
    if original.status not in RETURNABLE_STATUSES:
        raise InvalidState(
            f"Cannot return against {original.invoice_number}; invoice is {original.status}"
        )


def _evaluate(original: Invoice, requests: list[ReturnLineRequest],
              returned_by_line: dict[int, int]) -> ReturnValidation:
    """
    Check proposed lines against the original and prior returns.

    Each request line is checked on its own first (integer item, positive
    whole quantity); the surviving lines are then summed per item and checked
    against what is still returnable. Every problem is collected; one bad
    line invalidates the whole request.
    """
    if not requests:
        return ReturnValidation(valid=False, errors=["At least one return line is required"])

    summary = _item_summary(original, returned_by_line)

    proposed: dict[int, int] = {}
    errors: list[str] = []
    for position, req in enumerate(requests, start=1):
        if not isinstance(req.item_id, int) or isinstance(req.item_id, bool):
            errors.append(f"Line {position}: item_id must be an integer")
            continue
        if not isinstance(req.quantity, int) or isinstance(req.quantity, bool):
            errors.append(f"Item {req.item_id}: Return quantity must be a whole number")
            continue
        if req.quantity <= 0:
            errors.append(f"Item {req.item_id}: Return quantity must be greater than 0")
            continue
        proposed[req.item_id] = proposed.get(req.item_id, 0) + req.quantity

    lines: list[ValidatedReturnLine] = []
    for item_id, quantity in proposed.items():
        entry = summary.get(item_id)
        if entry is None:
            errors.append(f"Item {item_id} not found in original invoice")
            continue
        available = entry["original"] - entry["returned"]
        if quantity > available:
            errors.append(
                f"Item {item_id}: Cannot return {quantity} units. Only {available} units available "
                f"({entry['original']} original, {entry['returned']} already returned)"
            )
            continue
        lines.append(
            ValidatedReturnLine(
                item_id=item_id,
                quantity=quantity,
                original_quantity=entry["original"],
                already_returned=entry["returned"],
                available_for_return=available,
            )
        )

    if errors:
        return ReturnValidation(valid=False, errors=errors, lines=lines)
    return ReturnValidation(valid=True, lines=lines)


def _allocate(original: Invoice, validated: list[ValidatedReturnLine],
              returned_by_line: dict[int, int]) -> list[tuple[InvoiceLine, int]]:
    """Spread each item's return quantity across its original lines in line order."""
    allocations: list[tuple[InvoiceLine, int]] = []
    for vline in validated:
        left = vline.quantity
        for line in original.lines:
            if left == 0:
                break
            if line.item_id != vline.item_id:
                continue
            remaining = line.quantity - returned_by_line.get(line.id, 0)
            take = min(remaining, left)
            if take > 0:
                allocations.append((line, take))
                left -= take
    return allocations


def _get_original(original_invoice_id: int, lock: bool = False) -> Invoice:
    query = db.session.query(Invoice).filter_by(id=original_invoice_id)
    if lock:
        query = lock_for_update(query)
    original = query.first()
    if original is None:
        raise NotFound("Invoice", original_invoice_id)
    return original


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def validate_return(original_invoice_id: int, return_type: str, lines: Iterable) -> ReturnValidation:
    """
    Advisory check of a proposed return against committed state.

    Args:
        original_invoice_id: Invoice the goods came from
        return_type: return_sales or return_purchase
        lines: [{"item_id": ..., "quantity": ...}] with positive quantities

    Returns:
        ReturnValidation with per-line availability, or the collected errors

    Raises:
        NotFound: original invoice missing
        ValidationFailed: return type does not fit the original
        InvalidState: original is draft or cancelled
    """
    original = _get_original(original_invoice_id)
    _ensure_returnable(original, return_type)
    return _evaluate(original, _coerce_requests(lines), _returned_by_line(original.id))


def returnable_items(original_invoice_id: int) -> list[dict]:
    """What can still be returned from an invoice, one row per item."""
    original = _get_original(original_invoice_id)
    summary = _item_summary(original, _returned_by_line(original.id))
    return [
        {
            "item_id": item_id,
            "original_quantity": entry["original"],
            "already_returned": entry["returned"],
            "available_for_return": entry["original"] - entry["returned"],
            "unit_price_cents": entry["unit_price_cents"],
        }
        for item_id, entry in summary.items()
    ]


def create_return(
    original_invoice_id: int,
    *,
    return_type: str,
    lines: Iterable,
    reason: str | None = None,
    notes: str | None = None,
    actor_id: int | None = None,
) -> Invoice:
    """
    Create a confirmed return invoice against an original invoice.

    WHY: Validation and posting happen under one lock on the original, so a
    stale advisory check can never turn into an over-return.

    Returns:
        The return invoice (negative quantities and totals)

    Raises:
        NotFound, InvalidState, ValidationFailed: as validate_return
        BusinessRuleViolation: INSUFFICIENT_STOCK when goods to send back to
            a supplier are no longer on hand
        ConsistencyConflict: retries exhausted under contention
    """
    requests = _coerce_requests(lines)

    def _op() -> Invoice:
        begin_serialized()
        original = _get_original(original_invoice_id, lock=True)
        _ensure_returnable(original, return_type)

        returned = _returned_by_line(original.id)
        validation = _evaluate(original, requests, returned)
        validation.raise_for_errors()

        now = utcnow()
        ret = Invoice(
            invoice_number=next_invoice_number(return_type, now),
            invoice_type=return_type,
            customer_id=original.customer_id,
            supplier_id=original.supplier_id,
            invoice_date=now,
            due_date=now,
            status=STATUS_CONFIRMED,
            payment_status=PAYMENT_PENDING,
            original_invoice_id=original.id,
            return_reason=reason[:255] if reason else None,
            return_notes=notes,
            returned_at=now,
            created_by_user_id=actor_id,
            confirmed_by_user_id=actor_id,
            confirmed_at=now,
        )
        returned_amounts = _returned_amounts_by_line(original.id)
        for position, (orig_line, quantity) in enumerate(_allocate(original, validation.lines, returned), start=1):
            line = InvoiceLine(
                position=position,
                item_id=orig_line.item_id,
                quantity=-quantity,
                unit_price_cents=orig_line.unit_price_cents,
                discount_bps=orig_line.discount_bps,
                tax_rate_bps=orig_line.tax_rate_bps,
                batch_number=orig_line.batch_number,
                expiry_date=orig_line.expiry_date,
                manufacturing_date=orig_line.manufacturing_date,
                original_line_id=orig_line.id,
            )
            if quantity == orig_line.quantity - returned.get(orig_line.id, 0):
                # Closes the original line: take whatever amount is still open on it
                pricing.store_line_amounts(line, pricing.remaining_amounts(
                    orig_line, returned_amounts.get(orig_line.id, pricing.LineAmounts(0, 0, 0, 0, 0)),
                ))
            else:
                pricing.apply_line_amounts(line)
            ret.lines.append(line)
        pricing.apply_totals(ret, pricing.compute_totals(ret.lines))
        db.session.add(ret)
        db.session.flush()

        items = stock_service.lock_items(line.item_id for line in ret.lines)
        stock_service.require_available(stock_requirements(ret))
        post_invoice_effects(ret, items, actor_id=actor_id, occurred_at=now)

        # Version bump on the original: a concurrent return that validated
        # against the same snapshot fails its flush and is re-validated
        original.last_return_at = now

        audit_service.record_event(
            event_type="return.created",
            entity_type="invoice",
            entity_id=ret.id,
            invoice_id=ret.id,
            actor_user_id=actor_id,
            occurred_at=now,
            note=reason,
            payload={
                "original_invoice_id": original.id,
                "lines": [v.to_dict() for v in validation.lines],
                "grand_total_cents": ret.grand_total_cents,
            },
        )
        db.session.commit()
        current_app.logger.info(
            "Return %s created against %s (total=%s cents)",
            ret.invoice_number, original.invoice_number, ret.grand_total_cents,
        )
        return ret

    return run_with_retry(_op)


def create_sales_return(original_invoice_id: int, lines: Iterable, **kwargs) -> Invoice:
    return create_return(original_invoice_id, return_type=INVOICE_RETURN_SALES, lines=lines, **kwargs)


def create_purchase_return(original_invoice_id: int, lines: Iterable, **kwargs) -> Invoice:
    return create_return(original_invoice_id, return_type=INVOICE_RETURN_PURCHASE, lines=lines, **kwargs)


def returns_for_invoice(original_invoice_id: int, include_cancelled: bool = True) -> list[Invoice]:
    _get_original(original_invoice_id)
    q = db.session.query(Invoice).filter(Invoice.original_invoice_id == original_invoice_id)
    if not include_cancelled:
        q = q.filter(Invoice.status != STATUS_CANCELLED)
    return q.order_by(Invoice.id.asc()).all()

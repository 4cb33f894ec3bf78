# Overview: Invoice state machine; drafts, confirmation, cancellation, and settlement.
"""
Invoice lifecycle

    draft --confirm--> confirmed --record_payment (in full)--> paid
      |                    |
      +--cancel--+   +-----+--cancel
                 v   v
               cancelled   (terminal)

- Drafts carry no stock or ledger effect; lines and totals are editable.
- Confirmation re-derives every amount, checks party, items, stock (sales)
  and credit limit (sales), then appends one movement per line and one
  balanced ledger pair for the grand total, all in ONE transaction.
- Cancelling a confirmed invoice appends compensating movements and a
  reversal posting. Nothing already written is modified.
- Paid invoices, invoices with recorded payments, and originals with live
  returns cannot be cancelled.
- Return invoices are created confirmed by return_service and reuse the
  effect helpers below.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import (
    CREDIT_LIMIT_EXCEEDED,
    DUPLICATE_SUPPLIER_BILL,
    ITEM_INACTIVE,
    PARTY_INACTIVE,
    BusinessRuleViolation,
    InvalidState,
    NotFound,
    ValidationFailed,
)
from ..extensions import db
from ..filters import InvoiceFilter
from ..models import Customer, Invoice, InvoiceLine, Item, LedgerPosting, StockMovement, Supplier
from ..models.invoices import (
    INVOICE_PURCHASE,
    INVOICE_SALES,
    PAYMENT_PAID,
    PAYMENT_PARTIAL,
    PAYMENT_PENDING,
    RETURN_TYPES,
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    STATUS_DRAFT,
    STATUS_PAID,
)
from ..models.ledger import REFERENCE_INVOICE, REFERENCE_PAYMENT
from ..time_utils import add_days, normalize_datetime, parse_iso_datetime, utcnow
from . import accounting_service, audit_service, masters_service, posting_rules, pricing, stock_service
from .accounting_service import AccountRef
from .concurrency import begin_serialized, lock_for_update, run_with_retry
from .document_service import next_invoice_number

FORWARD_TYPES = (INVOICE_SALES, INVOICE_PURCHASE)
METADATA_FIELDS = {"transporter_name", "bilty_number", "bilty_date", "notes"}


# =============================================================================
# LINE INPUT
# =============================================================================

@dataclass
class LineInput:
    item_id: int
    quantity: int
    unit_price_cents: Optional[int] = None
    discount_bps: int = 0
    tax_rate_bps: Optional[int] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[datetime] = None
    manufacturing_date: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], position: int) -> "LineInput":
        """Parse one JSON line; raises ValidationFailed naming the line."""
        errors = []
        if not isinstance(data, Mapping):
            raise ValidationFailed("Invalid line", errors=[f"Line {position}: must be an object"])
        dates = {}
        for key in ("expiry_date", "manufacturing_date"):
            try:
                dates[key] = parse_iso_datetime(data.get(key))
            except (TypeError, ValueError):
                errors.append(f"Line {position}: {key} must be an ISO-8601 date")
        item_id = data.get("item_id")
        if item_id is None:
            errors.append(f"Line {position}: item_id is required")
        elif not isinstance(item_id, int) or isinstance(item_id, bool):
            errors.append(f"Line {position}: item_id must be an integer")
        if data.get("quantity") is None:
            errors.append(f"Line {position}: quantity is required")
        if errors:
            raise ValidationFailed("Invalid line", errors=errors)
        return cls(
            item_id=data["item_id"],
            quantity=data["quantity"],
            unit_price_cents=data.get("unit_price_cents"),
            discount_bps=data.get("discount_bps", 0),
            tax_rate_bps=data.get("tax_rate_bps"),
            batch_number=data.get("batch_number"),
            expiry_date=dates.get("expiry_date"),
            manufacturing_date=dates.get("manufacturing_date"),
        )


def _coerce_lines(lines: Iterable) -> list[LineInput]:
    coerced = []
    errors = []
    for position, raw in enumerate(lines or [], start=1):
        if isinstance(raw, LineInput):
            coerced.append(raw)
            continue
        try:
            coerced.append(LineInput.from_dict(raw, position))
        except ValidationFailed as exc:
            errors.extend(exc.errors)
    if errors:
        raise ValidationFailed("Invalid invoice lines", errors=errors)
    return coerced


def _build_lines(invoice_type: str, inputs: list[LineInput]) -> list[InvoiceLine]:
    """Validate inputs against items and tax slabs; returns priced, unsaved lines."""
    buckets = current_app.config.get("TAX_RATE_BUCKETS_BPS", (0, 400, 1800))
    item_ids = {li.item_id for li in inputs if isinstance(li.item_id, int)}
    items = {i.id: i for i in db.session.query(Item).filter(Item.id.in_(item_ids)).all()} if item_ids else {}

    errors: list[str] = []
    lines: list[InvoiceLine] = []
    for position, li in enumerate(inputs, start=1):
        item = items.get(li.item_id)
        if item is None:
            errors.append(f"Line {position}: item {li.item_id} not found")
            continue

        default_price = item.sale_price_cents if invoice_type == INVOICE_SALES else item.purchase_price_cents
        unit_price = li.unit_price_cents if li.unit_price_cents is not None else default_price
        tax_rate = li.tax_rate_bps if li.tax_rate_bps is not None else item.tax_rate_bps
        if unit_price is None:
            errors.append(f"Line {position}: unit_price_cents is required (item {item.id} has no default price)")
            continue

        line_errors = pricing.validate_line_values(
            position,
            quantity=li.quantity,
            unit_price_cents=unit_price,
            discount_bps=li.discount_bps,
            tax_rate_bps=tax_rate,
            tax_buckets=buckets,
        )
        if line_errors:
            errors.extend(line_errors)
            continue

        line = InvoiceLine(
            position=position,
            item_id=item.id,
            quantity=li.quantity,
            unit_price_cents=unit_price,
            discount_bps=li.discount_bps,
            tax_rate_bps=tax_rate,
            batch_number=(li.batch_number or None),
            expiry_date=normalize_datetime(li.expiry_date),
            manufacturing_date=normalize_datetime(li.manufacturing_date),
        )
        pricing.apply_line_amounts(line)
        lines.append(line)

    if errors:
        raise ValidationFailed("Invalid invoice lines", errors=errors)
    return lines


# =============================================================================
# HELPERS
# =============================================================================

def _load_invoice_locked(invoice_id: int) -> Invoice:
    invoice = lock_for_update(db.session.query(Invoice).filter_by(id=invoice_id)).first()
    if invoice is None:
        raise NotFound("Invoice", invoice_id)
    return invoice


def _require_active_party(invoice_type: str, party_id: int, lock: bool = False):
    party_type = "customer" if invoice_type == INVOICE_SALES else "supplier"
    if lock:
        # Serializes credit checks for the same customer
        model = Customer if party_type == "customer" else Supplier
        party = lock_for_update(db.session.query(model).filter_by(id=party_id)).first()
        if party is None:
            raise NotFound(model.__name__, party_id)
    else:
        party = masters_service.get_party(party_type, party_id)
    if not party.is_active:
        raise BusinessRuleViolation(
            PARTY_INACTIVE,
            f"{party_type.capitalize()} {party.name} is inactive",
            {"party_type": party_type, "party_id": party.id},
        )
    return party


def _ensure_unique_supplier_bill(supplier_id: int, bill_no: str, exclude_id: int | None = None) -> None:
    q = db.session.query(Invoice.id, Invoice.invoice_number).filter(
        Invoice.supplier_id == supplier_id,
        Invoice.supplier_bill_no == bill_no,
        Invoice.invoice_type == INVOICE_PURCHASE,
        Invoice.status != STATUS_CANCELLED,
    )
    if exclude_id is not None:
        q = q.filter(Invoice.id != exclude_id)
    existing = q.first()
    if existing is not None:
        raise BusinessRuleViolation(
            DUPLICATE_SUPPLIER_BILL,
            f"Supplier bill {bill_no} is already recorded on {existing.invoice_number}",
            {"supplier_id": supplier_id, "supplier_bill_no": bill_no, "invoice_id": existing.id},
        )


def _require_active_items(items: dict[int, Item], item_ids: set[int]) -> None:
    missing = sorted(item_ids - set(items))
    if missing:
        raise NotFound("Item", missing[0])
    inactive = sorted(i.id for i in items.values() if not i.is_active)
    if inactive:
        raise BusinessRuleViolation(
            ITEM_INACTIVE,
            f"Inactive item(s) on invoice: {', '.join(str(i) for i in inactive)}",
            {"item_ids": inactive},
        )


def _check_credit_limit(invoice: Invoice) -> None:
    customer = invoice.customer
    limit = customer.credit_limit_cents
    if not limit:
        return
    outstanding = accounting_service.balance_as_of(AccountRef.customer(customer.id))
    if outstanding + invoice.grand_total_cents > limit:
        raise BusinessRuleViolation(
            CREDIT_LIMIT_EXCEEDED,
            f"Credit limit exceeded for {customer.name}",
            {
                "credit_limit_cents": limit,
                "outstanding_cents": outstanding,
                "invoice_total_cents": invoice.grand_total_cents,
            },
        )


def stock_requirements(invoice: Invoice) -> dict[int, int]:
    """Outbound quantity per item the invoice's movements would need."""
    needs: dict[int, int] = {}
    for line in invoice.lines:
        delta = posting_rules.stock_delta(invoice.invoice_type, line.quantity)
        if delta < 0:
            needs[line.item_id] = needs.get(line.item_id, 0) - delta
    return needs


def post_invoice_effects(invoice: Invoice, items: dict[int, Item], *, actor_id: int | None,
                         occurred_at: datetime) -> None:
    """
    Append one movement per line and the grand-total ledger pair.

    Caller holds the item locks, has checked stock, and commits. A zero-value
    invoice (free goods) moves stock but posts nothing to the ledger.
    """
    movement_type = posting_rules.MOVEMENT_TYPES[invoice.invoice_type]
    for line in invoice.lines:
        stock_service.append_movement(
            item=items[line.item_id],
            quantity=posting_rules.stock_delta(invoice.invoice_type, line.quantity),
            movement_type=movement_type,
            reference_type=REFERENCE_INVOICE,
            reference_id=invoice.id,
            invoice_line_id=line.id,
            occurred_at=occurred_at,
            batch_number=line.batch_number,
            expiry_date=line.expiry_date,
            manufacturing_date=line.manufacturing_date,
            note=f"{invoice.invoice_number} line {line.position}",
            actor_id=actor_id,
        )

    amount = posting_rules.posting_amount(invoice)
    if amount:
        debit, credit = posting_rules.invoice_accounts(invoice)
        accounting_service.post_double_entry(
            debit_account=debit,
            credit_account=credit,
            amount_cents=amount,
            reference_type=REFERENCE_INVOICE,
            reference_id=invoice.id,
            description=posting_rules.posting_description(invoice),
            occurred_at=occurred_at,
            actor_id=actor_id,
            is_reversal=invoice.is_return,
        )


def reverse_invoice_effects(invoice: Invoice, *, actor_id: int | None, occurred_at: datetime) -> None:
    """Compensate every unreversed movement and posting of the invoice."""
    movements = stock_service.unreversed_movements(REFERENCE_INVOICE, invoice.id)
    items = stock_service.lock_items(m.item_id for m in movements)

    needs: dict[int, int] = {}
    for m in movements:
        if m.quantity > 0:
            needs[m.item_id] = needs.get(m.item_id, 0) + m.quantity
    stock_service.require_available(needs)

    note = f"Cancellation of {invoice.invoice_number}"
    for m in movements:
        stock_service.append_reversal(m, item=items[m.item_id], occurred_at=occurred_at,
                                      actor_id=actor_id, note=note)

    for posting in accounting_service.open_postings_for_reference(REFERENCE_INVOICE, invoice.id):
        accounting_service.reverse_posting(
            posting, description=note, occurred_at=occurred_at, actor_id=actor_id
        )


def _payment_description(invoice: Invoice, method: str | None, reference: str | None) -> str:
    text = f"Payment against {invoice.invoice_number}"
    if method:
        text += f" via {method}"
    if reference:
        text += f" (ref {reference})"
    return text


def _live_returns(invoice_id: int) -> list[Invoice]:
    return (
        db.session.query(Invoice)
        .filter(Invoice.original_invoice_id == invoice_id, Invoice.status != STATUS_CANCELLED)
        .all()
    )


# =============================================================================
# DRAFTS
# =============================================================================

def create_invoice(
    *,
    invoice_type: str,
    party_id: int,
    lines: Iterable = (),
    actor_id: int | None = None,
    invoice_date: datetime | None = None,
    due_date: datetime | None = None,
    supplier_bill_no: str | None = None,
    notes: str | None = None,
) -> Invoice:
    """Create a draft sales or purchase invoice with a freshly allocated number."""
    def _op() -> Invoice:
        if invoice_type in RETURN_TYPES:
            raise ValidationFailed(
                "Return invoices are created against an original invoice",
                errors=["use the returns endpoints for return invoices"],
            )
        if invoice_type not in FORWARD_TYPES:
            raise ValidationFailed("Invalid invoice type", errors=[f"unknown invoice_type '{invoice_type}'"])
        if not isinstance(party_id, int) or isinstance(party_id, bool):
            raise ValidationFailed("Invalid invoice", errors=["party_id must be an integer"])

        party =_require_active_party(invoice_type, party_id)
        inputs = _coerce_lines(lines)
        new_lines = _build_lines(invoice_type, inputs)

        bill_no = supplier_bill_no.strip() if supplier_bill_no and supplier_bill_no.strip() else None
        if bill_no and invoice_type != INVOICE_PURCHASE:
            raise ValidationFailed("Invalid invoice", errors=["supplier_bill_no applies to purchase invoices only"])

        inv_date = normalize_datetime(invoice_date) or utcnow()
        terms = party.payment_terms_days
        if terms is None:
            terms = current_app.config.get("DEFAULT_PAYMENT_TERMS_DAYS", 30)
        due = normalize_datetime(due_date) or add_days(inv_date, terms)
        if due < inv_date:
            raise ValidationFailed("Invalid invoice", errors=["due_date cannot be before invoice_date"])

        begin_serialized()
        if bill_no:
            _ensure_unique_supplier_bill(party.id, bill_no)

        invoice = Invoice(
            invoice_number=next_invoice_number(invoice_type, inv_date),
            invoice_type=invoice_type,
            customer_id=party.id if invoice_type == INVOICE_SALES else None,
            supplier_id=party.id if invoice_type == INVOICE_PURCHASE else None,
            invoice_date=inv_date,
            due_date=due,
            status=STATUS_DRAFT,
            payment_status=PAYMENT_PENDING,
            supplier_bill_no=bill_no,
            notes=notes,
            created_by_user_id=actor_id,
        )
        invoice.lines = new_lines
        pricing.apply_totals(invoice, pricing.compute_totals(new_lines))
        db.session.add(invoice)
        try:
            db.session.flush()
        except IntegrityError as exc:
            if bill_no:
                raise BusinessRuleViolation(
                    DUPLICATE_SUPPLIER_BILL,
                    f"Supplier bill {bill_no} is already recorded",
                    {"supplier_id": party.id, "supplier_bill_no": bill_no},
                ) from exc
            raise

        audit_service.record_event(
            event_type="invoice.created",
            entity_type="invoice",
            entity_id=invoice.id,
            invoice_id=invoice.id,
            actor_user_id=actor_id,
            occurred_at=utcnow(),
            note=f"Draft {invoice.invoice_number} created",
        )
        db.session.commit()
        current_app.logger.info("Invoice %s created (draft, %s lines)", invoice.invoice_number, len(new_lines))
        return invoice

    return run_with_retry(_op)


def replace_draft_lines(invoice_id: int, lines: Iterable, actor_id: int | None = None) -> Invoice:
    """Swap the full line set of a draft and recompute its totals."""
    def _op() -> Invoice:
        begin_serialized()
        invoice = _load_invoice_locked(invoice_id)
        if invoice.status != STATUS_DRAFT:
            raise InvalidState(f"Only draft invoices can be edited (invoice is {invoice.status})")

        new_lines = _build_lines(invoice.invoice_type, _coerce_lines(lines))

        # Old rows must be gone before new ones reuse their positions
        invoice.lines.clear()
        db.session.flush()
        invoice.lines.extend(new_lines)
        pricing.apply_totals(invoice, pricing.compute_totals(new_lines))
        db.session.flush()

        audit_service.record_event(
            event_type="invoice.lines_replaced",
            entity_type="invoice",
            entity_id=invoice.id,
            invoice_id=invoice.id,
            actor_user_id=actor_id,
            occurred_at=utcnow(),
            payload={"line_count": len(new_lines), "grand_total_cents": invoice.grand_total_cents},
        )
        db.session.commit()
        return invoice

    return run_with_retry(_op)


def delete_draft(invoice_id: int, actor_id: int | None = None) -> None:
    def _op() -> None:
        begin_serialized()
        invoice = _load_invoice_locked(invoice_id)
        if invoice.status != STATUS_DRAFT:
            raise InvalidState(f"Only draft invoices can be deleted (invoice is {invoice.status})")
        number = invoice.invoice_number
        audit_service.record_event(
            event_type="invoice.deleted",
            entity_type="invoice",
            entity_id=invoice.id,
            invoice_id=invoice.id,
            actor_user_id=actor_id,
            occurred_at=utcnow(),
            note=f"Draft {number} deleted",
        )
        db.session.delete(invoice)
        db.session.commit()
        current_app.logger.info("Draft invoice %s deleted", number)

    return run_with_retry(_op)


# =============================================================================
# TRANSITIONS
# =============================================================================

def confirm_invoice(invoice_id: int, actor_id: int | None = None) -> Invoice:
    """
    draft -> confirmed.

    Every check runs against locked rows; any failure rolls back the whole
    transition so no movement or ledger entry is left behind.
    """
    def _op() -> Invoice:
        begin_serialized()
        invoice = _load_invoice_locked(invoice_id)
        if invoice.is_return:
            raise InvalidState("Return invoices are confirmed when they are created")
        if invoice.status != STATUS_DRAFT:
            raise InvalidState(f"Cannot confirm invoice with status {invoice.status}")

        lines = list(invoice.lines)
        if not lines:
            raise ValidationFailed("Cannot confirm an invoice with no lines", errors=["invoice has no lines"])

        _require_active_party(invoice.invoice_type, invoice.party_id, lock=True)

        item_ids = {line.item_id for line in lines}
        items = stock_service.lock_items(item_ids)
        _require_active_items(items, item_ids)

        # Stored amounts are re-derived; totals never trust the draft
        for line in lines:
            pricing.apply_line_amounts(line)
        pricing.apply_totals(invoice, pricing.compute_totals(lines))

        if invoice.invoice_type == INVOICE_SALES:
            stock_service.require_available(stock_requirements(invoice))
            _check_credit_limit(invoice)

        now = utcnow()
        post_invoice_effects(invoice, items, actor_id=actor_id, occurred_at=now)

        invoice.status = STATUS_CONFIRMED
        invoice.payment_status = PAYMENT_PENDING
        invoice.confirmed_at = now
        invoice.confirmed_by_user_id = actor_id

        audit_service.record_event(
            event_type="invoice.confirmed",
            entity_type="invoice",
            entity_id=invoice.id,
            invoice_id=invoice.id,
            actor_user_id=actor_id,
            occurred_at=now,
            payload={"grand_total_cents": invoice.grand_total_cents, "line_count": len(lines)},
        )
        db.session.commit()
        current_app.logger.info(
            "Invoice %s confirmed (total=%s cents)", invoice.invoice_number, invoice.grand_total_cents
        )
        return invoice

    return run_with_retry(_op)


def cancel_invoice(invoice_id: int, *, reason: str | None = None, actor_id: int | None = None) -> Invoice:
    """
    draft|confirmed -> cancelled.

    Confirmed invoices get compensating movements and reversal postings.
    Cancelling a return invoice gives its quantity back to the original.
    """
    def _op() -> Invoice:
        begin_serialized()
        invoice = _load_invoice_locked(invoice_id)
        if invoice.status == STATUS_CANCELLED:
            raise InvalidState(f"Invoice {invoice.invoice_number} is already cancelled")
        if invoice.status == STATUS_PAID:
            raise InvalidState("Cannot cancel a paid invoice. Process a return instead.")

        now = utcnow()
        if invoice.status == STATUS_CONFIRMED:
            if invoice.paid_amount_cents:
                raise InvalidState("Cannot cancel an invoice with recorded payments")
            live = _live_returns(invoice.id)
            if live:
                numbers = ", ".join(r.invoice_number for r in live)
                raise InvalidState(
                    f"Cannot cancel {invoice.invoice_number}; cancel its returns first ({numbers})"
                )
            reverse_invoice_effects(invoice, actor_id=actor_id, occurred_at=now)
            if invoice.is_return and invoice.original_invoice is not None:
                # Frees returnable quantity; serializes with concurrent return creation
                invoice.original_invoice.last_return_at = now

        previous = invoice.status
        invoice.status = STATUS_CANCELLED
        invoice.cancelled_at = now
        invoice.cancelled_by_user_id = actor_id
        invoice.cancellation_reason = reason[:255] if reason else None

        audit_service.record_event(
            event_type="invoice.cancelled",
            entity_type="invoice",
            entity_id=invoice.id,
            invoice_id=invoice.id,
            actor_user_id=actor_id,
            occurred_at=now,
            note=reason,
            payload={"previous_status": previous},
        )
        db.session.commit()
        current_app.logger.info("Invoice %s cancelled (was %s)", invoice.invoice_number, previous)
        return invoice

    return run_with_retry(_op)


def record_payment(
    invoice_id: int,
    *,
    amount_cents: int,
    actor_id: int | None = None,
    paid_at: datetime | None = None,
    method: str | None = None,
    reference: str | None = None,
    note: str | None = None,
) -> Invoice:
    """Settle part or all of a confirmed invoice; posts one cash/party pair."""
    def _op() -> Invoice:
        begin_serialized()
        invoice = _load_invoice_locked(invoice_id)
        if invoice.is_return:
            raise InvalidState("Payments are not recorded against return invoices")
        if invoice.status == STATUS_PAID:
            raise InvalidState(f"Invoice {invoice.invoice_number} is already fully paid")
        if invoice.status != STATUS_CONFIRMED:
            raise InvalidState(f"Cannot record payment on a {invoice.status} invoice")

        if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
            raise ValidationFailed("Invalid payment", errors=["amount_cents must be a positive integer"])
        if amount_cents > invoice.outstanding_cents:
            raise ValidationFailed(
                "Payment exceeds outstanding amount",
                errors=[f"amount_cents {amount_cents} exceeds outstanding {invoice.outstanding_cents}"],
            )

        occurred = normalize_datetime(paid_at) or utcnow()
        debit, credit = posting_rules.payment_accounts(invoice)
        accounting_service.post_double_entry(
            debit_account=debit,
            credit_account=credit,
            amount_cents=amount_cents,
            reference_type=REFERENCE_PAYMENT,
            reference_id=invoice.id,
            description=note or _payment_description(invoice, method, reference),
            occurred_at=occurred,
            actor_id=actor_id,
        )

        invoice.paid_amount_cents += amount_cents
        invoice.last_payment_at = occurred
        if invoice.outstanding_cents == 0:
            invoice.payment_status = PAYMENT_PAID
            invoice.status = STATUS_PAID
        else:
            invoice.payment_status = PAYMENT_PARTIAL

        audit_service.record_event(
            event_type="invoice.payment_recorded",
            entity_type="invoice",
            entity_id=invoice.id,
            invoice_id=invoice.id,
            actor_user_id=actor_id,
            occurred_at=occurred,
            payload={
                "amount_cents": amount_cents,
                "outstanding_cents": invoice.outstanding_cents,
                "method": method,
                "reference": reference,
            },
        )
        db.session.commit()
        current_app.logger.info(
            "Payment of %s cents recorded on %s (%s)", amount_cents, invoice.invoice_number, invoice.payment_status
        )
        return invoice

    return run_with_retry(_op)


def update_post_confirmation_metadata(invoice_id: int, patch: Mapping[str, Any],
                                      actor_id: int | None = None) -> Invoice:
    """Transport and note fields stay editable after confirmation; nothing financial does."""
    unknown = sorted(set(patch) - METADATA_FIELDS)
    if unknown:
        raise ValidationFailed(
            "Only transport metadata and notes can be edited",
            errors=[f"field '{name}' is not editable" for name in unknown],
        )
    wrong_type = sorted(k for k, v in patch.items() if v is not None and not isinstance(v, str))
    if wrong_type:
        raise ValidationFailed(
            "Invalid metadata",
            errors=[f"{name} must be a string or null" for name in wrong_type],
        )

    def _op() -> Invoice:
        invoice = _load_invoice_locked(invoice_id)
        if invoice.status == STATUS_CANCELLED:
            raise InvalidState("Cancelled invoices cannot be edited")
        for key, value in patch.items():
            if key == "bilty_date" and isinstance(value, str):
                try:
                    value = parse_iso_datetime(value)
                except ValueError as exc:
                    raise ValidationFailed("Invalid bilty_date", errors=[str(exc)]) from exc
            setattr(invoice, key, value)

        audit_service.record_event(
            event_type="invoice.metadata_updated",
            entity_type="invoice",
            entity_id=invoice.id,
            invoice_id=invoice.id,
            actor_user_id=actor_id,
            occurred_at=utcnow(),
            payload={k: v for k, v in patch.items()},
        )
        db.session.commit()
        return invoice

    return run_with_retry(_op)


# =============================================================================
# READS
# =============================================================================

def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFound("Invoice", invoice_id)
    return invoice


def list_invoices(filters: InvoiceFilter | None = None) -> tuple[list[Invoice], int]:
    filters = filters or InvoiceFilter()
    q = filters.apply(db.session.query(Invoice), Invoice)
    total = q.count()
    limit, offset = filters.page
    invoices = (
        q.order_by(Invoice.invoice_date.desc(), Invoice.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return invoices, total


def invoice_effects(invoice_id: int) -> dict:
    """Movements, postings, and audit trail written for an invoice."""
    invoice = get_invoice(invoice_id)
    movements: list[StockMovement] = stock_service.movements_for_reference(REFERENCE_INVOICE, invoice.id)
    postings: list[LedgerPosting] = accounting_service.postings_for_reference(REFERENCE_INVOICE, invoice.id)
    payments: list[LedgerPosting] = accounting_service.postings_for_reference(REFERENCE_PAYMENT, invoice.id)
    return {
        "invoice": invoice.to_dict(include_lines=True),
        "stock_movements": [m.to_dict() for m in movements],
        "ledger_postings": [p.to_dict(include_entries=True) for p in postings],
        "payments": [p.to_dict(include_entries=True) for p in payments],
        "audit_events": [e.to_dict() for e in audit_service.events_for_invoice(invoice.id)],
    }

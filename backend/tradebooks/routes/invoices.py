# Overview: Flask API routes for invoices; parses input and returns JSON responses.

# backend/tradebooks/routes/invoices.py
"""
Invoice API Routes

DESIGN:
- Drafts are created, edited, and deleted freely; nothing posts until confirm
- Confirm, cancel, and payments are single engine transactions
- Errors are raised as EngineError subclasses and mapped by the app-level
  handler (routes never build error responses themselves)
"""

from flask import Blueprint, request, jsonify, g

from ..decorators import json_body, with_actor
from ..filters import InvoiceFilter
from ..services import invoice_service
from ..time_utils import parse_iso_datetime
from ..errors import ValidationFailed


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


def _optional_datetime(data: dict, key: str):
    try:
        return parse_iso_datetime(data.get(key))
    except ValueError as exc:
        raise ValidationFailed(f"Invalid {key}", errors=[f"{key} must be an ISO-8601 datetime"]) from exc


# =============================================================================
# DRAFTS
# =============================================================================

@invoices_bp.post("")
@with_actor
def create_invoice_route():
    """
    Create a draft invoice.

    Request body:
    {
        "invoice_type": "sales" | "purchase",
        "party_id": 7,
        "lines": [{"item_id": 1, "quantity": 10, "unit_price_cents": 1000,
                   "discount_bps": 500, "tax_rate_bps": 1800}],
        "invoice_date": "2026-04-01T00:00:00Z",   (optional)
        "due_date": "2026-05-01T00:00:00Z",       (optional, party terms)
        "supplier_bill_no": "B-991",              (purchase only, optional)
        "notes": "..."                            (optional)
    }

    Returns:
        201: Draft invoice with lines
        422: Invalid input or inactive party
    """
    data = json_body()
    invoice = invoice_service.create_invoice(
        invoice_type=data.get("invoice_type"),
        party_id=data.get("party_id"),
        lines=data.get("lines") or [],
        actor_id=g.actor_id,
        invoice_date=_optional_datetime(data, "invoice_date"),
        due_date=_optional_datetime(data, "due_date"),
        supplier_bill_no=data.get("supplier_bill_no"),
        notes=data.get("notes"),
    )
    return jsonify({"invoice": invoice.to_dict(include_lines=True)}), 201


@invoices_bp.get("")
def list_invoices_route():
    """
    List invoices, newest first.

    Query: invoice_type, status, payment_status, customer_id, supplier_id,
    original_invoice_id, invoice_number, from, to, overdue, limit, offset
    """
    filters = InvoiceFilter.from_args(request.args)
    invoices, total = invoice_service.list_invoices(filters)
    limit, offset = filters.page
    return jsonify({
        "invoices": [inv.to_dict() for inv in invoices],
        "total": total,
        "limit": limit,
        "offset": offset,
    }), 200


@invoices_bp.get("/<int:invoice_id>")
def get_invoice_route(invoice_id: int):
    invoice = invoice_service.get_invoice(invoice_id)
    return jsonify({"invoice": invoice.to_dict(include_lines=True)}), 200


@invoices_bp.get("/<int:invoice_id>/effects")
def invoice_effects_route(invoice_id: int):
    """Stock movements, ledger postings, payments, and audit trail of one invoice."""
    return jsonify(invoice_service.invoice_effects(invoice_id)), 200


@invoices_bp.put("/<int:invoice_id>/lines")
@with_actor
def replace_lines_route(invoice_id: int):
    """Replace every line of a draft. Body: {"lines": [...]}"""
    data = json_body()
    invoice = invoice_service.replace_draft_lines(invoice_id, data.get("lines") or [], actor_id=g.actor_id)
    return jsonify({"invoice": invoice.to_dict(include_lines=True)}), 200


@invoices_bp.delete("/<int:invoice_id>")
@with_actor
def delete_draft_route(invoice_id: int):
    invoice_service.delete_draft(invoice_id, actor_id=g.actor_id)
    return jsonify({"deleted": True, "invoice_id": invoice_id}), 200


# =============================================================================
# TRANSITIONS
# =============================================================================

@invoices_bp.post("/<int:invoice_id>/confirm")
@with_actor
def confirm_invoice_route(invoice_id: int):
    """
    Confirm a draft: posts stock movements and the ledger pair.

    Returns:
        200: Confirmed invoice
        404: Invoice or item not found
        409: Invoice is not a draft
        422: Inactive party/item, insufficient stock, or credit limit exceeded
    """
    invoice = invoice_service.confirm_invoice(invoice_id, actor_id=g.actor_id)
    return jsonify({"invoice": invoice.to_dict(include_lines=True)}), 200


@invoices_bp.post("/<int:invoice_id>/cancel")
@with_actor
def cancel_invoice_route(invoice_id: int):
    """Cancel a draft or confirmed invoice. Body: {"reason": "..."} (optional)"""
    data = json_body()
    invoice = invoice_service.cancel_invoice(invoice_id, reason=data.get("reason"), actor_id=g.actor_id)
    return jsonify({"invoice": invoice.to_dict(include_lines=True)}), 200


@invoices_bp.post("/<int:invoice_id>/payments")
@with_actor
def record_payment_route(invoice_id: int):
    """
    Record a payment against a confirmed sales or purchase invoice.

    Request body:
    {
        "amount_cents": 5000,
        "paid_at": "2026-04-02T10:00:00Z",   (optional)
        "method": "cash",                    (optional)
        "reference": "UTR 0091",             (optional)
        "note": "..."                        (optional)
    }
    """
    data = json_body()
    invoice = invoice_service.record_payment(
        invoice_id,
        amount_cents=data.get("amount_cents"),
        actor_id=g.actor_id,
        paid_at=_optional_datetime(data, "paid_at"),
        method=data.get("method"),
        reference=data.get("reference"),
        note=data.get("note"),
    )
    return jsonify({"invoice": invoice.to_dict()}), 200


@invoices_bp.patch("/<int:invoice_id>/metadata")
@with_actor
def update_metadata_route(invoice_id: int):
    """Transport (bilty) details and notes; lines and amounts are never editable here."""
    data = json_body()
    invoice = invoice_service.update_post_confirmation_metadata(invoice_id, data, actor_id=g.actor_id)
    return jsonify({"invoice": invoice.to_dict()}), 200

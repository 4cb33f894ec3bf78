# Overview: Flask API routes for returns; parses input and returns JSON responses.

# backend/tradebooks/routes/returns.py
"""
Return API Routes

WHY: Goods come back against a specific confirmed invoice. The validate
endpoint is advisory; the create endpoint re-validates under a lock on the
original invoice and posts stock and ledger effects in one transaction.
"""

from flask import Blueprint, request, jsonify, g

from ..decorators import json_body, with_actor
from ..services import return_service


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


@returns_bp.post("/validate")
def validate_return_route():
    """
    Check a proposed return without writing anything.

    Request body:
    {
        "original_invoice_id": 12,
        "return_type": "return_sales" | "return_purchase",
        "lines": [{"item_id": 1, "quantity": 3}]
    }

    Returns:
        200: {"valid": bool, "errors": [...], "lines": [...]}
    """
    data = json_body()
    result = return_service.validate_return(
        data.get("original_invoice_id"),
        data.get("return_type"),
        data.get("lines") or [],
    )
    return jsonify(result.to_dict()), 200


@returns_bp.get("/invoices/<int:invoice_id>/returnable")
def returnable_items_route(invoice_id: int):
    return jsonify({
        "original_invoice_id": invoice_id,
        "items": return_service.returnable_items(invoice_id),
    }), 200


@returns_bp.post("")
@with_actor
def create_return_route():
    """
    Create a confirmed return invoice.

    Request body: as /validate, plus "reason" and "notes" (optional).

    Returns:
        201: Return invoice (negative quantities and totals)
        404: Original invoice not found
        409: Original is draft or cancelled; concurrent conflict
        422: Over-return, unknown item, or insufficient stock
    """
    data = json_body()
    ret = return_service.create_return(
        data.get("original_invoice_id"),
        return_type=data.get("return_type"),
        lines=data.get("lines") or [],
        reason=data.get("reason"),
        notes=data.get("notes"),
        actor_id=g.actor_id,
    )
    return jsonify({"invoice": ret.to_dict(include_lines=True)}), 201


@returns_bp.get("/invoices/<int:invoice_id>")
def list_returns_route(invoice_id: int):
    include_cancelled = request.args.get("include_cancelled", "true").lower() not in ("0", "false", "no")
    returns = return_service.returns_for_invoice(invoice_id, include_cancelled=include_cancelled)
    return jsonify({
        "original_invoice_id": invoice_id,
        "returns": [r.to_dict(include_lines=True) for r in returns],
    }), 200

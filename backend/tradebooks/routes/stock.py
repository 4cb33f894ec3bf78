# Overview: Flask API routes for the stock movement ledger; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g

from ..decorators import json_body, with_actor
from ..errors import ValidationFailed
from ..filters import DateRange
from ..services import masters_service, stock_service
from ..time_utils import parse_iso_datetime, to_utc_z

"""
Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- as_of filtering is inclusive: occurred_at <= as_of.
"""

stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _as_of_arg():
    try:
        return parse_iso_datetime(request.args.get("as_of"))
    except ValueError as exc:
        raise ValidationFailed("Invalid as_of", errors=["as_of must be an ISO-8601 datetime"]) from exc


@stock_bp.get("/items/<int:item_id>/balance")
def item_balance_route(item_id: int):
    item = masters_service.get_item(item_id)
    as_of = _as_of_arg()
    return jsonify({
        "item_id": item.id,
        "as_of": to_utc_z(as_of),
        "quantity_on_hand": stock_service.balance_as_of(item.id, as_of),
        "current_stock": item.current_stock,
    }), 200


@stock_bp.get("/items/<int:item_id>/history")
def item_history_route(item_id: int):
    item = masters_service.get_item(item_id)
    limit = request.args.get("limit", default=500, type=int)
    limit = max(1, min(limit, 5000))
    movements = stock_service.history(item.id, DateRange.from_args(request.args), limit=limit)
    return jsonify({"item_id": item.id, "movements": [m.to_dict() for m in movements]}), 200


@stock_bp.post("/adjustments")
@with_actor
def record_adjustment_route():
    """
    Manual stock correction.

    Request body:
    {
        "item_id": 1,
        "quantity_delta": -2,
        "reason": "Damaged in transit",
        "batch_number": "B12",              (optional)
        "expiry_date": "2027-01-31"         (optional)
    }
    """
    data = json_body()
    try:
        expiry_date = parse_iso_datetime(data.get("expiry_date"))
    except ValueError as exc:
        raise ValidationFailed("Invalid expiry_date", errors=["expiry_date must be an ISO-8601 date"]) from exc
    movement = stock_service.record_adjustment(
        item_id=data.get("item_id"),
        quantity_delta=data.get("quantity_delta"),
        reason=data.get("reason"),
        actor_id=g.actor_id,
        batch_number=data.get("batch_number"),
        expiry_date=expiry_date,
    )
    return jsonify({"movement": movement.to_dict()}), 201


@stock_bp.get("/low")
def low_stock_route():
    return jsonify({"items": stock_service.low_stock_items(_as_of_arg())}), 200


@stock_bp.get("/expiring")
def expiring_batches_route():
    within_days = request.args.get("within_days", default=0, type=int)
    if within_days < 0:
        raise ValidationFailed("Invalid within_days", errors=["within_days must not be negative"])
    return jsonify({"batches": stock_service.expiring_batches(within_days, _as_of_arg())}), 200


@stock_bp.get("/drift")
def projection_drift_route():
    drift = stock_service.projection_drift()
    return jsonify({"consistent": not drift, "items": drift}), 200

# Overview: Stock movement ledger; append-only movements and derived stock levels.

# backend/tradebooks/services/stock_service.py

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import and_, func

from ..errors import (
    INSUFFICIENT_STOCK,
    BusinessRuleViolation,
    InvalidState,
    NotFound,
    ValidationFailed,
)
from ..extensions import db
from ..filters import DateRange
from ..models import Item, StockMovement
from ..models.stock import (
    INVERSE_MOVEMENT_TYPES,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_SIGNS,
    REFERENCE_ADJUSTMENT,
)
from ..time_utils import add_days, normalize_datetime, to_utc_z, utcnow
from . import audit_service
from .concurrency import begin_serialized, lock_for_update, run_with_retry
"""
Stock ledger invariants (authoritative)

Canonical time handling:
- All internal datetimes are UTC-naive (tzinfo=None).
- As-of filters are inclusive: occurred_at <= as_of.

Stock model:
- Stock on hand is SUM(quantity) over StockMovement rows (optionally as-of).
- Item.current_stock is a cache of the all-time sum, refreshed in the same
  transaction as every append; rebuild_projection() recomputes it.
- Movements are append-only. Cancellation appends is_reversal rows.

Business invariants:
- Movement quantity is non-zero and its sign matches its type
  (in / return_from_customer / transfer_in positive; out / return_to_supplier /
  transfer_out negative; adjustment either).
- No operation may leave an item's stock negative; callers check
  availability with require_available() under the item lock before appending.
"""


# =============================================================================
# LOCKING AND AVAILABILITY
# =============================================================================

def lock_items(item_ids) -> dict[int, Item]:
    """Lock item rows in id order (stable order avoids deadlocks)."""
    ids = sorted(set(item_ids))
    if not ids:
        return {}
    query = db.session.query(Item).filter(Item.id.in_(ids)).order_by(Item.id.asc())
    return {item.id: item for item in lock_for_update(query).all()}


def balance_as_of(item_id: int, as_of: datetime | None = None) -> int:
    """Stock on hand: sum of movement quantities with occurred_at <= as_of (all if None)."""
    q = db.session.query(func.coalesce(func.sum(StockMovement.quantity), 0)).filter(
        StockMovement.item_id == item_id
    )
    if as_of is not None:
        q = q.filter(StockMovement.occurred_at <= normalize_datetime(as_of))
    return int(q.scalar() or 0)


def balances(item_ids, as_of: datetime | None = None) -> dict[int, int]:
    ids = list(set(item_ids))
    if not ids:
        return {}
    q = db.session.query(StockMovement.item_id, func.sum(StockMovement.quantity)).filter(
        StockMovement.item_id.in_(ids)
    )
    if as_of is not None:
        q = q.filter(StockMovement.occurred_at <= normalize_datetime(as_of))
    found = {item_id: int(total or 0) for item_id, total in q.group_by(StockMovement.item_id).all()}
    return {item_id: found.get(item_id, 0) for item_id in ids}


def check_availability(requirements: dict[int, int]) -> list[dict]:
    """Return shortfalls for {item_id: quantity_needed}; empty when all are covered."""
    needed = {item_id: qty for item_id, qty in requirements.items() if qty > 0}
    on_hand = balances(needed.keys())
    shortfalls = []
    for item_id in sorted(needed):
        available = on_hand.get(item_id, 0)
        if available < needed[item_id]:
            shortfalls.append(
                {"item_id": item_id, "required": needed[item_id], "available": available}
            )
    return shortfalls


def require_available(requirements: dict[int, int]) -> None:
    shortfalls = check_availability(requirements)
    if shortfalls:
        detail = "; ".join(
            f"item {s['item_id']}: need {s['required']}, have {s['available']}" for s in shortfalls
        )
        raise BusinessRuleViolation(
            INSUFFICIENT_STOCK,
            f"Insufficient stock ({detail})",
            {"items": shortfalls},
        )


# =============================================================================
# APPEND
# =============================================================================

def _validate_movement(quantity, movement_type: str) -> None:
    errors = []
    if movement_type not in MOVEMENT_SIGNS:
        errors.append(f"unknown movement_type '{movement_type}'")
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity == 0:
        errors.append("quantity must be a non-zero integer")
    elif movement_type in MOVEMENT_SIGNS:
        sign = MOVEMENT_SIGNS[movement_type]
        if sign and (quantity > 0) != (sign > 0):
            direction = "positive" if sign > 0 else "negative"
            errors.append(f"{movement_type} movements must be {direction}")
    if errors:
        raise ValidationFailed("Invalid stock movement", errors=errors)


def append_movement(
    *,
    item: Item,
    quantity: int,
    movement_type: str,
    reference_type: str,
    reference_id: int | None = None,
    invoice_line_id: int | None = None,
    occurred_at: datetime | None = None,
    is_reversal: bool = False,
    reverses_movement_id: int | None = None,
    batch_number: str | None = None,
    expiry_date: datetime | None = None,
    manufacturing_date: datetime | None = None,
    note: str | None = None,
    actor_id: int | None = None,
) -> StockMovement:
    """
    Append one movement and refresh the item's stock projection.

    Runs in the caller's transaction; the caller holds the item lock and
    commits. An outbound movement that would take stock below zero is rejected
    with INSUFFICIENT_STOCK.
    """
    _validate_movement(quantity, movement_type)
    if quantity < 0:
        require_available({item.id: -quantity})

    movement = StockMovement(
        item_id=item.id,
        quantity=quantity,
        movement_type=movement_type,
        reference_type=reference_type,
        reference_id=reference_id,
        invoice_line_id=invoice_line_id,
        is_reversal=is_reversal,
        reverses_movement_id=reverses_movement_id,
        batch_number=batch_number,
        expiry_date=normalize_datetime(expiry_date),
        manufacturing_date=normalize_datetime(manufacturing_date),
        note=note,
        created_by_user_id=actor_id,
        occurred_at=normalize_datetime(occurred_at) or utcnow(),
    )
    db.session.add(movement)
    item.current_stock = (item.current_stock or 0) + quantity
    return movement


def append_reversal(original: StockMovement, *, item: Item, occurred_at: datetime,
                    actor_id: int | None = None, note: str | None = None) -> StockMovement:
    """Compensating movement: same item, batch, and reference; opposite sign."""
    return append_movement(
        item=item,
        quantity=-original.quantity,
        movement_type=INVERSE_MOVEMENT_TYPES[original.movement_type],
        reference_type=original.reference_type,
        reference_id=original.reference_id,
        invoice_line_id=original.invoice_line_id,
        occurred_at=occurred_at,
        is_reversal=True,
        reverses_movement_id=original.id,
        batch_number=original.batch_number,
        expiry_date=original.expiry_date,
        manufacturing_date=original.manufacturing_date,
        note=note,
        actor_id=actor_id,
    )


# =============================================================================
# READS
# =============================================================================

def history(item_id: int, date_range: DateRange | None = None, limit: int | None = None) -> list[StockMovement]:
    """Movements for an item in occurrence order (ties broken by id)."""
    q = db.session.query(StockMovement).filter(StockMovement.item_id == item_id)
    if date_range is not None:
        q = date_range.apply(q, StockMovement.occurred_at)
    q = q.order_by(StockMovement.occurred_at.asc(), StockMovement.id.asc())
    if limit:
        q = q.limit(limit)
    return q.all()


def movements_for_reference(reference_type: str, reference_id: int) -> list[StockMovement]:
    return (
        db.session.query(StockMovement)
        .filter(
            StockMovement.reference_type == reference_type,
            StockMovement.reference_id == reference_id,
        )
        .order_by(StockMovement.id.asc())
        .all()
    )


def unreversed_movements(reference_type: str, reference_id: int) -> list[StockMovement]:
    movements = movements_for_reference(reference_type, reference_id)
    reversed_ids = {m.reverses_movement_id for m in movements if m.reverses_movement_id}
    return [m for m in movements if not m.is_reversal and m.id not in reversed_ids]


def low_stock_items(as_of: datetime | None = None) -> list[dict]:
    """Active items whose ledger stock (as of as_of, if given) is at or below min_stock."""
    movements = db.session.query(
        StockMovement.item_id.label("item_id"),
        func.sum(StockMovement.quantity).label("on_hand"),
    )
    if as_of is not None:
        movements = movements.filter(StockMovement.occurred_at <= normalize_datetime(as_of))
    stock = movements.group_by(StockMovement.item_id).subquery()
    on_hand = func.coalesce(stock.c.on_hand, 0)
    rows = (
        db.session.query(Item, on_hand)
        .outerjoin(stock, stock.c.item_id == Item.id)
        .filter(Item.is_active.is_(True), on_hand <= Item.min_stock)
        .order_by(Item.name.asc(), Item.id.asc())
        .all()
    )
    return [
        {
            "item_id": item.id,
            "code": item.code,
            "name": item.name,
            "on_hand": int(qty or 0),
            "min_stock": item.min_stock,
            "shortfall": max(item.min_stock - int(qty or 0), 0),
        }
        for item, qty in rows
    ]


def expiring_batches(within_days: int = 0, as_of: datetime | None = None) -> list[dict]:
    """
    Batches still in stock that have expired (within_days=0) or expire within
    the window. Batch stock is the sum of movements carrying that batch number.
    """
    as_of = normalize_datetime(as_of) or utcnow()
    horizon = add_days(as_of, within_days)
    on_hand = func.sum(StockMovement.quantity)
    rows = (
        db.session.query(
            StockMovement.item_id,
            StockMovement.batch_number,
            func.max(StockMovement.expiry_date),
            on_hand,
        )
        .filter(
            and_(
                StockMovement.batch_number.isnot(None),
                StockMovement.expiry_date.isnot(None),
            )
        )
        .group_by(StockMovement.item_id, StockMovement.batch_number)
        .having(and_(on_hand > 0, func.max(StockMovement.expiry_date) <= horizon))
        .order_by(func.max(StockMovement.expiry_date).asc())
        .all()
    )
    return [
        {
            "item_id": item_id,
            "batch_number": batch_number,
            "expiry_date": to_utc_z(expiry_date),
            "on_hand": int(qty),
            "is_expired": expiry_date <= as_of,
        }
        for item_id, batch_number, expiry_date, qty in rows
    ]


def projection_drift() -> list[dict]:
    """Items whose cached current_stock disagrees with the movement ledger."""
    stock = (
        db.session.query(
            StockMovement.item_id.label("item_id"),
            func.sum(StockMovement.quantity).label("on_hand"),
        )
        .group_by(StockMovement.item_id)
        .subquery()
    )
    on_hand = func.coalesce(stock.c.on_hand, 0)
    rows = (
        db.session.query(Item, on_hand)
        .outerjoin(stock, stock.c.item_id == Item.id)
        .filter(Item.current_stock != on_hand)
        .order_by(Item.id.asc())
        .all()
    )
    return [
        {"item_id": item.id, "code": item.code, "cached": item.current_stock, "ledger": int(qty or 0)}
        for item, qty in rows
    ]


# =============================================================================
# WRITE OPERATIONS
# =============================================================================

def record_adjustment(
    *,
    item_id: int,
    quantity_delta: int,
    reason: str,
    actor_id: int | None = None,
    occurred_at: datetime | None = None,
    batch_number: str | None = None,
    expiry_date: datetime | None = None,
) -> StockMovement:
    """
    Manual stock correction (count difference, damage, opening stock).

    A negative adjustment may not take the item below zero.
    """
    def _op() -> StockMovement:
        if not reason or not reason.strip():
            raise ValidationFailed("Adjustment reason is required", errors=["reason is required"])

        begin_serialized()
        items = lock_items([item_id])
        item = items.get(item_id)
        if item is None:
            raise NotFound("Item", item_id)
        if not item.is_active:
            raise InvalidState(f"Item {item_id} is inactive")
        if isinstance(quantity_delta, int) and quantity_delta < 0:
            require_available({item_id: -quantity_delta})

        now = utcnow()
        movement = append_movement(
            item=item,
            quantity=quantity_delta,
            movement_type=MOVEMENT_ADJUSTMENT,
            reference_type=REFERENCE_ADJUSTMENT,
            occurred_at=occurred_at or now,
            batch_number=batch_number,
            expiry_date=expiry_date,
            note=reason.strip()[:255],
            actor_id=actor_id,
        )
        db.session.flush()
        audit_service.record_event(
            event_type="stock.adjusted",
            entity_type="stock_movement",
            entity_id=movement.id,
            actor_user_id=actor_id,
            occurred_at=now,
            note=reason,
            payload={"item_id": item_id, "quantity": quantity_delta},
        )
        db.session.commit()
        current_app.logger.info(
            "Stock adjusted: item=%s delta=%s movement=%s", item_id, quantity_delta, movement.id
        )
        return movement

    return run_with_retry(_op)


def rebuild_projection(item_id: int | None = None) -> list[dict]:
    """Recompute Item.current_stock from the ledger; returns the corrected rows."""
    def _op() -> list[dict]:
        begin_serialized()
        query = db.session.query(Item).order_by(Item.id.asc())
        if item_id is not None:
            query = query.filter(Item.id == item_id)
        items = lock_for_update(query).all()
        totals = balances([i.id for i in items])
        changed = []
        for item in items:
            ledger = totals.get(item.id, 0)
            if item.current_stock != ledger:
                changed.append({"item_id": item.id, "cached": item.current_stock, "ledger": ledger})
                item.current_stock = ledger
        db.session.commit()
        if changed:
            current_app.logger.warning("Rebuilt stock projection for %s item(s)", len(changed))
        return changed

    return run_with_retry(_op)

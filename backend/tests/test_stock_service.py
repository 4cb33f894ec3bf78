"""Stock movement ledger: balances, adjustments, projections, and append-only rows."""

from datetime import datetime, timedelta

import pytest

from tradebooks.errors import INSUFFICIENT_STOCK, BusinessRuleViolation, ImmutableRecordError, ValidationFailed
from tradebooks.extensions import db
from tradebooks.filters import DateRange
from tradebooks.models import AuditEvent, Item, StockMovement
from tradebooks.services import stock_service
from tradebooks.time_utils import utcnow


def test_balance_is_sum_of_movements(masters):
    stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=10, reason="Opening stock")
    stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=-3, reason="Damaged")

    assert stock_service.balance_as_of(masters.item.id) == 7
    assert db.session.get(Item, masters.item.id).current_stock == 7
    assert stock_service.projection_drift() == []


def test_balance_as_of_is_inclusive(masters):
    t0 = utcnow() - timedelta(days=10)
    t1 = t0 + timedelta(days=5)
    stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=4, reason="Opening", occurred_at=t0)
    stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=6, reason="Found", occurred_at=t1)

    assert stock_service.balance_as_of(masters.item.id, t0 - timedelta(seconds=1)) == 0
    assert stock_service.balance_as_of(masters.item.id, t0) == 4
    assert stock_service.balance_as_of(masters.item.id, t1) == 10


def test_negative_adjustment_cannot_go_below_zero(masters):
    stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=2, reason="Opening")

    with pytest.raises(BusinessRuleViolation) as exc:
        stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=-3, reason="Count")

    assert exc.value.reason == INSUFFICIENT_STOCK
    assert exc.value.details["items"] == [{"item_id": masters.item.id, "required": 3, "available": 2}]
    assert stock_service.balance_as_of(masters.item.id) == 2


def test_adjustment_requires_reason_and_nonzero_quantity(masters):
    with pytest.raises(ValidationFailed):
        stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=5, reason="  ")
    with pytest.raises(ValidationFailed):
        stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=0, reason="Count")
    assert db.session.query(StockMovement).count() == 0


def test_adjustment_is_audited(masters):
    movement = stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=5, reason="Opening", actor_id=9)

    event = db.session.query(AuditEvent).filter_by(event_type="stock.adjusted").one()
    assert event.entity_id == movement.id
    assert event.actor_user_id == 9


def test_history_is_ordered_and_filtered(masters):
    base = utcnow() - timedelta(days=3)
    for offset, qty in ((2, 1), (0, 5), (1, 2)):
        stock_service.record_adjustment(
            item_id=masters.item.id, quantity_delta=qty, reason="r", occurred_at=base + timedelta(days=offset)
        )

    rows = stock_service.history(masters.item.id)
    assert [m.quantity for m in rows] == [5, 2, 1]

    window = DateRange(start=base + timedelta(days=1), end=base + timedelta(days=2))
    assert [m.quantity for m in stock_service.history(masters.item.id, window)] == [2, 1]


def test_movements_are_append_only(masters):
    movement = stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=5, reason="Opening")

    movement.note = "edited"
    with pytest.raises(ImmutableRecordError):
        db.session.flush()
    db.session.rollback()

    movement = db.session.get(StockMovement, movement.id)
    db.session.delete(movement)
    with pytest.raises(ImmutableRecordError):
        db.session.flush()
    db.session.rollback()

    assert db.session.get(StockMovement, movement.id).note == "Opening"


def test_rebuild_projection_fixes_drift(masters):
    stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=8, reason="Opening")

    item = db.session.get(Item, masters.item.id)
    item.current_stock = 100
    db.session.commit()

    assert stock_service.projection_drift() == [
        {"item_id": item.id, "code": item.code, "cached": 100, "ledger": 8}
    ]
    changed = stock_service.rebuild_projection()
    assert changed == [{"item_id": item.id, "cached": 100, "ledger": 8}]
    assert db.session.get(Item, item.id).current_stock == 8
    assert stock_service.projection_drift() == []


def test_low_stock_uses_ledger_balance(masters):
    # item min_stock=5; other min_stock=0
    stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=5, reason="Opening")
    stock_service.record_adjustment(item_id=masters.other.id, quantity_delta=1, reason="Opening")

    low = {row["item_id"]: row for row in stock_service.low_stock_items()}
    assert set(low) == {masters.item.id}
    assert low[masters.item.id]["on_hand"] == 5

    stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=1, reason="Found")
    assert stock_service.low_stock_items() == []


def test_low_stock_as_of_past_date(masters):
    earlier = utcnow() - timedelta(days=2)
    stock_service.record_adjustment(item_id=masters.item.id, quantity_delta=50, reason="Opening")

    assert masters.item.id not in [r["item_id"] for r in stock_service.low_stock_items()]
    assert masters.item.id in [r["item_id"] for r in stock_service.low_stock_items(earlier)]


def test_expiring_batches(masters):
    now = utcnow()
    stock_service.record_adjustment(
        item_id=masters.item.id, quantity_delta=10, reason="Opening",
        batch_number="B-OLD", expiry_date=now - timedelta(days=1),
    )
    stock_service.record_adjustment(
        item_id=masters.item.id, quantity_delta=10, reason="Opening",
        batch_number="B-SOON", expiry_date=now + timedelta(days=20),
    )
    stock_service.record_adjustment(
        item_id=masters.item.id, quantity_delta=10, reason="Opening",
        batch_number="B-LATER", expiry_date=now + timedelta(days=200),
    )

    expired = stock_service.expiring_batches(0, now)
    assert [(b["batch_number"], b["is_expired"]) for b in expired] == [("B-OLD", True)]

    within_month = stock_service.expiring_batches(30, now)
    assert [b["batch_number"] for b in within_month] == ["B-OLD", "B-SOON"]
    assert within_month[1]["is_expired"] is False


def test_date_only_upper_bound_covers_the_day():
    window = DateRange.from_args({"from": "2026-03-01", "to": "2026-03-31"})
    assert window.start == datetime(2026, 3, 1)
    assert window.end == datetime(2026, 3, 31, 23, 59, 59, 999999)

    with pytest.raises(ValidationFailed):
        DateRange.from_args({"to": "31/03/2026"})

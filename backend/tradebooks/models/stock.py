from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


# =============================================================================
# MOVEMENT TYPES
# =============================================================================

MOVEMENT_IN = "in"
MOVEMENT_OUT = "out"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_RETURN_TO_SUPPLIER = "return_to_supplier"
MOVEMENT_RETURN_FROM_CUSTOMER = "return_from_customer"
MOVEMENT_TRANSFER_IN = "transfer_in"
MOVEMENT_TRANSFER_OUT = "transfer_out"

# Sign each movement type must carry (0 = either direction)
MOVEMENT_SIGNS = {
    MOVEMENT_IN: 1,
    MOVEMENT_RETURN_FROM_CUSTOMER: 1,
    MOVEMENT_TRANSFER_IN: 1,
    MOVEMENT_OUT: -1,
    MOVEMENT_RETURN_TO_SUPPLIER: -1,
    MOVEMENT_TRANSFER_OUT: -1,
    MOVEMENT_ADJUSTMENT: 0,
}

# Type used when a movement is compensated by cancellation
INVERSE_MOVEMENT_TYPES = {
    MOVEMENT_IN: MOVEMENT_OUT,
    MOVEMENT_OUT: MOVEMENT_IN,
    MOVEMENT_RETURN_FROM_CUSTOMER: MOVEMENT_OUT,
    MOVEMENT_RETURN_TO_SUPPLIER: MOVEMENT_IN,
    MOVEMENT_TRANSFER_IN: MOVEMENT_TRANSFER_OUT,
    MOVEMENT_TRANSFER_OUT: MOVEMENT_TRANSFER_IN,
    MOVEMENT_ADJUSTMENT: MOVEMENT_ADJUSTMENT,
}

REFERENCE_INVOICE = "invoice"
REFERENCE_ADJUSTMENT = "adjustment"


class StockMovement(db.Model):
    """
    Append-only stock movement ledger.

    Stock on hand for an item at time T is the sum of `quantity` over its rows
    with occurred_at <= T. Rows are never updated or deleted; corrections are
    new rows (is_reversal for cancellations, adjustment for counts).
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_item_occurred", "item_id", "occurred_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        db.Index("ix_stock_movements_item_batch", "item_id", "batch_number"),
        db.CheckConstraint("quantity <> 0", name="quantity_nonzero"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    movement_type = db.Column(db.String(32), nullable=False, index=True)

    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.Integer, nullable=True)
    invoice_line_id = db.Column(db.Integer, db.ForeignKey("invoice_lines.id"), nullable=True)
    is_reversal = db.Column(db.Boolean, nullable=False, default=False)
    reverses_movement_id = db.Column(
        db.Integer, db.ForeignKey("stock_movements.id"), nullable=True, unique=True
    )

    batch_number = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)
    manufacturing_date = db.Column(db.DateTime(timezone=True), nullable=True)

    note = db.Column(db.String(255), nullable=True)
    created_by_user_id = db.Column(db.Integer, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    item = db.relationship("Item")

    def __repr__(self) -> str:
        return f"<StockMovement id={self.id} item_id={self.item_id} qty={self.quantity} type={self.movement_type}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "quantity": self.quantity,
            "movement_type": self.movement_type,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "invoice_line_id": self.invoice_line_id,
            "is_reversal": self.is_reversal,
            "reverses_movement_id": self.reverses_movement_id,
            "batch_number": self.batch_number,
            "expiry_date": to_utc_z(self.expiry_date),
            "manufacturing_date": to_utc_z(self.manufacturing_date),
            "note": self.note,
            "created_by_user_id": self.created_by_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }

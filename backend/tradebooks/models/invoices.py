from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


# =============================================================================
# INVOICE TYPES AND STATES
# =============================================================================

INVOICE_SALES = "sales"
INVOICE_PURCHASE = "purchase"
INVOICE_RETURN_SALES = "return_sales"
INVOICE_RETURN_PURCHASE = "return_purchase"

INVOICE_TYPES = (INVOICE_SALES, INVOICE_PURCHASE, INVOICE_RETURN_SALES, INVOICE_RETURN_PURCHASE)
RETURN_TYPES = (INVOICE_RETURN_SALES, INVOICE_RETURN_PURCHASE)
CUSTOMER_TYPES = (INVOICE_SALES, INVOICE_RETURN_SALES)

STATUS_DRAFT = "draft"
STATUS_CONFIRMED = "confirmed"
STATUS_PAID = "paid"
STATUS_CANCELLED = "cancelled"

PAYMENT_PENDING = "pending"
PAYMENT_PARTIAL = "partial"
PAYMENT_PAID = "paid"


class Invoice(db.Model):
    """
    Sales, purchase, and return invoices.

    LIFECYCLE:
    - draft: lines and totals are editable, nothing posted
    - confirmed: stock movements and one ledger pair posted, lines frozen
    - paid: outstanding settled in full (sales and purchase only)
    - cancelled: terminal; compensating movements and reversal pair posted

    Return invoices carry `original_invoice_id` and are created confirmed.
    Their line quantities and amounts are stored negative.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
        db.Index("ix_invoices_type_date", "invoice_type", "invoice_date"),
        db.Index("ix_invoices_original_status", "original_invoice_id", "status"),
        # A supplier's bill number may only appear on one live purchase invoice
        db.Index(
            "uq_invoices_supplier_bill_live",
            "supplier_id",
            "supplier_bill_no",
            unique=True,
            sqlite_where=db.text("supplier_bill_no IS NOT NULL AND status != 'cancelled'"),
            postgresql_where=db.text("supplier_bill_no IS NOT NULL AND status != 'cancelled'"),
        ),
        db.CheckConstraint("(customer_id IS NULL) <> (supplier_id IS NULL)", name="one_party"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(32), nullable=False)
    invoice_type = db.Column(db.String(24), nullable=False, index=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)

    invoice_date = db.Column(db.DateTime(timezone=True), nullable=False)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=STATUS_DRAFT, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING)

    # Authoritative storage in cents
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    grand_total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    last_payment_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Returns
    original_invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True)
    return_reason = db.Column(db.String(255), nullable=True)
    return_notes = db.Column(db.Text, nullable=True)
    returned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    # Touched on the original whenever a return is booked against it
    last_return_at = db.Column(db.DateTime(timezone=True), nullable=True)

    supplier_bill_no = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Transport metadata, editable after confirmation
    transporter_name = db.Column(db.String(128), nullable=True)
    bilty_number = db.Column(db.String(64), nullable=True)
    bilty_date = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    confirmed_by_user_id = db.Column(db.Integer, nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship(
        "InvoiceLine",
        back_populates="invoice",
        order_by="InvoiceLine.position",
        cascade="all, delete-orphan",
    )
    customer = db.relationship("Customer")
    supplier = db.relationship("Supplier")
    original_invoice = db.relationship(
        "Invoice",
        remote_side=[id],
        backref=db.backref("return_invoices", lazy=True),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} number={self.invoice_number!r} type={self.invoice_type} status={self.status}>"

    @property
    def is_return(self) -> bool:
        return self.invoice_type in RETURN_TYPES

    @property
    def party_type(self) -> str:
        return "customer" if self.invoice_type in CUSTOMER_TYPES else "supplier"

    @property
    def party_id(self):
        return self.customer_id if self.party_type == "customer" else self.supplier_id

    @property
    def outstanding_cents(self) -> int:
        return self.grand_total_cents - self.paid_amount_cents

    def tax_breakdown(self) -> dict[int, dict[str, int]]:
        """Taxable value and tax per rate slab, keyed by rate in bps."""
        buckets: dict[int, dict[str, int]] = {}
        for line in self.lines:
            bucket = buckets.setdefault(line.tax_rate_bps, {"taxable_cents": 0, "tax_cents": 0})
            bucket["taxable_cents"] += line.taxable_cents or 0
            bucket["tax_cents"] += line.tax_cents or 0
        return dict(sorted(buckets.items()))

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "invoice_type": self.invoice_type,
            "customer_id": self.customer_id,
            "supplier_id": self.supplier_id,
            "invoice_date": to_utc_z(self.invoice_date),
            "due_date": to_utc_z(self.due_date),
            "status": self.status,
            "payment_status": self.payment_status,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "grand_total_cents": self.grand_total_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "outstanding_cents": self.outstanding_cents,
            "last_payment_at": to_utc_z(self.last_payment_at),
            "original_invoice_id": self.original_invoice_id,
            "return_reason": self.return_reason,
            "return_notes": self.return_notes,
            "returned_at": to_utc_z(self.returned_at),
            "supplier_bill_no": self.supplier_bill_no,
            "notes": self.notes,
            "transporter_name": self.transporter_name,
            "bilty_number": self.bilty_number,
            "bilty_date": to_utc_z(self.bilty_date),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "confirmed_by_user_id": self.confirmed_by_user_id,
            "confirmed_at": to_utc_z(self.confirmed_at),
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
            data["tax_breakdown"] = [
                {"tax_rate_bps": rate, **amounts}
                for rate, amounts in self.tax_breakdown().items()
            ]
        return data


class InvoiceLine(db.Model):
    __tablename__ = "invoice_lines"
    __table_args__ = (
        db.UniqueConstraint("invoice_id", "position", name="uq_invoice_lines_invoice_position"),
        db.CheckConstraint("quantity <> 0", name="quantity_nonzero"),
        db.CheckConstraint("discount_bps >= 0 AND discount_bps <= 10000", name="discount_range"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)

    # Negative on return invoices
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)

    gross_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    taxable_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False, default=0)

    batch_number = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)
    manufacturing_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # Return lines point back at the line they give back
    original_line_id = db.Column(db.Integer, db.ForeignKey("invoice_lines.id"), nullable=True, index=True)

    invoice = db.relationship("Invoice", back_populates="lines")
    item = db.relationship("Item")

    def __repr__(self) -> str:
        return f"<InvoiceLine id={self.id} invoice_id={self.invoice_id} item_id={self.item_id} qty={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "position": self.position,
            "item_id": self.item_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_bps": self.discount_bps,
            "tax_rate_bps": self.tax_rate_bps,
            "gross_cents": self.gross_cents,
            "discount_cents": self.discount_cents,
            "taxable_cents": self.taxable_cents,
            "tax_cents": self.tax_cents,
            "line_total_cents": self.line_total_cents,
            "batch_number": self.batch_number,
            "expiry_date": to_utc_z(self.expiry_date),
            "manufacturing_date": to_utc_z(self.manufacturing_date),
            "original_line_id": self.original_line_id,
        }

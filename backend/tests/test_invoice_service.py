"""Invoice state machine: drafts, confirmation, cancellation, payments."""

import pytest

from tradebooks.errors import (
    CREDIT_LIMIT_EXCEEDED,
    DUPLICATE_SUPPLIER_BILL,
    INSUFFICIENT_STOCK,
    ITEM_INACTIVE,
    PARTY_INACTIVE,
    BusinessRuleViolation,
    ImmutableRecordError,
    InvalidState,
    NotFound,
    ValidationFailed,
)
from tradebooks.extensions import db
from tradebooks.filters import InvoiceFilter
from tradebooks.models import (
    AuditEvent,
    Customer,
    Invoice,
    InvoiceLine,
    Item,
    LedgerEntry,
    LedgerPosting,
    StockMovement,
    Supplier,
)
from tradebooks.models.masters import CONTROL_CASH, CONTROL_INVENTORY, CONTROL_SALES
from tradebooks.services import accounting_service, invoice_service, masters_service, stock_service
from tradebooks.services.accounting_service import AccountRef


def _balances(masters):
    return {
        "customer": accounting_service.balance_as_of(AccountRef.customer(masters.customer.id)),
        "supplier": accounting_service.balance_as_of(AccountRef.supplier(masters.supplier.id)),
        "inventory": accounting_service.balance_as_of(AccountRef.control(CONTROL_INVENTORY)),
        "sales": accounting_service.balance_as_of(AccountRef.control(CONTROL_SALES)),
    }


# =============================================================================
# DRAFTS
# =============================================================================

def test_create_draft_has_no_effects(masters, purchase):
    invoice = purchase([(masters.item, 20, 10000)], confirm=False)

    assert invoice.status == "draft"
    assert invoice.invoice_number.startswith("PI")
    assert invoice.invoice_number.endswith("000001")
    assert invoice.grand_total_cents == 236000
    assert db.session.query(StockMovement).count() == 0
    assert db.session.query(LedgerPosting).count() == 0


def test_draft_defaults_price_tax_and_due_date(masters):
    invoice = invoice_service.create_invoice(
        invoice_type="sales",
        party_id=masters.customer.id,
        lines=[{"item_id": masters.other.id, "quantity": 2}],
    )
    line = invoice.lines[0]
    assert line.unit_price_cents == 2500
    assert line.tax_rate_bps == 400
    assert (invoice.due_date - invoice.invoice_date).days == 15


def test_invoice_numbers_are_sequential_per_type(masters, purchase, sale):
    first = purchase([(masters.item, 1, 100)], confirm=False)
    second = purchase([(masters.item, 1, 100)], confirm=False)
    sales = sale([(masters.item, 1, 100)], confirm=False)

    assert first.invoice_number[-6:] == "000001"
    assert second.invoice_number[-6:] == "000002"
    assert sales.invoice_number.startswith("SI")
    assert sales.invoice_number[-6:] == "000001"


def test_invalid_lines_are_all_reported(masters):
    with pytest.raises(ValidationFailed) as exc:
        invoice_service.create_invoice(
            invoice_type="purchase",
            party_id=masters.supplier.id,
            lines=[
                {"item_id": masters.item.id, "quantity": 0, "unit_price_cents": 100},
                {"item_id": masters.item.id, "quantity": 1, "unit_price_cents": 100, "tax_rate_bps": 1200},
                {"item_id": 99999, "quantity": 1, "unit_price_cents": 100},
            ],
        )
    messages = exc.value.errors
    assert any(m.startswith("Line 1:") for m in messages)
    assert any(m.startswith("Line 2:") for m in messages)
    assert any(m.startswith("Line 3:") for m in messages)
    assert db.session.query(Invoice).count() == 0


def test_non_integer_item_ids_are_line_errors(masters):
    with pytest.raises(ValidationFailed) as exc:
        invoice_service.create_invoice(
            invoice_type="purchase",
            party_id=masters.supplier.id,
            lines=[
                {"item_id": [masters.item.id], "quantity": 1, "unit_price_cents": 100},
                {"item_id": {"id": 1}, "quantity": 1, "unit_price_cents": 100},
            ],
        )
    assert exc.value.errors == [
        "Line 1: item_id must be an integer",
        "Line 2: item_id must be an integer",
    ]


def test_return_types_cannot_be_created_directly(masters):
    with pytest.raises(ValidationFailed):
        invoice_service.create_invoice(invoice_type="return_sales", party_id=masters.customer.id, lines=[])


def test_inactive_party_cannot_receive_new_invoice(masters):
    masters_service.set_active(Customer, masters.customer.id, False)
    with pytest.raises(BusinessRuleViolation) as exc:
        invoice_service.create_invoice(invoice_type="sales", party_id=masters.customer.id, lines=[])
    assert exc.value.reason == PARTY_INACTIVE


def test_replace_lines_and_delete_draft(masters, purchase):
    invoice = purchase([(masters.item, 1, 100), (masters.other, 2, 100)], confirm=False)

    invoice = invoice_service.replace_draft_lines(
        invoice.id, [{"item_id": masters.other.id, "quantity": 5, "unit_price_cents": 1000}]
    )
    assert [(l.item_id, l.quantity, l.position) for l in invoice.lines] == [(masters.other.id, 5, 1)]
    assert invoice.grand_total_cents == 5200
    assert db.session.query(InvoiceLine).count() == 1

    invoice_service.delete_draft(invoice.id)
    assert db.session.get(Invoice, invoice.id) is None
    assert db.session.query(InvoiceLine).count() == 0


def test_confirmed_invoice_lines_cannot_be_edited(masters, purchase):
    invoice = purchase([(masters.item, 3, 100)])

    with pytest.raises(InvalidState):
        invoice_service.replace_draft_lines(invoice.id, [{"item_id": masters.item.id, "quantity": 1}])
    with pytest.raises(InvalidState):
        invoice_service.delete_draft(invoice.id)

    line = db.session.query(InvoiceLine).filter_by(invoice_id=invoice.id).one()
    line.quantity = 30
    with pytest.raises(ImmutableRecordError):
        db.session.flush()
    db.session.rollback()
    assert db.session.get(InvoiceLine, line.id).quantity == 3


# =============================================================================
# CONFIRM
# =============================================================================

def test_purchase_confirm_posts_stock_and_ledger(masters, purchase):
    """20 units at 100.00 with 18% GST."""
    invoice = purchase([(masters.item, 20, 10000)])

    assert invoice.status == "confirmed"
    assert invoice.payment_status == "pending"
    assert invoice.confirmed_by_user_id == 1
    assert stock_service.balance_as_of(masters.item.id) == 20
    assert db.session.get(Item, masters.item.id).current_stock == 20

    movement = db.session.query(StockMovement).one()
    assert (movement.movement_type, movement.quantity, movement.reference_id) == ("in", 20, invoice.id)

    posting = db.session.query(LedgerPosting).one()
    assert posting.amount_cents == 236000
    assert posting.is_reversal is False
    balances = _balances(masters)
    assert balances["inventory"] == 236000
    assert balances["supplier"] == 236000
    assert accounting_service.unbalanced_references() == []

    assert invoice.tax_breakdown() == {1800: {"taxable_cents": 200000, "tax_cents": 36000}}
    assert db.session.query(AuditEvent).filter_by(event_type="invoice.confirmed", invoice_id=invoice.id).count() == 1


def test_sales_confirm_moves_stock_out(masters, purchase, sale):
    purchase([(masters.item, 20, 10000)])
    invoice = sale([(masters.item, 4, 12000)])

    assert stock_service.balance_as_of(masters.item.id) == 16
    out = db.session.query(StockMovement).filter_by(reference_id=invoice.id, movement_type="out").one()
    assert out.quantity == -4
    assert _balances(masters)["customer"] == invoice.grand_total_cents == 56640
    assert _balances(masters)["sales"] == 56640


def test_confirm_twice_is_rejected(masters, purchase):
    invoice = purchase([(masters.item, 2, 100)])
    with pytest.raises(InvalidState):
        invoice_service.confirm_invoice(invoice.id)
    assert db.session.query(LedgerPosting).count() == 1


def test_confirm_missing_invoice(masters):
    with pytest.raises(NotFound):
        invoice_service.confirm_invoice(424242)


def test_confirm_without_lines(masters, purchase):
    invoice = purchase([], confirm=False)
    with pytest.raises(ValidationFailed):
        invoice_service.confirm_invoice(invoice.id)


def test_insufficient_stock_lists_every_short_item(masters, purchase, sale):
    purchase([(masters.item, 3, 100)])
    draft = sale([(masters.item, 2, 100), (masters.item, 2, 100), (masters.other, 1, 100)],
                 customer=masters.walk_in, confirm=False)

    with pytest.raises(BusinessRuleViolation) as exc:
        invoice_service.confirm_invoice(draft.id)

    assert exc.value.reason == INSUFFICIENT_STOCK
    assert exc.value.details["items"] == [
        {"item_id": masters.item.id, "required": 4, "available": 3},
        {"item_id": masters.other.id, "required": 1, "available": 0},
    ]
    assert db.session.get(Invoice, draft.id).status == "draft"
    assert stock_service.balance_as_of(masters.item.id) == 3


def test_credit_limit_blocks_confirmation(masters, purchase, sale):
    """Customer limit is 10,000.00; a 10,620.00 invoice must not post anything."""
    purchase([(masters.item, 20, 10000)])
    before = _balances(masters)
    movements_before = db.session.query(StockMovement).count()
    draft = sale([(masters.item, 9, 100000)], confirm=False)

    with pytest.raises(BusinessRuleViolation) as exc:
        invoice_service.confirm_invoice(draft.id)

    assert exc.value.reason == CREDIT_LIMIT_EXCEEDED
    assert exc.value.details["credit_limit_cents"] == 1_000_000
    assert db.session.get(Invoice, draft.id).status == "draft"
    assert db.session.query(StockMovement).count() == movements_before
    assert _balances(masters) == before


def test_credit_limit_counts_outstanding_balance(masters, purchase, sale):
    purchase([(masters.item, 20, 10000)])
    sale([(masters.item, 5, 100000)])  # 590,000 outstanding
    draft = sale([(masters.item, 4, 100000)], confirm=False)  # 472,000 more

    with pytest.raises(BusinessRuleViolation) as exc:
        invoice_service.confirm_invoice(draft.id)
    assert exc.value.details["outstanding_cents"] == 590000


def test_inactive_item_or_party_blocks_confirmation(masters, purchase):
    draft = purchase([(masters.item, 1, 100)], confirm=False)

    masters_service.set_active(Item, masters.item.id, False)
    with pytest.raises(BusinessRuleViolation) as exc:
        invoice_service.confirm_invoice(draft.id)
    assert exc.value.reason == ITEM_INACTIVE

    masters_service.set_active(Item, masters.item.id, True)
    masters_service.set_active(Supplier, masters.supplier.id, False)
    with pytest.raises(BusinessRuleViolation) as exc:
        invoice_service.confirm_invoice(draft.id)
    assert exc.value.reason == PARTY_INACTIVE
    assert db.session.query(StockMovement).count() == 0


def test_confirm_is_atomic_when_ledger_write_fails(masters, purchase, monkeypatch):
    draft = purchase([(masters.item, 5, 100)], confirm=False)

    def _boom(**kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(accounting_service, "post_double_entry", _boom)
    with pytest.raises(RuntimeError):
        invoice_service.confirm_invoice(draft.id)

    assert db.session.get(Invoice, draft.id).status == "draft"
    assert db.session.query(StockMovement).count() == 0
    assert db.session.get(Item, masters.item.id).current_stock == 0
    assert db.session.query(AuditEvent).filter_by(event_type="invoice.confirmed").count() == 0


def test_zero_value_invoice_moves_stock_without_ledger(masters):
    invoice = invoice_service.create_invoice(
        invoice_type="purchase",
        party_id=masters.supplier.id,
        lines=[{"item_id": masters.item.id, "quantity": 5, "unit_price_cents": 1000, "discount_bps": 10000}],
    )
    invoice_service.confirm_invoice(invoice.id)

    assert stock_service.balance_as_of(masters.item.id) == 5
    assert db.session.query(LedgerPosting).count() == 0


# =============================================================================
# SUPPLIER BILLS
# =============================================================================

def test_duplicate_supplier_bill_is_rejected_until_cancelled(masters, purchase):
    first = purchase([(masters.item, 1, 100)], confirm=False, supplier_bill_no="B-77")

    with pytest.raises(BusinessRuleViolation) as exc:
        purchase([(masters.item, 1, 100)], confirm=False, supplier_bill_no="B-77")
    assert exc.value.reason == DUPLICATE_SUPPLIER_BILL

    invoice_service.cancel_invoice(first.id, reason="entered twice")
    again = purchase([(masters.item, 1, 100)], confirm=False, supplier_bill_no="B-77")
    assert again.supplier_bill_no == "B-77"


def test_supplier_bill_only_on_purchases(masters, sale):
    with pytest.raises(ValidationFailed):
        sale([(masters.item, 1, 100)], confirm=False, supplier_bill_no="X")


# =============================================================================
# CANCEL
# =============================================================================

def test_confirm_then_cancel_restores_everything(masters, purchase, sale):
    purchase([(masters.item, 20, 10000)])
    before_stock = stock_service.balance_as_of(masters.item.id)
    before = _balances(masters)

    invoice = sale([(masters.item, 6, 12000)])
    cancelled = invoice_service.cancel_invoice(invoice.id, reason="customer refused", actor_id=3)

    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_by_user_id == 3
    assert cancelled.cancellation_reason == "customer refused"
    assert stock_service.balance_as_of(masters.item.id) == before_stock
    assert _balances(masters) == before

    reversals = db.session.query(StockMovement).filter_by(reference_id=invoice.id, is_reversal=True).all()
    assert [(m.movement_type, m.quantity) for m in reversals] == [("in", 6)]
    postings = accounting_service.postings_for_reference("invoice", invoice.id)
    assert [p.is_reversal for p in postings] == [False, True]
    assert postings[1].reverses_posting_id == postings[0].id
    assert stock_service.projection_drift() == []


def test_double_cancel_reverses_once(masters, purchase):
    invoice = purchase([(masters.item, 4, 100)])
    invoice_service.cancel_invoice(invoice.id)

    with pytest.raises(InvalidState):
        invoice_service.cancel_invoice(invoice.id)

    assert db.session.query(StockMovement).filter_by(is_reversal=True).count() == 1
    assert db.session.query(LedgerPosting).filter(LedgerPosting.reverses_posting_id.isnot(None)).count() == 1


def test_cancel_draft_posts_nothing(masters, purchase):
    invoice = purchase([(masters.item, 4, 100)], confirm=False)
    cancelled = invoice_service.cancel_invoice(invoice.id)
    assert cancelled.status == "cancelled"
    assert db.session.query(StockMovement).count() == 0
    assert db.session.query(LedgerEntry).count() == 0


def test_cancel_purchase_needs_stock_on_hand(masters, purchase, sale):
    invoice = purchase([(masters.item, 10, 100)])
    sale([(masters.item, 8, 100)], customer=masters.walk_in)

    with pytest.raises(BusinessRuleViolation) as exc:
        invoice_service.cancel_invoice(invoice.id)
    assert exc.value.reason == INSUFFICIENT_STOCK
    assert db.session.get(Invoice, invoice.id).status == "confirmed"


# =============================================================================
# PAYMENTS
# =============================================================================

def test_partial_then_full_payment(masters, purchase, sale):
    purchase([(masters.item, 20, 10000)])
    invoice = sale([(masters.item, 1, 10000)])  # 11,800
    cash = AccountRef.control(CONTROL_CASH)

    invoice = invoice_service.record_payment(invoice.id, amount_cents=5000, method="upi", reference="UTR1")
    assert (invoice.status, invoice.payment_status, invoice.outstanding_cents) == ("confirmed", "partial", 6800)
    assert accounting_service.balance_as_of(cash) == 5000

    with pytest.raises(ValidationFailed):
        invoice_service.record_payment(invoice.id, amount_cents=6801)

    invoice = invoice_service.record_payment(invoice.id, amount_cents=6800)
    assert (invoice.status, invoice.payment_status) == ("paid", "paid")
    assert _balances(masters)["customer"] == 0
    assert accounting_service.unbalanced_references() == []

    with pytest.raises(InvalidState):
        invoice_service.record_payment(invoice.id, amount_cents=1)
    with pytest.raises(InvalidState):
        invoice_service.cancel_invoice(invoice.id)


def test_supplier_payment_reduces_payable(masters, purchase):
    invoice = purchase([(masters.item, 1, 10000)])
    invoice_service.record_payment(invoice.id, amount_cents=11800)
    assert _balances(masters)["supplier"] == 0


def test_invoice_with_payment_cannot_be_cancelled(masters, purchase):
    invoice = purchase([(masters.item, 2, 10000)])
    invoice_service.record_payment(invoice.id, amount_cents=100)
    with pytest.raises(InvalidState):
        invoice_service.cancel_invoice(invoice.id)


def test_payment_on_draft_is_rejected(masters, purchase):
    invoice = purchase([(masters.item, 2, 10000)], confirm=False)
    with pytest.raises(InvalidState):
        invoice_service.record_payment(invoice.id, amount_cents=100)


# =============================================================================
# METADATA AND READS
# =============================================================================

def test_post_confirmation_metadata(masters, purchase):
    invoice = purchase([(masters.item, 2, 100)])
    updated = invoice_service.update_post_confirmation_metadata(
        invoice.id, {"transporter_name": "VRL Logistics", "bilty_number": "LR-5521", "bilty_date": "2026-04-02"}
    )
    assert updated.transporter_name == "VRL Logistics"
    assert updated.bilty_date.year == 2026

    with pytest.raises(ValidationFailed):
        invoice_service.update_post_confirmation_metadata(invoice.id, {"grand_total_cents": 1})


def test_metadata_values_must_be_strings(masters, purchase):
    invoice = purchase([(masters.item, 2, 100)])

    with pytest.raises(ValidationFailed) as exc:
        invoice_service.update_post_confirmation_metadata(
            invoice.id, {"bilty_date": 12345, "bilty_number": ["LR"], "notes": None}
        )
    assert exc.value.errors == [
        "bilty_date must be a string or null",
        "bilty_number must be a string or null",
    ]
    assert db.session.get(Invoice, invoice.id).bilty_date is None

    with pytest.raises(ValidationFailed):
        invoice_service.update_post_confirmation_metadata(invoice.id, {"bilty_date": "02/04/2026"})


def test_list_invoices_filters(masters, purchase, sale):
    p = purchase([(masters.item, 5, 100)])
    sale([(masters.item, 1, 100)], confirm=False)

    purchases, total = invoice_service.list_invoices(InvoiceFilter(invoice_type="purchase"))
    assert total == 1 and purchases[0].id == p.id

    drafts, total = invoice_service.list_invoices(InvoiceFilter.from_args({"status": "draft"}))
    assert total == 1 and drafts[0].invoice_type == "sales"

    with pytest.raises(ValidationFailed):
        InvoiceFilter.from_args({"status": "bogus", "customer_id": "x"})


def test_invoice_effects_report(masters, purchase):
    invoice = purchase([(masters.item, 5, 100)])
    invoice_service.record_payment(invoice.id, amount_cents=100)

    effects = invoice_service.invoice_effects(invoice.id)
    assert len(effects["stock_movements"]) == 1
    assert len(effects["ledger_postings"]) == 1
    assert len(effects["ledger_postings"][0]["entries"]) == 2
    assert len(effects["payments"]) == 1
    assert [e["event_type"] for e in effects["audit_events"]][:2] == ["invoice.created", "invoice.confirmed"]

"""Return validation and reversal: non-exceedance, allocation, and posted effects."""

import pytest

from tradebooks.errors import INSUFFICIENT_STOCK, BusinessRuleViolation, InvalidState, NotFound, ValidationFailed
from tradebooks.extensions import db
from tradebooks.models import AuditEvent, Invoice, LedgerPosting, StockMovement
from tradebooks.models.masters import CONTROL_INVENTORY, CONTROL_SALES
from tradebooks.services import accounting_service, invoice_service, return_service, stock_service
from tradebooks.services.accounting_service import AccountRef


@pytest.fixture
def scenario_a(masters, purchase):
    """Purchase invoice: 20 units at 100.00, GST 18% (grand total 2,360.00)."""
    return purchase([(masters.item, 20, 10000)])


def _return(original, qty, item, return_type="return_purchase", **kwargs):
    return return_service.create_return(
        original.id,
        return_type=return_type,
        lines=[{"item_id": item.id, "quantity": qty}],
        actor_id=4,
        **kwargs,
    )


def test_purchase_return_mirrors_original(masters, scenario_a):
    """Return 5 of the 20 purchased units."""
    ret = _return(scenario_a, 5, masters.item, reason="Damaged strips")

    assert ret.invoice_type == "return_purchase"
    assert ret.status == "confirmed"
    assert ret.original_invoice_id == scenario_a.id
    assert ret.invoice_number.startswith("PR")
    assert ret.return_reason == "Damaged strips"
    assert ret.supplier_id == masters.supplier.id

    line = ret.lines[0]
    assert line.quantity == -5
    assert line.unit_price_cents == 10000
    assert line.tax_rate_bps == 1800
    assert line.original_line_id == scenario_a.lines[0].id
    assert (ret.subtotal_cents, ret.tax_cents, ret.grand_total_cents) == (-50000, -9000, -59000)

    assert stock_service.balance_as_of(masters.item.id) == 15
    movement = db.session.query(StockMovement).filter_by(reference_id=ret.id).one()
    assert (movement.movement_type, movement.quantity) == ("return_to_supplier", -5)

    posting = accounting_service.postings_for_reference("invoice", ret.id)[0]
    assert posting.amount_cents == 59000
    assert posting.is_reversal is True
    debit = next(e for e in posting.entries if e.transaction_type == "debit")
    assert (debit.account_type, debit.account_id) == ("supplier", masters.supplier.id)

    assert accounting_service.balance_as_of(AccountRef.supplier(masters.supplier.id)) == 236000 - 59000
    assert accounting_service.balance_as_of(AccountRef.control(CONTROL_INVENTORY)) == 236000 - 59000
    assert accounting_service.unbalanced_references() == []
    assert db.session.query(AuditEvent).filter_by(event_type="return.created", invoice_id=ret.id).count() == 1


def test_over_return_is_rejected_without_effects(masters, scenario_a):
    """After returning 5, only 15 remain; 16 must fail."""
    _return(scenario_a, 5, masters.item)
    movements = db.session.query(StockMovement).count()
    postings = db.session.query(LedgerPosting).count()

    with pytest.raises(ValidationFailed) as exc:
        _return(scenario_a, 16, masters.item)

    assert exc.value.errors == [
        f"Item {masters.item.id}: Cannot return 16 units. Only 15 units available "
        f"(20 original, 5 already returned)"
    ]
    assert db.session.query(StockMovement).count() == movements
    assert db.session.query(LedgerPosting).count() == postings
    assert db.session.query(Invoice).filter_by(invoice_type="return_purchase").count() == 1


def test_validate_return_reports_availability(masters, scenario_a):
    _return(scenario_a, 5, masters.item)

    result = return_service.validate_return(
        scenario_a.id, "return_purchase", [{"item_id": masters.item.id, "quantity": 4}]
    )
    assert result.valid is True
    line = result.lines[0]
    assert (line.original_quantity, line.already_returned, line.available_for_return) == (20, 5, 15)
    assert line.remaining_after == 11


def test_validate_return_collects_every_error(masters, scenario_a):
    result = return_service.validate_return(
        scenario_a.id,
        "return_purchase",
        [
            {"item_id": masters.other.id, "quantity": 1},
            {"item_id": masters.item.id, "quantity": 0},
        ],
    )
    assert result.valid is False
    assert result.errors == [
        f"Item {masters.item.id}: Return quantity must be greater than 0",
        f"Item {masters.other.id} not found in original invoice",
    ]
    with pytest.raises(ValidationFailed):
        result.raise_for_errors()


def test_same_item_lines_are_aggregated(masters, scenario_a):
    result = return_service.validate_return(
        scenario_a.id,
        "return_purchase",
        [{"item_id": masters.item.id, "quantity": 12}, {"item_id": masters.item.id, "quantity": 9}],
    )
    assert result.valid is False
    assert "Cannot return 21 units" in result.errors[0]


def test_each_line_must_be_positive_even_when_the_item_total_is(masters, scenario_a):
    item = masters.item.id
    result = return_service.validate_return(
        scenario_a.id,
        "return_purchase",
        [{"item_id": item, "quantity": 5}, {"item_id": item, "quantity": 0}, {"item_id": item, "quantity": -3}],
    )
    assert result.valid is False
    assert result.errors == [
        f"Item {item}: Return quantity must be greater than 0",
        f"Item {item}: Return quantity must be greater than 0",
    ]

    with pytest.raises(ValidationFailed):
        return_service.create_purchase_return(
            scenario_a.id, [{"item_id": item, "quantity": 5}, {"item_id": item, "quantity": -3}]
        )
    assert db.session.query(Invoice).filter_by(invoice_type="return_purchase").count() == 0
    assert stock_service.balance_as_of(item) == 20


def test_non_integer_item_id_is_a_line_error(masters, scenario_a):
    result = return_service.validate_return(
        scenario_a.id,
        "return_purchase",
        [{"item_id": [masters.item.id], "quantity": 1}, {"item_id": {"id": 1}, "quantity": 1}],
    )
    assert result.errors == ["Line 1: item_id must be an integer", "Line 2: item_id must be an integer"]


def test_returning_a_line_piecewise_nets_to_zero(masters, purchase):
    # 3 x 10.01 at 18%: 30.03 + 5.41 tax = 35.44, while one unit prices at 11.81
    original = purchase([(masters.item, 3, 1001)])
    assert original.grand_total_cents == 3544

    totals = [_return(original, 1, masters.item).grand_total_cents for _ in range(3)]

    assert totals == [-1181, -1181, -1182]
    assert sum(totals) == -original.grand_total_cents
    assert accounting_service.balance_as_of(AccountRef.supplier(masters.supplier.id)) == 0
    assert accounting_service.balance_as_of(AccountRef.control(CONTROL_INVENTORY)) == 0
    closing = db.session.query(Invoice).filter_by(invoice_type="return_purchase").order_by(Invoice.id.desc()).first()
    assert closing.tax_cents == -181
    assert closing.subtotal_cents == -1001


def test_stale_validation_is_rechecked_on_create(masters, scenario_a):
    """Both clerks see 5 remaining; only the first 4-unit return may commit."""
    _return(scenario_a, 15, masters.item)
    request = [{"item_id": masters.item.id, "quantity": 4}]

    assert return_service.validate_return(scenario_a.id, "return_purchase", request).valid
    assert return_service.validate_return(scenario_a.id, "return_purchase", request).valid

    return_service.create_return(scenario_a.id, return_type="return_purchase", lines=request)
    with pytest.raises(ValidationFailed):
        return_service.create_return(scenario_a.id, return_type="return_purchase", lines=request)

    items = return_service.returnable_items(scenario_a.id)
    assert items == [{
        "item_id": masters.item.id,
        "original_quantity": 20,
        "already_returned": 19,
        "available_for_return": 1,
        "unit_price_cents": 10000,
    }]


def test_cancelling_a_return_frees_its_quantity(masters, scenario_a):
    ret = _return(scenario_a, 5, masters.item)
    invoice_service.cancel_invoice(ret.id, reason="wrong quantity")

    assert stock_service.balance_as_of(masters.item.id) == 20
    assert return_service.returnable_items(scenario_a.id)[0]["available_for_return"] == 20
    assert accounting_service.balance_as_of(AccountRef.supplier(masters.supplier.id)) == 236000
    assert accounting_service.open_postings_for_reference("invoice", ret.id) == []

    again = _return(scenario_a, 20, masters.item)
    assert again.grand_total_cents == -236000
    assert stock_service.balance_as_of(masters.item.id) == 0


def test_original_with_live_returns_cannot_be_cancelled(masters, scenario_a):
    ret = _return(scenario_a, 2, masters.item)
    with pytest.raises(InvalidState):
        invoice_service.cancel_invoice(scenario_a.id)

    invoice_service.cancel_invoice(ret.id)
    cancelled = invoice_service.cancel_invoice(scenario_a.id)
    assert cancelled.status == "cancelled"
    assert stock_service.balance_as_of(masters.item.id) == 0


def test_allocation_spreads_across_original_lines(masters, purchase):
    original = purchase([(masters.item, 10, 1000), (masters.other, 3, 500), (masters.item, 5, 2000)])

    first = _return(original, 12, masters.item)
    allocated = [(l.original_line_id, l.quantity, l.unit_price_cents) for l in first.lines]
    assert allocated == [
        (original.lines[0].id, -10, 1000),
        (original.lines[2].id, -2, 2000),
    ]

    second = _return(original, 3, masters.item)
    assert [(l.original_line_id, l.quantity) for l in second.lines] == [(original.lines[2].id, -3)]


def test_return_copies_discount_so_amounts_negate_exactly(masters):
    original = invoice_service.create_invoice(
        invoice_type="purchase",
        party_id=masters.supplier.id,
        lines=[{"item_id": masters.item.id, "quantity": 3, "unit_price_cents": 999, "discount_bps": 1000}],
    )
    original = invoice_service.confirm_invoice(original.id)
    ret = _return(original, 3, masters.item)

    assert ret.lines[0].discount_bps == 1000
    assert ret.grand_total_cents == -original.grand_total_cents


def test_sales_return_brings_stock_back(masters, purchase, sale):
    purchase([(masters.item, 20, 10000)])
    original = sale([(masters.item, 4, 12000)])
    customer = AccountRef.customer(masters.customer.id)
    owed = accounting_service.balance_as_of(customer)

    ret = return_service.create_sales_return(original.id, [{"item_id": masters.item.id, "quantity": 1}])

    assert ret.invoice_number.startswith("SR")
    assert ret.customer_id == masters.customer.id
    assert stock_service.balance_as_of(masters.item.id) == 17
    movement = db.session.query(StockMovement).filter_by(reference_id=ret.id).one()
    assert (movement.movement_type, movement.quantity) == ("return_from_customer", 1)
    assert accounting_service.balance_as_of(customer) == owed - 14160
    assert accounting_service.balance_as_of(AccountRef.control(CONTROL_SALES)) == 56640 - 14160


def test_paid_invoice_can_still_be_returned(masters, purchase):
    original = purchase([(masters.item, 2, 10000)])
    invoice_service.record_payment(original.id, amount_cents=original.grand_total_cents)

    ret = return_service.create_purchase_return(original.id, [{"item_id": masters.item.id, "quantity": 1}])
    assert ret.grand_total_cents == -11800


def test_purchase_return_needs_goods_on_hand(masters, purchase, sale):
    original = purchase([(masters.item, 10, 100)])
    sale([(masters.item, 8, 100)], customer=masters.walk_in)

    with pytest.raises(BusinessRuleViolation) as exc:
        _return(original, 5, masters.item)
    assert exc.value.reason == INSUFFICIENT_STOCK
    assert db.session.query(Invoice).filter_by(invoice_type="return_purchase").count() == 0


def test_return_preconditions(masters, purchase, sale):
    draft = purchase([(masters.item, 2, 100)], confirm=False)
    with pytest.raises(InvalidState):
        _return(draft, 1, masters.item)

    confirmed = purchase([(masters.item, 2, 100)])
    with pytest.raises(ValidationFailed):
        _return(confirmed, 1, masters.item, return_type="return_sales")

    with pytest.raises(NotFound):
        return_service.validate_return(987654, "return_purchase", [{"item_id": masters.item.id, "quantity": 1}])

    invoice_service.cancel_invoice(confirmed.id)
    with pytest.raises(InvalidState):
        _return(confirmed, 1, masters.item)


def test_returns_for_invoice_lists_history(masters, scenario_a):
    first = _return(scenario_a, 1, masters.item)
    second = _return(scenario_a, 2, masters.item)
    invoice_service.cancel_invoice(first.id)

    assert [r.id for r in return_service.returns_for_invoice(scenario_a.id)] == [first.id, second.id]
    assert [r.id for r in return_service.returns_for_invoice(scenario_a.id, include_cancelled=False)] == [second.id]

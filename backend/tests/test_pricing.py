"""Line and invoice amount computation."""

from types import SimpleNamespace

from tradebooks.services import pricing


def _line(quantity, price, discount_bps=0, tax_rate_bps=0):
    line = SimpleNamespace(quantity=quantity, unit_price_cents=price,
                           discount_bps=discount_bps, tax_rate_bps=tax_rate_bps)
    pricing.apply_line_amounts(line)
    return line


def test_line_with_gst_and_no_discount():
    amounts = pricing.compute_line_amounts(20, 10000, 0, 1800)
    assert amounts.gross_cents == 200000
    assert amounts.discount_cents == 0
    assert amounts.taxable_cents == 200000
    assert amounts.tax_cents == 36000
    assert amounts.line_total_cents == 236000


def test_discount_applies_before_tax():
    amounts = pricing.compute_line_amounts(3, 999, 1000, 1800)
    # gross 2997, discount 299.7 -> 300, taxable 2697, tax 485.46 -> 485
    assert amounts.gross_cents == 2997
    assert amounts.discount_cents == 300
    assert amounts.taxable_cents == 2697
    assert amounts.tax_cents == 485
    assert amounts.line_total_cents == 3182


def test_half_cent_rounds_up():
    # 25 x 4% = 1.0 ; 13 x 4% = 0.52 -> 1 ; 12 x 4% = 0.48 -> 0
    assert pricing.apply_bps(25, 400) == 1
    assert pricing.apply_bps(13, 400) == 1
    assert pricing.apply_bps(12, 400) == 0
    assert pricing.apply_bps(50, 100) == 1  # exactly 0.5


def test_negative_quantity_mirrors_positive_line():
    forward = pricing.compute_line_amounts(3, 999, 1000, 1800)
    reverse = pricing.compute_line_amounts(-3, 999, 1000, 1800)
    assert reverse.gross_cents == -forward.gross_cents
    assert reverse.discount_cents == -forward.discount_cents
    assert reverse.tax_cents == -forward.tax_cents
    assert reverse.line_total_cents == -forward.line_total_cents


def test_totals_sum_lines():
    lines = [_line(2, 1000, 0, 1800), _line(1, 500, 1000, 400)]
    totals = pricing.compute_totals(lines)
    assert totals.subtotal_cents == 2500
    assert totals.discount_cents == 50
    assert totals.tax_cents == 360 + 18
    assert totals.grand_total_cents == 2500 - 50 + 378
    assert totals.to_dict()["grand_total_cents"] == totals.grand_total_cents


def test_full_discount_gives_zero_total():
    amounts = pricing.compute_line_amounts(5, 1000, 10000, 1800)
    assert amounts.taxable_cents == 0
    assert amounts.line_total_cents == 0


def test_validate_line_values_collects_every_problem():
    errors = pricing.validate_line_values(
        3, quantity=0, unit_price_cents=-1, discount_bps=10001, tax_rate_bps=500,
        tax_buckets=(0, 400, 1800),
    )
    assert len(errors) == 4
    assert all(e.startswith("Line 3:") for e in errors)


def test_validate_line_values_accepts_valid_line():
    assert pricing.validate_line_values(
        1, quantity=1, unit_price_cents=0, discount_bps=0, tax_rate_bps=0, tax_buckets=(0, 400, 1800),
    ) == []

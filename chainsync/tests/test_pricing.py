from decimal import Decimal
from types import SimpleNamespace

from chainsync.app.pricing import change_due, compute_summary, q


def _line(qty, price, list_price=None):
    return SimpleNamespace(quantity=qty, unit_price=Decimal(price), list_price=Decimal(list_price) if list_price else None)


def test_exclusive_tax_on_200_at_8_5_percent():
    s = compute_summary([_line(2, "100.00")], Decimal("0.085"), tax_included=False)
    assert s.subtotal == Decimal("200.00")
    assert s.tax == Decimal("17.00")
    assert s.total == Decimal("217.00")
    assert s.item_count == 2


def test_inclusive_tax_backs_out_pre_tax_amount():
    s = compute_summary([_line(2, "100.00")], Decimal("0.085"), tax_included=True)
    assert s.subtotal == Decimal("184.33")
    assert s.tax == Decimal("15.67")
    assert s.total == Decimal("200.00")
    assert s.gross_subtotal == Decimal("200.00")


def test_inclusive_parts_always_sum_to_total():
    for price, qty, rate in [("9.99", 3, "0.085"), ("0.01", 7, "0.2"), ("1234.56", 1, "0.075"), ("5.00", 1, "1")]:
        s = compute_summary([_line(qty, price)], Decimal(rate), tax_included=True, redeem_points=150)
        assert s.subtotal + s.tax == s.total


def test_zero_rate_inclusive_matches_exclusive_totals():
    items = [_line(3, "19.99"), _line(1, "0.05")]
    inc = compute_summary(items, Decimal("0"), tax_included=True)
    exc = compute_summary(items, Decimal("0"), tax_included=False)
    assert inc.tax == exc.tax == Decimal("0.00")
    assert inc.total == exc.total
    assert inc.subtotal == exc.subtotal


def test_redemption_never_exceeds_subtotal():
    s = compute_summary([_line(1, "10.00")], Decimal("0.085"), redeem_points=1_000_000, redeem_value=Decimal("0.01"))
    assert s.redeem_discount == Decimal("10.00")
    assert s.tax == Decimal("0.00")
    assert s.total == Decimal("0.00")


def test_redemption_reduces_taxable_amount():
    s = compute_summary([_line(2, "100.00")], Decimal("0.085"), redeem_points=500, redeem_value=Decimal("0.01"))
    assert s.redeem_discount == Decimal("5.00")
    assert s.tax == q(Decimal("195.00") * Decimal("0.085"))
    assert s.total == Decimal("195.00") + s.tax


def test_zero_and_missing_quantities_contribute_nothing():
    s = compute_summary([_line(0, "50.00"), _line(None, "25.00"), _line(1, "10.00")], Decimal("0.1"))
    assert s.item_count == 1
    assert s.subtotal == Decimal("10.00")
    assert s.total == Decimal("11.00")


def test_promotion_discount_is_list_minus_unit_price():
    s = compute_summary([_line(3, "9.00", list_price="10.00")], Decimal("0"))
    assert s.promotion_discount == Decimal("3.00")
    assert s.gross_subtotal == Decimal("27.00")


def test_tax_rate_is_clamped():
    s = compute_summary([_line(1, "10.00")], Decimal("3"))
    assert s.tax_rate == Decimal("1")
    assert s.total == Decimal("20.00")


def test_change_due_never_negative():
    assert change_due(Decimal("250.00"), Decimal("217.00")) == Decimal("33.00")
    assert change_due(Decimal("200.00"), Decimal("217.00")) == Decimal("0.00")

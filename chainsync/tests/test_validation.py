from decimal import Decimal

import pytest
from pydantic import TypeAdapter, ValidationError

from chainsync.app.validation import CurrencyCode, Money, PaymentMethod, ProductId, Rate


def test_payment_method_is_normalized():
    ta = TypeAdapter(PaymentMethod)
    assert ta.validate_python(" CASH ") == "cash"
    assert ta.validate_python("Card") == "card"
    with pytest.raises(ValidationError):
        ta.validate_python("voucher")


def test_currency_code():
    ta = TypeAdapter(CurrencyCode)
    assert ta.validate_python("usd") == "USD"
    for bad in ("US", "dollars", "U$D"):
        with pytest.raises(ValidationError):
            ta.validate_python(bad)


def test_money_and_rate_bounds():
    money = TypeAdapter(Money)
    assert money.validate_python("12.50") == Decimal("12.50")
    assert money.validate_python(0) == Decimal("0")
    with pytest.raises(ValidationError):
        money.validate_python("-0.01")

    rate = TypeAdapter(Rate)
    assert rate.validate_python("0.085") == Decimal("0.085")
    assert rate.validate_python(1) == Decimal("1")
    with pytest.raises(ValidationError):
        rate.validate_python("1.01")


def test_product_id():
    ta = TypeAdapter(ProductId)
    assert ta.validate_python("  sku-1 ") == "sku-1"
    assert ta.validate_python("0b9c6a1e-2f7d-4c1a-9d1e-0c5a7b0e9f11") == "0b9c6a1e-2f7d-4c1a-9d1e-0c5a7b0e9f11"
    for bad in ("", "-leading", "has space", "x" * 129):
        with pytest.raises(ValidationError):
            ta.validate_python(bad)

import pytest

from checkout.errors import InvalidPhoneNumber
from checkout.phone import normalize_phone


def test_trunk_zero_replaced_with_country_code():
    assert normalize_phone("0712345678") == "254712345678"


@pytest.mark.parametrize(
    "raw",
    ["0712345678", "712345678", "254712345678", "+254 712 345 678", "0112-345-678", 254711000111],
)
def test_normalize_is_idempotent(raw):
    once = normalize_phone(raw)
    assert normalize_phone(once) == once
    assert once.startswith("254") and len(once) == 12


def test_canonical_number_passes_through():
    assert normalize_phone("254711000111") == "254711000111"


def test_custom_country_code():
    assert normalize_phone("0712345678", country_code="255") == "255712345678"


@pytest.mark.parametrize("raw", [None, "", "12345", "0812", "+1 415 555 0100"])
def test_invalid_numbers_rejected(raw):
    with pytest.raises(InvalidPhoneNumber):
        normalize_phone(raw)

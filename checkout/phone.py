import re

from checkout.errors import InvalidPhoneNumber

# Subscriber numbers are nine digits once the trunk prefix is removed.
SUBSCRIBER_DIGITS = 9


def normalize_phone(phone, country_code: str = "254") -> str:
    """Return ``phone`` in canonical international form, e.g. ``254712345678``.

    Accepts ``0712345678``, ``712345678``, ``+254 712 345 678`` and
    ``254712345678``. Canonical input is returned unchanged, so the
    function is idempotent.
    """
    if phone is None:
        raise InvalidPhoneNumber("Phone number is required")

    digits = re.sub(r"\D", "", str(phone))

    if digits.startswith(country_code) and len(digits) == len(country_code) + SUBSCRIBER_DIGITS:
        return digits
    if digits.startswith("0") and len(digits) == SUBSCRIBER_DIGITS + 1:
        return country_code + digits[1:]
    if len(digits) == SUBSCRIBER_DIGITS and digits[0] in "17":
        return country_code + digits

    raise InvalidPhoneNumber(f"Unrecognised phone number: {phone!r}")

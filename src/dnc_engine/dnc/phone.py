"""
Phone number normalization to E.164.
"""

import phonenumbers

from dnc_engine.shared.exceptions import ValidationError

# National numbers without a country code are read as North American.
DEFAULT_REGION = "US"


def normalize_phone_number(phone: str | None, default_region: str = DEFAULT_REGION) -> str:
    """Normalize a phone number to E.164 format.

    Accepts common formatting (spaces, dashes, dots, parentheses), an
    international ``00`` prefix, or a national number in ``default_region``.
    Only possibility (length/prefix) is checked, not carrier assignment, so
    fictional ranges such as 555 numbers are accepted.

    Raises:
        ValidationError: If the number cannot be parsed.
    """
    if phone is None or not str(phone).strip():
        raise ValidationError("Phone number is required", {"field": "phoneNumber"})

    raw = str(phone).strip()
    candidate = raw
    if candidate.startswith("00"):
        candidate = "+" + candidate[2:]

    try:
        parsed = phonenumbers.parse(candidate, None if candidate.startswith("+") else default_region)
    except phonenumbers.NumberParseException as exc:
        raise ValidationError(
            f"Invalid phone number '{raw}'",
            {"field": "phoneNumber", "reason": str(exc)},
        ) from exc

    if not phonenumbers.is_possible_number(parsed):
        raise ValidationError(f"Invalid phone number '{raw}'", {"field": "phoneNumber"})

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def try_normalize_phone_number(phone: str | None) -> str | None:
    """Like :func:`normalize_phone_number` but returns None for bad input."""
    try:
        return normalize_phone_number(phone)
    except ValidationError:
        return None

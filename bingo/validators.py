"""
Registro: input validators for registration requests.
Each validator returns the cleaned value or raises django ValidationError with a code.
"""

import re

from django.core.exceptions import ValidationError

from bingo.conf import ADDRESS_DETAIL_MIN_LENGTH, TABLE_CODE_PAD
from bingo.exceptions import ValidationFailed

PHONE_PATTERN = re.compile(r"^[\d\s+\-()]+$")
PHONE_MIN_DIGITS = 9


def validate_phone(value: str | None) -> str:
    """
    Accept digits, spaces, +, - and parentheses with at least 9 digits.
    Returns the trimmed phone as entered (it is the lookup key).
    """
    phone = (value or "").strip()
    if not phone:
        raise ValidationError("Phone number is required.", code="required")
    if not PHONE_PATTERN.match(phone):
        raise ValidationError("Invalid phone number format.", code="invalid_phone")
    if len(re.sub(r"\D", "", phone)) < PHONE_MIN_DIGITS:
        raise ValidationError("Phone number is too short.", code="invalid_phone")
    return phone


def validate_id_card(value: str | None) -> str:
    id_card = (value or "").strip()
    if not id_card:
        raise ValidationError("Id card is required.", code="required")
    return id_card


def validate_address_detail(value: str | None) -> str:
    address = (value or "").strip()
    if len(address) < ADDRESS_DETAIL_MIN_LENGTH:
        raise ValidationError(
            f"Address detail must have at least {ADDRESS_DETAIL_MIN_LENGTH} characters.",
            code="address_too_short",
        )
    return address


def validate_table_range(start, end) -> tuple[int, int]:
    """Both bounds are positive integers and start < end."""
    try:
        start_i, end_i = int(str(start).strip()), int(str(end).strip())
    except (TypeError, ValueError):
        raise ValidationError("Table range bounds must be numbers.", code="invalid_table_range")
    if start_i <= 0 or end_i <= 0:
        raise ValidationError("Table range bounds must be positive.", code="invalid_table_range")
    if start_i >= end_i:
        raise ValidationError("Table range start must be lower than end.", code="invalid_table_range")
    if len(str(end_i)) > TABLE_CODE_PAD:
        raise ValidationError("Table range is out of bounds.", code="invalid_table_range")
    return start_i, end_i


def collect(validators: dict) -> dict:
    """
    Run {field: callable} validators; return {field: cleaned}.
    Raises ValidationFailed with every failing field at once.
    """
    cleaned, errors = {}, {}
    for field_name, check in validators.items():
        try:
            cleaned[field_name] = check()
        except ValidationError as e:
            errors[field_name] = e.messages[0] if e.messages else "Invalid value."
    if errors:
        raise ValidationFailed("Invalid registration data", fields=errors)
    return cleaned

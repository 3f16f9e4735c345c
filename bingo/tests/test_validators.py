"""
Registro: Tests for registration input validators.
"""

from django.core.exceptions import ValidationError
from django.test import SimpleTestCase

from bingo.exceptions import ValidationFailed
from bingo.validators import (
    collect,
    validate_address_detail,
    validate_id_card,
    validate_phone,
    validate_table_range,
)


class PhoneValidatorTests(SimpleTestCase):
    def test_valid_formats(self):
        self.assertEqual(validate_phone(" 0991234567 "), "0991234567")
        validate_phone("+593 99 123-4567")
        validate_phone("(099) 123 4567")

    def test_invalid_characters(self):
        with self.assertRaises(ValidationError) as cm:
            validate_phone("099abc4567")
        self.assertEqual(cm.exception.error_list[0].code, "invalid_phone")

    def test_too_few_digits(self):
        with self.assertRaises(ValidationError):
            validate_phone("12345678")

    def test_required(self):
        with self.assertRaises(ValidationError) as cm:
            validate_phone("  ")
        self.assertEqual(cm.exception.error_list[0].code, "required")


class OtherValidatorTests(SimpleTestCase):
    def test_id_card(self):
        self.assertEqual(validate_id_card(" 0912345678 "), "0912345678")
        with self.assertRaises(ValidationError):
            validate_id_card(None)

    def test_address_detail_length(self):
        validate_address_detail("1234567890")
        with self.assertRaises(ValidationError) as cm:
            validate_address_detail("123456789")
        self.assertEqual(cm.exception.error_list[0].code, "address_too_short")

    def test_table_range(self):
        self.assertEqual(validate_table_range("1", "10"), (1, 10))
        for start, end in [(10, 10), (0, 5), ("a", 3), (5, 1), (1, 100000)]:
            with self.assertRaises(ValidationError):
                validate_table_range(start, end)

    def test_collect_reports_every_field(self):
        with self.assertRaises(ValidationFailed) as cm:
            collect({
                "phone": lambda: validate_phone("x"),
                "id_card": lambda: validate_id_card("091"),
                "address_detail": lambda: validate_address_detail(""),
            })
        self.assertEqual(set(cm.exception.fields), {"phone", "address_detail"})
        self.assertEqual(cm.exception.to_dict()["kind"], "validation_failed")

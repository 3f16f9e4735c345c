"""
Registro: campaign message personalization.

Placeholders: {firstName} {lastName} {fullName} {phone} {barrio} {canton} {provincia}
{tableCode} {tablaEntregado} {ocrValidated}, as used by existing campaign templates.
The snake_case names ({first_name}, {neighborhood}, {table_delivered}, ...) are accepted too.
Unknown braces are left as typed.
"""

import re
from collections.abc import Mapping

NO_TABLE_LABEL = "Sin tabla"
DELIVERED_LABELS = ("Entregada", "No entregada")
OCR_LABELS = ("Validada", "Sin validar")

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")

# Template token -> snake_case name.
TEMPLATE_ALIASES = {
    "firstName": "first_name",
    "lastName": "last_name",
    "fullName": "full_name",
    "barrio": "neighborhood",
    "provincia": "province",
    "tableCode": "table_code",
    "tablaEntregado": "table_delivered",
    "ocrValidated": "ocr_validated",
}


def _field(recipient, name: str):
    if recipient is None:
        return None
    if isinstance(recipient, Mapping):
        return recipient.get(name)
    return getattr(recipient, name, None)


def _text(value) -> str:
    return "" if value is None else str(value)


def placeholder_values(recipient) -> dict:
    first = _text(_field(recipient, "first_name")).strip()
    last = _text(_field(recipient, "last_name")).strip()
    return {
        "first_name": first,
        "last_name": last,
        "full_name": f"{first} {last}".strip(),
        "phone": _text(_field(recipient, "phone")),
        "neighborhood": _text(_field(recipient, "neighborhood")),
        "canton": _text(_field(recipient, "canton")),
        "province": _text(_field(recipient, "province")),
        "table_code": _text(_field(recipient, "table_code")) or NO_TABLE_LABEL,
        "table_delivered": DELIVERED_LABELS[0] if _field(recipient, "table_delivered") else DELIVERED_LABELS[1],
        "ocr_validated": OCR_LABELS[0] if _field(recipient, "ocr_validated") else OCR_LABELS[1],
    }


def personalize(template: str | None, recipient) -> str:
    """Replace every known placeholder; never raises on missing data."""
    values = placeholder_values(recipient)
    values.update({alias: values[name] for alias, name in TEMPLATE_ALIASES.items()})
    return PLACEHOLDER_PATTERN.sub(
        lambda m: values.get(m.group(1), m.group(0)),
        template or "",
    )

"""Translation between local record payloads and remote table rows.

Local payloads use camelCase field names; the remote tables use snake_case
columns. A handful of fields do not follow the mechanical conversion and are
mapped explicitly.
"""

import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from caresync.models.db_types import as_utc

SPECIAL_FIELD_MAPPINGS: Dict[str, str] = {
    "patientWhatsApp": "patient_whatsapp",
    "whatsAppNumber": "whatsapp_number",
    "whatsApp": "whatsapp",
    "is24Hours": "is_24_hours",
}

REVERSE_FIELD_MAPPINGS: Dict[str, str] = {v: k for k, v in SPECIAL_FIELD_MAPPINGS.items()}

DEFAULT_CURSOR_FIELD = "updated_at"

_UPPER = re.compile(r"[A-Z]")
_SNAKE = re.compile(r"_([a-z])")


def to_snake_case(name: str) -> str:
    """Convert a camelCase field name to its remote column name."""
    special = SPECIAL_FIELD_MAPPINGS.get(name)
    if special:
        return special
    return _UPPER.sub(lambda m: "_" + m.group(0).lower(), name)


def to_camel_case(name: str) -> str:
    """Convert a remote column name to its local field name."""
    special = REVERSE_FIELD_MAPPINGS.get(name)
    if special:
        return special
    return _SNAKE.sub(lambda m: m.group(1).upper(), name)


def sanitize_value(value: Any) -> Any:
    """Make a value JSON-safe: datetimes become ISO strings, sets become lists."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): sanitize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize_value(v) for v in value]
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a remote timestamp column into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


class SchemaMapping:
    """Maps entity types to remote tables and payloads to rows."""

    def __init__(
        self,
        table_overrides: Optional[Dict[str, str]] = None,
        cursor_fields: Optional[Dict[str, str]] = None,
    ):
        self.table_overrides = dict(table_overrides or {})
        self.cursor_fields = dict(cursor_fields or {})

    def table_name(self, entity_type: str) -> str:
        """Remote table for an entity type, e.g. vitalSigns -> vital_signs."""
        return self.table_overrides.get(entity_type) or to_snake_case(entity_type)

    def cursor_field(self, entity_type: str) -> str:
        """Remote column used to page through changes of an entity type."""
        return self.cursor_fields.get(entity_type, DEFAULT_CURSOR_FIELD)

    def to_remote(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Convert top-level payload fields to remote columns."""
        return {to_snake_case(key): sanitize_value(value) for key, value in payload.items()}

    def from_remote(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Convert a remote row back to a local payload."""
        return {to_camel_case(key): sanitize_value(value) for key, value in row.items()}

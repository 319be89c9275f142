"""
Record mapper: rewrites parsed source rows into target-schema rows.

apply_mappings only renames keys; values stay raw so validation sees what the
file actually contained. coerce_record converts the (possibly fixed) values to
the target types just before commit.
"""

from typing import Any, Optional

from dateutil import parser as date_parser

from app.models.enums import DataType
from app.pipeline.field_extractor import BOOLEAN_TOKENS, as_text, is_null, to_number
from app.schemas.imports import FieldMapping, TargetSchema

TRUE_TOKENS = {"true", "yes", "y", "1"}


def apply_mappings(records: list[dict[str, Any]], mappings: list[FieldMapping]) -> list[dict[str, Any]]:
    """Project each source row onto its mapped target fields. Unmapped columns are dropped."""
    pairs = [(m.source_field, m.target_field) for m in mappings if m.target_field]
    return [{target: row.get(source) for source, target in pairs} for row in records]


def coerce_value(value: Any, data_type: DataType) -> Optional[Any]:
    """Best-effort conversion to the target type. Returns the input unchanged when it can't convert."""
    if value is None:
        return None
    text = as_text(value)
    if is_null(text):
        return None

    if data_type == DataType.NUMBER:
        number = to_number(text)
        return number if number is not None else value
    if data_type == DataType.INTEGER:
        number = to_number(text)
        if number is None or number != int(number):
            return value
        return int(number)
    if data_type == DataType.BOOLEAN:
        if isinstance(value, bool):
            return value
        lowered = text.lower()
        if lowered in BOOLEAN_TOKENS or lowered in ("0", "1"):
            return lowered in TRUE_TOKENS
        return value
    if data_type == DataType.DATE:
        try:
            return date_parser.parse(text).isoformat()
        except (ValueError, OverflowError):
            return value
    if data_type == DataType.STRING:
        return text
    return value


def coerce_record(row: dict[str, Any], schema: TargetSchema) -> dict[str, Any]:
    out = {}
    for name, value in row.items():
        target = schema.get(name)
        out[name] = coerce_value(value, target.data_type) if target else value
    return out

"""Validates submitted form variables against a form's field schema.

Every field type has exactly one coercion function. The UI sends loosely
typed JSON, so each function accepts whatever arrived on the wire and
returns the canonical Python value, or raises `ValidationError`.
"""
from typing import Any, Callable, Iterable, Mapping, Optional
import json
import math

from playdeck.core.exceptions import ValidationError
from playdeck.models import FieldType, FormField

TRUE_TOKENS = {"true", "yes", "on", "1"}
FALSE_TOKENS = {"false", "no", "off", "0"}


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def parse_options(field: FormField) -> list[str]:
    """Decodes the JSON options list stored on a select field."""
    if not field.options:
        return []
    try:
        options = json.loads(field.options)
    except json.JSONDecodeError:
        raise ValidationError(field.name, "options are not a JSON array")
    if not isinstance(options, list):
        raise ValidationError(field.name, "options are not a JSON array")
    return [str(o) for o in options]


def coerce_text(field: FormField, value: Any) -> str:
    if isinstance(value, (dict, list)):
        raise ValidationError(field.name, "not a text value")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def coerce_number(field: FormField, value: Any) -> int | float:
    if isinstance(value, bool):
        raise ValidationError(field.name, "not numeric")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        # Integers stay exact beyond 2**53
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            raise ValidationError(field.name, "not numeric")
    else:
        raise ValidationError(field.name, "not numeric")
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(field.name, "not numeric")
    return int(number) if number.is_integer() else number


def coerce_bool(field: FormField, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        token = value.strip().lower()
        if token in TRUE_TOKENS:
            return True
        if token in FALSE_TOKENS:
            return False
    raise ValidationError(field.name, "not a boolean")


def coerce_select(field: FormField, value: Any) -> str:
    if isinstance(value, (dict, list)):
        raise ValidationError(field.name, "not a valid option")
    choice = coerce_text(field, value)
    if choice not in parse_options(field):
        raise ValidationError(field.name, "not a valid option")
    return choice


COERCERS: dict[FieldType, Callable[[FormField, Any], Any]] = {
    FieldType.TEXT: coerce_text,
    FieldType.NUMBER: coerce_number,
    FieldType.BOOL: coerce_bool,
    FieldType.SELECT: coerce_select,
}


def field_type_of(field: FormField) -> FieldType:
    try:
        return FieldType(field.field_type)
    except ValueError:
        raise ValidationError(field.name, f"unknown field type '{field.field_type}'")


def coerce(field: FormField, value: Any) -> Any:
    return COERCERS[field_type_of(field)](field, value)


def bind_variables(fields: Iterable[FormField], submitted: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """Produces the validated variable set for one run.

    Args:
        fields: The form's schema; processed in sort_order.
        submitted: Raw key/value map from the caller. Keys that are not part
            of the schema are dropped.

    Returns:
        Field name to coerced value. Optional fields that are missing and
        have no default are left out.

    Raises:
        ValidationError: Required field missing, value fails coercion, or the
            schema declares an unknown field type.
    """
    submitted = submitted or {}
    bound: dict[str, Any] = {}
    for field in sorted(fields, key=lambda f: (f.sort_order, f.name)):
        if not field.name:
            continue
        # Reject bad schemas even when the field would not be used
        field_type_of(field)
        value = submitted.get(field.name)
        if _is_missing(value):
            if field.default_value not in (None, ""):
                bound[field.name] = coerce(field, field.default_value)
            elif field.required:
                raise ValidationError(field.name, "is required")
            continue
        bound[field.name] = coerce(field, value)
    return bound


def bind_defaults(fields: Iterable[FormField]) -> dict[str, Any]:
    """Binds an empty submission, as used by scheduled runs and quick actions."""
    return bind_variables(fields, {})

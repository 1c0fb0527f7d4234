"""Validation of dynamic form submissions against a schema field list.

Each submitted value is coerced to the primitive kind declared by its field
(string, number, boolean, date, enum, file reference). Problems are collected
and raised together so the client sees every invalid field at once.
"""

import logging
import math
import re
from datetime import date, datetime
from typing import Any, Dict, List, Union

from dateutil.parser import isoparse

from errors import ConfigurationError, ValidationError
from schemas import FieldType, SchemaField

logger = logging.getLogger(__name__)

Value = Union[str, int, float, bool]

TRUE_STRINGS = {"true", "yes", "y", "1", "on"}
FALSE_STRINGS = {"false", "no", "n", "0", "off"}


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def _to_number(value: Any) -> Union[int, float]:
    if isinstance(value, bool):
        raise ValueError("expected a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        number = value
    else:
        text = str(value).strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            raise ValueError("expected a number") from None
    # float() also accepts nan and inf
    if not math.isfinite(number):
        raise ValueError("expected a number")
    return number


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_STRINGS:
        return True
    if text in FALSE_STRINGS:
        return False
    raise ValueError("expected true or false")


def _to_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return isoparse(str(value).strip()).date().isoformat()
    except (ValueError, OverflowError):
        raise ValueError("expected an ISO date") from None


def _check_rules(field: SchemaField, value: Value) -> None:
    try:
        _apply_rules(field.validation_rules or {}, value)
    except (re.error, TypeError) as e:
        logger.error("Unusable validation rules on field %s: %s", field.key, e)
        raise ConfigurationError(f"Invalid validation rules for field {field.key}") from e


def _apply_rules(rules: Dict[str, Any], value: Value) -> None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if "min" in rules and value < rules["min"]:
            raise ValueError(f"must be at least {rules['min']}")
        if "max" in rules and value > rules["max"]:
            raise ValueError(f"must be at most {rules['max']}")
    if isinstance(value, str):
        if "minLength" in rules and len(value) < rules["minLength"]:
            raise ValueError(f"must be at least {rules['minLength']} characters")
        if "maxLength" in rules and len(value) > rules["maxLength"]:
            raise ValueError(f"must be at most {rules['maxLength']} characters")
        if "pattern" in rules and not re.fullmatch(rules["pattern"], value):
            raise ValueError("has an invalid format")


def coerce_value(field: SchemaField, value: Any) -> Value:
    """Coerce one non-blank value to the kind its field declares."""
    if field.type == FieldType.NUMBER:
        coerced: Value = _to_number(value)
    elif field.type == FieldType.BOOLEAN:
        coerced = _to_boolean(value)
    elif field.type == FieldType.DATE:
        coerced = _to_date(value)
    elif field.type == FieldType.ENUM:
        coerced = str(value)
        options = field.enum_options or []
        if coerced not in options:
            raise ValueError(f"must be one of {', '.join(options)}")
    elif field.type == FieldType.FILE:
        if not isinstance(value, str):
            raise ValueError("expected a file reference")
        coerced = value.strip()
    elif isinstance(value, list):
        coerced = ", ".join(map(str, value))
    else:
        coerced = str(value)
    _check_rules(field, coerced)
    return coerced


def validate_submission(fields: List[SchemaField], payload: Dict[str, Any]) -> Dict[str, Value]:
    """Return the payload restricted to known keys with values coerced.

    Raises ValidationError listing every missing or invalid field.
    """
    cleaned: Dict[str, Value] = {}
    problems: List[str] = []
    for field in fields:
        value = payload.get(field.key)
        if _is_blank(value):
            if field.required:
                problems.append(f"Missing required field: {field.label}")
            continue
        try:
            cleaned[field.key] = coerce_value(field, value)
        except ValueError as e:
            problems.append(f"{field.label} {e}")
    if problems:
        raise ValidationError("; ".join(problems))
    return cleaned

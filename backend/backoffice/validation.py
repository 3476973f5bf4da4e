from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from .errors import ValidationError
from .time_utils import normalize_datetime


# Maximum money value: $9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for JSON input.

    Rejects bools, floats, decimals and scientific notation; accepts ints and
    plain digit strings with an optional leading minus.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def require_int(payload: dict, field: str, *, minimum: int | None = None) -> int:
    if field not in payload or payload[field] is None:
        raise ValidationError(f"{field} is required")
    value = coerce_int(payload[field], field)
    if minimum is not None and value < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    return value


def optional_int(payload: dict, field: str, *, default: int | None = None, minimum: int | None = None) -> int | None:
    if payload.get(field) is None:
        return default
    value = coerce_int(payload[field], field)
    if minimum is not None and value < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    return value


def require_str(payload: dict, field: str, *, max_length: int | None = None) -> str:
    raw = payload.get(field)
    if raw is None or str(raw).strip() == "":
        raise ValidationError(f"{field} is required")
    value = str(raw).strip()
    if max_length and len(value) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return value


def optional_str(payload: dict, field: str, *, max_length: int | None = None) -> str | None:
    raw = payload.get(field)
    if raw is None:
        return None
    value = str(raw).strip()
    if not value:
        return None
    if max_length and len(value) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return value


def require_choice(value: Any, field: str, choices: Iterable[str]) -> str:
    allowed = set(choices)
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be one of: {', '.join(sorted(allowed))}")
    if value not in allowed:
        raise ValidationError(
            f"Invalid {field} '{value}'. Must be one of: {', '.join(sorted(allowed))}"
        )
    return value


def optional_datetime(value: Any, field: str) -> datetime | None:
    try:
        return normalize_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")

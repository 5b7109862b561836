"""Model-level guards for stock quantities and JSON payloads.

Applied through ``@validates`` so a bad value is refused at assignment,
before it reaches a flush, whichever service wrote it.
"""

from decimal import Decimal, InvalidOperation


def _to_decimal(key: str, value) -> Decimal:
    try:
        v = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{key} must be a number, got {value!r}") from None
    if not v.is_finite():
        raise ValueError(f"{key} must be finite, got {value}")
    return v


def non_negative(key: str, value):
    """Stock levels and thresholds: zero or more."""
    if value is not None and _to_decimal(key, value) < 0:
        raise ValueError(f"{key} cannot be negative, got {value}")
    return value


def positive(key: str, value):
    """Per-unit recipe requirements: strictly more than zero."""
    if value is not None and _to_decimal(key, value) <= 0:
        raise ValueError(f"{key} must be positive, got {value}")
    return value


def validate_dict(key: str, value):
    """JSON payload columns hold an object (or nothing)."""
    if value is not None and not isinstance(value, dict):
        raise ValueError(f"{key} must be a dict, got {type(value).__name__}")
    return value

from __future__ import annotations

from enum import Enum
from typing import Any, TypeVar

from .errors import ValidationError


# Maximum money amount: 99,999,999.99 (9,999,999,999 paise)
# Keeps amounts inside the ledger's BigInteger columns with room for running sums
MAX_AMOUNT_CENTS = 9_999_999_999

E = TypeVar("E", bound=Enum)


def parse_amount_cents(value: Any, field: str = "amount_cents", *, allow_zero: bool = False) -> int:
    """
    Strictly coerce an incoming money amount (integer paise).

    Rejects bools, floats, decimals-in-strings and scientific notation so a
    malformed amount never reaches the ledger.
    """
    if value is None:
        raise ValidationError(f"{field} is required")

    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")

    if isinstance(value, int):
        amount = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer number of paise (no decimals)")
        try:
            amount = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer number of paise, not a decimal")
    else:
        raise ValidationError(f"{field} must be an integer")

    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"{field} must be positive")
    if amount > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_CENTS}")
    return amount


def parse_quantity(value: Any, field: str = "qty") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value <= 0:
        raise ValidationError(f"{field} must be positive")
    return value


def parse_enum(enum_cls: type[E], value: Any, field: str) -> E:
    if isinstance(value, enum_cls):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    try:
        return enum_cls(value.strip().upper())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {field} '{value}'. Must be one of: {allowed}")


def require_text(value: Any, field: str, max_length: int = 500) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    text = str(value).strip()
    if len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return text


def optional_text(value: Any, field: str, max_length: int = 500) -> str | None:
    if value is None or not str(value).strip():
        return None
    return require_text(value, field, max_length)


def format_rupees(amount_cents: int) -> str:
    """Render paise for human-readable timeline and ledger descriptions."""
    sign = "-" if amount_cents < 0 else ""
    whole, paise = divmod(abs(amount_cents), 100)
    return f"{sign}₹{whole:,}.{paise:02d}"

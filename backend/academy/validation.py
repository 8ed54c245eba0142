from __future__ import annotations
from datetime import date, time

from academy.time_utils import parse_session_date, parse_session_time

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Date, Integer, String, Text, Time
from sqlalchemy.orm import DeclarativeMeta


# Maximum price: $99,999.99 (9,999,999 cents)
# Training sessions never approach this; anything above is a typo in the admin form
MAX_PRICE_CENTS = 9_999_999

# Stripe requires at least $0.50 for a card charge
MIN_PRICE_CENTS = 50

MAX_STOCK_QUANTITY = 10_000

GENDERS = ("boys", "girls", "co-ed")
SKILL_LEVELS = ("beginner", "intermediate", "advanced")

# Grades 0 (kindergarten) through 12
MIN_GRADE = 0
MAX_GRADE = 12


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate cart entry)."""


class NotFoundError(LookupError):
    """404-level missing record."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = field(default_factory=set)


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        # Already an int (but not bool which is a subclass of int)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        # String input - must be plain digits (with optional leading minus)
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        raise ValidationError(f"{col.key} must be an integer")

    if isinstance(coltype, Date):
        if isinstance(value, date):
            return value
        try:
            parsed = parse_session_date(value)
        except ValueError:
            raise ValidationError(f"{col.key} must be a YYYY-MM-DD date")
        if parsed is None:
            raise ValidationError(f"{col.key} must be a YYYY-MM-DD date")
        return parsed

    if isinstance(coltype, Time):
        if isinstance(value, time):
            return value
        try:
            parsed = parse_session_time(value)
        except ValueError:
            raise ValidationError(f"{col.key} must be an HH:MM time")
        if parsed is None:
            raise ValidationError(f"{col.key} must be an HH:MM time")
        return parsed

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_product(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    if "price_cents" in patch and patch["price_cents"] is not None:
        price = patch["price_cents"]
        if price < MIN_PRICE_CENTS:
            raise ValidationError(f"price_cents must be >= {MIN_PRICE_CENTS}")
        if price > MAX_PRICE_CENTS:
            raise ValidationError(f"price_cents cannot exceed {MAX_PRICE_CENTS} (${MAX_PRICE_CENTS / 100:,.2f})")

    if "stock_quantity" in patch and patch["stock_quantity"] is not None:
        stock = patch["stock_quantity"]
        if stock < 0:
            raise ValidationError("stock_quantity must be >= 0")
        if stock > MAX_STOCK_QUANTITY:
            raise ValidationError(f"stock_quantity cannot exceed {MAX_STOCK_QUANTITY}")

    if patch.get("gender") is not None and patch["gender"] not in GENDERS:
        raise ValidationError(f"gender must be one of: {', '.join(GENDERS)}")

    if patch.get("skill_level") is not None and patch["skill_level"] not in SKILL_LEVELS:
        raise ValidationError(f"skill_level must be one of: {', '.join(SKILL_LEVELS)}")

    for key in ("min_grade", "max_grade"):
        grade = patch.get(key)
        if grade is not None and not (MIN_GRADE <= grade <= MAX_GRADE):
            raise ValidationError(f"{key} must be between {MIN_GRADE} and {MAX_GRADE}")

    min_grade, max_grade = patch.get("min_grade"), patch.get("max_grade")
    if min_grade is not None and max_grade is not None and min_grade > max_grade:
        raise ValidationError("min_grade cannot be greater than max_grade")


def enforce_rules_athlete(patch: dict) -> None:
    age = patch.get("age")
    if age is not None and not (3 <= age <= 25):
        raise ValidationError("age must be between 3 and 25")

    grade = patch.get("grade")
    if grade is not None and not (MIN_GRADE <= grade <= MAX_GRADE):
        raise ValidationError(f"grade must be between {MIN_GRADE} and {MAX_GRADE}")


def parse_positive_int(value: Any, field: str, *, default: int | None = None) -> int:
    """Parse a positive integer from request input (JSON or query string)."""
    if value is None:
        if default is None:
            raise ValidationError(f"{field} is required")
        return default
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field} must be a positive integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive integer")
    if parsed <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return parsed

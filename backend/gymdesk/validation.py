from __future__ import annotations
from datetime import date, datetime
from gymdesk.time_utils import parse_iso_datetime, parse_iso_date

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime, Date, JSON
from sqlalchemy.orm import DeclarativeMeta


# Maximum price: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

MAX_RATE_BPS = 10_000


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate coupon code)."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(key: str, value: Any) -> int:
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    # Reject floats explicitly
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def coerce_date(key: str, value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            d = parse_iso_date(value)
        except ValueError:
            raise ValidationError(f"{key} must be an ISO-8601 date")
        if d is None:
            raise ValidationError(f"{key} must be an ISO-8601 date")
        return d
    raise ValidationError(f"{key} must be a date")


def coerce_datetime(key: str, value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            dt = parse_iso_datetime(value)
        except ValueError:
            raise ValidationError(f"{key} must be an ISO-8601 datetime")
        if dt is None:
            raise ValidationError(f"{key} must be an ISO-8601 datetime")
        return dt
    raise ValidationError(f"{key} must be a datetime")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        # fallback: truthiness
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        return coerce_datetime(col.key, value)

    if isinstance(coltype, Date):
        return coerce_date(col.key, value)

    # JSON columns here only ever hold id lists
    if isinstance(coltype, JSON):
        if not isinstance(value, list):
            raise ValidationError(f"{col.key} must be a list")
        return [coerce_int(col.key, v) for v in value]

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

    required = policy.required_on_create or set()
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

        # NULL handling
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


def _check_price(patch: dict, key: str) -> None:
    if key in patch and patch[key] is not None:
        price = patch[key]
        if price < 0:
            raise ValidationError(f"{key} must be >= 0")
        if price > MAX_PRICE_CENTS:
            raise ValidationError(f"{key} cannot exceed {MAX_PRICE_CENTS}")


def enforce_rules_plan(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    _check_price(patch, "price_cents")
    _check_price(patch, "setup_fee_cents")
    if "duration_days" in patch and patch["duration_days"] is not None:
        if patch["duration_days"] <= 0:
            raise ValidationError("duration_days must be > 0")
    if patch.get("max_classes") is not None and patch["max_classes"] < 0:
        raise ValidationError("max_classes must be >= 0")


def enforce_rules_benefit(patch: dict, valid_accrual_types: list[str]) -> None:
    accrual_type = patch.get("accrual_type")
    if accrual_type is not None and accrual_type not in valid_accrual_types:
        raise ValidationError(f"Invalid accrual_type: {accrual_type}. Must be one of {valid_accrual_types}")
    if patch.get("accrual_quantity") is not None and patch["accrual_quantity"] < 0:
        raise ValidationError("accrual_quantity must be >= 0")
    if patch.get("max_balance") is not None and patch["max_balance"] < 0:
        raise ValidationError("max_balance must be >= 0")
    if patch.get("expiry_days") is not None and patch["expiry_days"] <= 0:
        raise ValidationError("expiry_days must be > 0")


def enforce_rules_coupon(patch: dict, valid_discount_types: list[str]) -> None:
    discount_type = patch.get("discount_type")
    if discount_type not in valid_discount_types:
        raise ValidationError(f"Invalid discount_type: {discount_type}. Must be one of {valid_discount_types}")

    value = patch.get("discount_value")
    if discount_type == "PERCENTAGE":
        # Basis points: 1000 = 10%
        if value is None or value <= 0 or value > MAX_RATE_BPS:
            raise ValidationError("Percentage discount_value must be between 1 and 10000 basis points")
    elif value is None or value <= 0:
        raise ValidationError("Flat discount_value must be > 0")

    if patch["valid_from"] >= patch["valid_until"]:
        raise ValidationError("valid_from must be before valid_until")

    if patch.get("max_usage_count") is not None and patch["max_usage_count"] <= 0:
        raise ValidationError("max_usage_count must be > 0")
    _check_price(patch, "min_purchase_cents")


def enforce_rules_invoice_item(item: dict) -> None:
    if item["quantity"] <= 0:
        raise ValidationError("quantity must be > 0")
    _check_price(item, "unit_price_cents")
    rate = item.get("tax_rate_bps")
    if rate is not None and (rate < 0 or rate > MAX_RATE_BPS):
        raise ValidationError("tax_rate_bps must be between 0 and 10000")


def require_fields(payload: dict, *fields: str) -> None:
    missing = [f for f in fields if payload.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

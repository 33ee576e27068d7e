from __future__ import annotations
from datetime import datetime
from storefront.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import JSON, Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta


# Largest amount any stored *_cents column may hold (fits a 32-bit INTEGER)
MAX_AMOUNT_CENTS = 999_999_999


class DomainError(ValueError):
    """Base for errors that map onto an HTTP status in the route layer."""
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class BadRequestError(DomainError):
    """400-level input problem or rejected business rule."""


class ConflictError(DomainError):
    """409-level business rule conflict (e.g., duplicate voucher code)."""
    status_code = 409


class NotFoundError(DomainError):
    """404-level missing order, voucher, product or user."""
    status_code = 404


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
    """Strict integer coercion: rejects floats, booleans and scientific notation."""
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise BadRequestError(f"{key} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise BadRequestError(f"{key} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise BadRequestError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise BadRequestError(f"{key} must be an integer")
    # Reject floats explicitly
    if isinstance(value, float):
        raise BadRequestError(f"{key} must be an integer, not a decimal")
    raise BadRequestError(f"{key} must be an integer")


def coerce_datetime(key: str, value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            dt = parse_iso_datetime(value)
        except ValueError:
            raise BadRequestError(f"{key} must be an ISO-8601 datetime")
        if dt is None:
            raise BadRequestError(f"{key} must be an ISO-8601 datetime")
        return dt
    raise BadRequestError(f"{key} must be a datetime")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise BadRequestError(f"{col.key} must be a boolean")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        return coerce_datetime(col.key, value)

    # JSON columns on this schema only ever hold lists of string ids
    if isinstance(coltype, JSON):
        if not isinstance(value, list) or not all(isinstance(v, str) and v.strip() for v in value):
            raise BadRequestError(f"{col.key} must be a list of ids")
        return [v.strip() for v in value]

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
        raise BadRequestError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise BadRequestError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise BadRequestError(f"Field not allowed: {k}")
        if k not in cols:
            raise BadRequestError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        # NULL handling
        if raw is None:
            if not col.nullable:
                raise BadRequestError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise BadRequestError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise BadRequestError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def parse_cart_items(raw_items: Any) -> list[dict]:
    """
    Normalize a cart payload into [{"product_id": str, "quantity": int}, ...].

    Quantities must be whole units >= 1; duplicates are kept (the ledger aggregates them).
    """
    if raw_items is None:
        raw_items = []
    if not isinstance(raw_items, list):
        raise BadRequestError("items must be a list")

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise BadRequestError(f"items[{index}] must be an object")
        product_id = raw.get("product_id")
        if product_id is None or str(product_id).strip() == "":
            raise BadRequestError(f"items[{index}].product_id is required")
        quantity = coerce_int(f"items[{index}].quantity", raw.get("quantity"))
        if quantity < 1:
            raise BadRequestError(f"items[{index}].quantity must be >= 1")
        items.append({"product_id": str(product_id).strip(), "quantity": quantity})
    return items


def parse_page_args(args, *, default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    page = coerce_int("page", args.get("page", "1"))
    limit = coerce_int("limit", args.get("limit", str(default_limit)))
    if page < 1:
        raise BadRequestError("page must be >= 1")
    if limit < 1 or limit > max_limit:
        raise BadRequestError(f"limit must be between 1 and {max_limit}")
    return page, limit

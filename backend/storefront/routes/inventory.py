# Overview: Flask API routes for manual stock adjustments and the movement ledger.

# backend/storefront/routes/inventory.py
"""
Inventory routes.

Stock is never set directly: an adjustment is a signed delta applied with
the same conditional UPDATE as checkout, and it appends one ADJUSTMENT
movement. X-User-Id is recorded as performed_by_user_id.
"""
from flask import Blueprint, g, request

from ..decorators import json_errors
from ..services import inventory_service
from ..services.concurrency import atomic
from ..validation import BadRequestError, coerce_int, parse_page_args


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("/products/<product_id>/adjust")
@json_errors
def adjust_stock_route(product_id: str):
    """Body: {"quantity_delta": int (non-zero), "reference": str}"""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise BadRequestError("Invalid JSON payload")

    if "quantity_delta" not in payload:
        raise BadRequestError("Missing required fields: quantity_delta")
    delta = coerce_int("quantity_delta", payload["quantity_delta"])
    if delta == 0:
        raise BadRequestError("quantity_delta must be non-zero")

    reference = str(payload.get("reference") or "").strip()
    if not reference:
        raise BadRequestError("reference is required")
    if len(reference) > 255:
        raise BadRequestError("reference exceeds max length 255")

    with atomic():
        movement = inventory_service.adjust_stock(
            product_id, delta, reference, performed_by_user_id=g.user_id
        )
        result = movement.to_dict()
    return result, 201


@inventory_bp.get("/products/<product_id>/movements")
@json_errors
def list_movements_route(product_id: str):
    """Query params: page, limit (max 50). Newest first; each row carries stock_before/stock_after."""
    page, limit = parse_page_args(request.args, max_limit=50)
    return inventory_service.get_movements(product_id, page=page, limit=limit), 200

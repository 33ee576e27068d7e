# Overview: Flask API routes for checkout and order management; parses input and returns JSON responses.

# backend/storefront/routes/orders.py
"""
Order routes.

Identity comes from the upstream auth layer via headers (see
decorators.load_request_identity): X-User-Id is the customer on checkout
routes and the acting staff member on management routes.

Checkout retries: clients send the same Idempotency-Key header on every
retry of one checkout; the first successful attempt's order is returned.
"""
from flask import Blueprint, g, request

from ..decorators import json_errors
from ..services import order_service
from ..validation import BadRequestError, coerce_datetime, parse_page_args


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@json_errors
def create_order_route():
    """
    Place an order.

    Body: customer_email, customer_phone, customer_name?, shipping_*?,
    payment_method? (COD | BANK_DEPOSIT), payment_proof_reference?,
    items: [{product_id, quantity}], voucher_code?
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise BadRequestError("Invalid JSON payload")

    order = order_service.create_order(
        payload,
        customer_user_id=g.user_id,
        idempotency_key=request.headers.get("Idempotency-Key"),
        request_id=g.request_id,
    )
    return order, 201


@orders_bp.post("/quote")
@json_errors
def quote_order_route():
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise BadRequestError("Invalid JSON payload")

    return order_service.quote_order(
        payload.get("items"),
        payload.get("voucher_code"),
        customer_user_id=g.user_id,
        request_id=g.request_id,
    ), 200


@orders_bp.get("")
@json_errors
def list_orders_route():
    """
    Query params:
    - page, limit (max 100)
    - status, customer_email, assigned_to_user_id
    - date_from, date_to: ISO-8601, inclusive on created_at
    """
    page, limit = parse_page_args(request.args)
    date_from = request.args.get("date_from")
    date_to = request.args.get("date_to")

    return order_service.list_orders(
        page=page,
        limit=limit,
        status=request.args.get("status"),
        customer_email=request.args.get("customer_email"),
        date_from=coerce_datetime("date_from", date_from) if date_from else None,
        date_to=coerce_datetime("date_to", date_to) if date_to else None,
        assigned_to_user_id=request.args.get("assigned_to_user_id") or None,
    ), 200


def _require_customer() -> str:
    if not g.user_id:
        raise BadRequestError("X-User-Id header is required")
    return g.user_id


@orders_bp.get("/me")
@json_errors
def list_my_orders_route():
    """The caller's own orders, newest first. Query params: page, limit (max 100)."""
    customer_user_id = _require_customer()
    page, limit = parse_page_args(request.args)
    return order_service.list_orders(page=page, limit=limit, customer_user_id=customer_user_id), 200


@orders_bp.get("/me/<order_id>")
@json_errors
def get_my_order_route(order_id: str):
    return order_service.get_customer_order(_require_customer(), order_id), 200


@orders_bp.get("/<order_id>")
@json_errors
def get_order_route(order_id: str):
    return order_service.get_order(order_id), 200


@orders_bp.patch("/<order_id>")
@json_errors
def update_order_route(order_id: str):
    """Body: status?, assigned_to_user_id? (null unassigns), courier_service_name?, tracking_id?"""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise BadRequestError("Invalid JSON payload")
    return order_service.update_order(order_id, payload), 200

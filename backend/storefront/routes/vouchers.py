# Overview: Flask API routes for voucher validation, admin management and audit logs.

# backend/storefront/routes/vouchers.py
"""
Voucher routes.

POST /api/vouchers/validate is the customer-facing check; an invalid code
is a normal 200 response with {"valid": false, "error_code", "message"}.
Everything else is admin management; X-User-Id is recorded as the audit actor.
"""
from flask import Blueprint, g, request

from ..decorators import json_errors
from ..services import voucher_audit_service, voucher_service
from ..validation import BadRequestError, coerce_datetime, parse_cart_items, parse_page_args


vouchers_bp = Blueprint("vouchers", __name__, url_prefix="/api/vouchers")


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise BadRequestError("Invalid JSON payload")
    return payload


@vouchers_bp.post("/validate")
@json_errors
def validate_voucher_route():
    """Body: code, items: [{product_id, quantity}]"""
    payload = _json_body()
    items = parse_cart_items(payload.get("items"))
    return voucher_service.validate_voucher(
        payload.get("code"),
        items,
        customer_user_id=g.user_id,
        request_id=g.request_id,
    ), 200


@vouchers_bp.get("/audit-logs")
@json_errors
def list_audit_logs_route():
    """
    Query params:
    - page, limit (max 100)
    - action, code, actor_id, voucher_id
    - from, to: ISO-8601, inclusive on created_at
    """
    page, limit = parse_page_args(request.args)
    date_from = request.args.get("from")
    date_to = request.args.get("to")

    return voucher_audit_service.list_audit_logs(
        page=page,
        limit=limit,
        action=request.args.get("action"),
        code=request.args.get("code"),
        actor_id=request.args.get("actor_id"),
        voucher_id=request.args.get("voucher_id"),
        date_from=coerce_datetime("from", date_from) if date_from else None,
        date_to=coerce_datetime("to", date_to) if date_to else None,
    ), 200


@vouchers_bp.get("")
@json_errors
def list_vouchers_route():
    """Query params: page, limit, search (code substring), status (active | expired | upcoming)"""
    page, limit = parse_page_args(request.args)
    return voucher_service.list_vouchers(
        page=page,
        limit=limit,
        search=request.args.get("search"),
        status=request.args.get("status"),
    ), 200


@vouchers_bp.post("")
@json_errors
def create_voucher_route():
    created = voucher_service.create_voucher(
        _json_body(), actor_id=g.user_id, request_id=g.request_id
    )
    return created, 201


@vouchers_bp.get("/<voucher_id>")
@json_errors
def get_voucher_route(voucher_id: str):
    return voucher_service.get_voucher(voucher_id), 200


@vouchers_bp.patch("/<voucher_id>")
@json_errors
def update_voucher_route(voucher_id: str):
    return voucher_service.update_voucher(
        voucher_id, _json_body(), actor_id=g.user_id, request_id=g.request_id
    ), 200


@vouchers_bp.patch("/<voucher_id>/status")
@json_errors
def update_voucher_status_route(voucher_id: str):
    """Body: {"is_active": bool}"""
    payload = _json_body()
    if "is_active" not in payload:
        raise BadRequestError("Missing required fields: is_active")
    return voucher_service.update_voucher_status(
        voucher_id, payload["is_active"], actor_id=g.user_id, request_id=g.request_id
    ), 200


@vouchers_bp.delete("/<voucher_id>")
@json_errors
def delete_voucher_route(voucher_id: str):
    return voucher_service.remove_voucher(
        voucher_id, actor_id=g.user_id, request_id=g.request_id
    ), 200


@vouchers_bp.get("/<voucher_id>/stats")
@json_errors
def voucher_stats_route(voucher_id: str):
    return voucher_service.get_voucher_stats(voucher_id), 200

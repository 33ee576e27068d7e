# Overview: Checkout orchestration; quote, create and update orders across pricing, vouchers and stock.

# backend/storefront/services/order_service.py

from __future__ import annotations

import re
from datetime import datetime

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, OrderItem, OrderStatusHistory, User
from ..models.common import new_id
from ..validation import (
    MAX_AMOUNT_CENTS,
    BadRequestError,
    ModelValidationPolicy,
    NotFoundError,
    parse_cart_items,
    validate_payload,
)
from . import notification_service
from .catalog_service import get_products_by_ids, resolve_currency
from .concurrency import atomic, run_with_retry
from .inventory_service import (
    IdempotencyKeyInUseError,
    deduct_for_order,
    get_idempotent_order_id,
    restore_for_order,
    set_idempotency_key,
)
from .order_status import CANCELLED, PENDING, ensure_transition, validate_status
from .settings_service import get_delivery_charge_cents
from .voucher_service import compute_discount_for_order, redeem_voucher
from storefront.time_utils import hours_from_now
"""
Storefront Checkout Invariants (authoritative)

Pricing:
- quote_order() and create_order() share _compute_pricing(); totals are
  computed from the database only, never from client-supplied amounts.
- total_cents = max(0, subtotal_cents - discount_cents + shipping_cents).

Checkout transaction (create_order):
1. Idempotency hit -> return the existing order; nothing is created or deducted.
2. Order + items + PENDING history row.
3. Voucher redemption (used_count += 1, REDEEMED audit).
4. Stock deduction (conditional UPDATE per product).
5. Idempotency key bound to the new order.
Any failure rolls back all five. Notifications go out only after commit.

Updates (update_order):
- Status changes are checked against order_status before any write.
- A transition to CANCELLED restores stock in the same transaction.
"""

PAYMENT_COD = "COD"
PAYMENT_BANK_DEPOSIT = "BANK_DEPOSIT"
PAYMENT_METHODS = (PAYMENT_COD, PAYMENT_BANK_DEPOSIT)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

CHECKOUT_POLICY = ModelValidationPolicy(
    writable_fields={
        "customer_email", "customer_name", "customer_phone",
        "shipping_country", "shipping_address_line1", "shipping_address_line2",
        "shipping_city", "shipping_postal_code",
        "payment_method", "payment_proof_reference",
    },
    required_on_create={"customer_email", "customer_phone"},
)

ORDER_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={"status", "assigned_to_user_id", "courier_service_name", "tracking_id"},
)

_CART_FIELDS = {"items", "voucher_code"}


# =============================================================================
# Pricing (shared by quote and create)
# =============================================================================

def _price_cart(items) -> dict:
    if not items:
        raise BadRequestError("Order must have at least one item")

    products = get_products_by_ids(item["product_id"] for item in items)
    missing = [pid for pid in dict.fromkeys(item["product_id"] for item in items) if pid not in products]
    if missing:
        raise BadRequestError(
            f"Products not found: {', '.join(missing)}", details={"product_ids": missing}
        )
    for product in products.values():
        if not product.is_active:
            raise BadRequestError(
                f'Product "{product.name}" is no longer available',
                details={"product_id": product.id},
            )

    currency = resolve_currency(products.values())

    lines = []
    subtotal = 0
    for item in items:
        product = products[item["product_id"]]
        line_total = product.price_cents * item["quantity"]
        subtotal += line_total
        lines.append({
            "product_id": product.id,
            "product_name": product.name,
            "quantity": item["quantity"],
            "unit_cents": product.price_cents,
            "line_total_cents": line_total,
        })

    return {"items": lines, "subtotal_cents": subtotal, "currency": currency}


def _compute_pricing(
    items,
    voucher_code,
    customer_user_id: str | None,
    *,
    throw_on_invalid: bool,
    request_id: str | None = None,
) -> dict:
    cart = _price_cart(items)
    shipping = get_delivery_charge_cents()
    if cart["subtotal_cents"] + shipping > MAX_AMOUNT_CENTS:
        raise BadRequestError(
            f"Order total exceeds the maximum of {MAX_AMOUNT_CENTS} cents",
            details={"subtotal_cents": cart["subtotal_cents"], "shipping_cents": shipping},
        )
    discount = compute_discount_for_order(
        voucher_code,
        items,
        customer_user_id,
        throw_on_invalid=throw_on_invalid,
        shipping_cents=shipping,
        request_id=request_id,
    )
    discount_cents = discount["discount_cents"] if discount else 0

    return {
        **cart,
        "shipping_cents": shipping,
        "discount_cents": discount_cents,
        "discount_type": discount["discount_type"] if discount else None,
        "voucher_id": discount["voucher_id"] if discount else None,
        "voucher_code": discount["voucher_code"] if discount else None,
        "total_cents": max(0, cart["subtotal_cents"] - discount_cents + shipping),
    }


def quote_order(
    items,
    voucher_code=None,
    customer_user_id: str | None = None,
    *,
    request_id: str | None = None,
) -> dict:
    """
    Server-side price preview; writes nothing but validation audit rows.

    An invalid voucher code is dropped from the quote rather than failing it.
    """
    items = parse_cart_items(items)
    pricing = _compute_pricing(
        items, voucher_code, customer_user_id, throw_on_invalid=False, request_id=request_id
    )
    pricing.pop("voucher_id")
    return pricing


# =============================================================================
# Create
# =============================================================================

def _clean_checkout_fields(data: dict) -> dict:
    unknown = sorted(set(data) - CHECKOUT_POLICY.writable_fields - _CART_FIELDS)
    if unknown:
        raise BadRequestError(f"Field not allowed: {unknown[0]}")

    fields = validate_payload(
        model=Order,
        payload={k: v for k, v in data.items() if k in CHECKOUT_POLICY.writable_fields},
        policy=CHECKOUT_POLICY,
        partial=False,
    )
    # Optional blanks are stored as NULL
    fields = {k: (v if v != "" else None) for k, v in fields.items()}

    email = fields.get("customer_email") or ""
    if not _EMAIL_RE.match(email):
        raise BadRequestError("customer_email must be a valid email address")
    if not fields.get("customer_phone"):
        raise BadRequestError("Phone is required")

    method = (fields.get("payment_method") or PAYMENT_COD).upper()
    if method not in PAYMENT_METHODS:
        raise BadRequestError(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")
    if method == PAYMENT_BANK_DEPOSIT and not fields.get("payment_proof_reference"):
        raise BadRequestError("payment_proof_reference is required for BANK_DEPOSIT orders")
    fields["payment_method"] = method

    return fields


def _load_order(order_id: str) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f'Order with id "{order_id}" not found')
    return order


def create_order(
    data: dict,
    customer_user_id: str | None = None,
    idempotency_key: str | None = None,
    *,
    request_id: str | None = None,
) -> dict:
    """
    Place an order from a cart.

    data: customer/shipping/payment fields plus "items" and optional "voucher_code".
    idempotency_key: retries with the same key inside the TTL return the
    order created by the first attempt.
    """
    if not isinstance(data, dict):
        raise BadRequestError("Invalid JSON payload")

    fields = _clean_checkout_fields(data)
    items = parse_cart_items(data.get("items"))
    key = (idempotency_key or "").strip() or None

    if key:
        existing_id = get_idempotent_order_id(key)
        if existing_id is not None:
            current_app.logger.info("Idempotent checkout replay: key=%s order_id=%s", key, existing_id)
            return _load_order(existing_id).to_dict()

    if customer_user_id and db.session.get(User, customer_user_id) is None:
        raise BadRequestError(f'User with id "{customer_user_id}" not found')

    pricing = _compute_pricing(
        items, data.get("voucher_code"), customer_user_id, throw_on_invalid=True, request_id=request_id
    )
    ttl_hours = current_app.config["IDEMPOTENCY_KEY_TTL_HOURS"]

    def _checkout() -> tuple[str, bool]:
        with atomic():
            if key:
                replay_id = get_idempotent_order_id(key)
                if replay_id is not None:
                    return replay_id, False

            order = Order(
                id=new_id(),
                status=PENDING,
                subtotal_cents=pricing["subtotal_cents"],
                shipping_cents=pricing["shipping_cents"],
                discount_cents=pricing["discount_cents"],
                discount_type=pricing["discount_type"],
                total_cents=pricing["total_cents"],
                currency=pricing["currency"],
                voucher_id=pricing["voucher_id"],
                voucher_code=pricing["voucher_code"],
                customer_user_id=customer_user_id,
                **fields,
            )
            db.session.add(order)
            for line in pricing["items"]:
                db.session.add(OrderItem(
                    order_id=order.id,
                    product_id=line["product_id"],
                    quantity=line["quantity"],
                    unit_cents=line["unit_cents"],
                ))
            db.session.add(OrderStatusHistory(order_id=order.id, status=PENDING))
            db.session.flush()

            if pricing["voucher_id"]:
                redeem_voucher(
                    voucher_id=pricing["voucher_id"],
                    order_id=order.id,
                    user_id=customer_user_id,
                    discount_cents=pricing["discount_cents"],
                    request_id=request_id,
                )

            deduct_for_order(order.id, items)

            if key:
                set_idempotency_key(key, order.id, hours_from_now(ttl_hours))
            return order.id, True

    try:
        order_id, created = run_with_retry(_checkout)
    except (IntegrityError, IdempotencyKeyInUseError):
        # Lost a race on the same idempotency key: resolve to the winner.
        if not key:
            raise
        winner_id = get_idempotent_order_id(key)
        if winner_id is None:
            raise
        current_app.logger.info("Idempotent checkout resolved to concurrent order: key=%s order_id=%s", key, winner_id)
        order_id, created = winner_id, False

    snapshot = _load_order(order_id).to_dict()
    if created:
        current_app.logger.info(
            "Order created: order_id=%s total_cents=%s items=%d",
            order_id, snapshot["total_cents"], len(snapshot["items"]),
        )
        notification_service.dispatch(notification_service.send_order_confirmation, snapshot)
    return snapshot


# =============================================================================
# Update
# =============================================================================

def update_order(order_id: str, data: dict) -> dict:
    """
    Staff update: status transition, assignment, courier details.

    Raises NotFoundError for an unknown order, InvalidTransitionError for a
    disallowed status change (nothing is written in that case).
    """
    patch = validate_payload(model=Order, payload=data, policy=ORDER_UPDATE_POLICY, partial=True)
    if "status" in patch:
        if patch["status"] is None:
            raise BadRequestError("status cannot be null")
        patch["status"] = validate_status(patch["status"])
    for key in ("assigned_to_user_id", "courier_service_name", "tracking_id"):
        if patch.get(key) == "":
            patch[key] = None

    def _update() -> bool:
        with atomic():
            order = _load_order(order_id)
            new_status = patch.get("status")
            status_changed = new_status is not None and new_status != order.status
            if status_changed:
                ensure_transition(order.status, new_status)

            assignee = patch.get("assigned_to_user_id")
            if assignee and db.session.get(User, assignee) is None:
                raise BadRequestError(f'User with id "{assignee}" not found')

            if status_changed:
                order.status = new_status
                db.session.add(OrderStatusHistory(order_id=order.id, status=new_status))
                if new_status == CANCELLED:
                    restore_for_order(order.id)

            for key in ("assigned_to_user_id", "courier_service_name", "tracking_id"):
                if key in patch:
                    setattr(order, key, patch[key])
            db.session.flush()
            return status_changed

    status_changed = run_with_retry(_update)

    snapshot = _load_order(order_id).to_dict()
    if status_changed:
        history = snapshot["status_history"]
        status_updated_at = history[-1]["created_at"] if history else None
        notification_service.dispatch(
            notification_service.send_order_status_change,
            snapshot,
            snapshot["status"],
            status_updated_at,
        )
    return snapshot


# =============================================================================
# Reads
# =============================================================================

def get_order(order_id: str) -> dict:
    return _load_order(order_id).to_dict()


def get_customer_order(customer_user_id: str, order_id: str) -> dict:
    """Another customer's order is reported as missing, not forbidden."""
    order = (
        db.session.query(Order)
        .filter(Order.id == order_id, Order.customer_user_id == customer_user_id)
        .first()
    )
    if order is None:
        raise NotFoundError(f'Order with id "{order_id}" not found')
    return order.to_dict()


def list_orders(
    *,
    page: int = 1,
    limit: int = 20,
    status: str | None = None,
    customer_email: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    assigned_to_user_id: str | None = None,
    customer_user_id: str | None = None,
) -> dict:
    q = db.session.query(Order)

    if status:
        q = q.filter(Order.status == validate_status(status))
    if customer_email:
        q = q.filter(func.lower(Order.customer_email) == customer_email.strip().lower())
    if date_from is not None:
        q = q.filter(Order.created_at >= date_from)
    if date_to is not None:
        q = q.filter(Order.created_at <= date_to)
    if assigned_to_user_id:
        if db.session.get(User, assigned_to_user_id) is None:
            raise BadRequestError("No user found with the given assigned staff ID.")
        q = q.filter(Order.assigned_to_user_id == assigned_to_user_id)
    if customer_user_id:
        q = q.filter(Order.customer_user_id == customer_user_id)

    total = q.count()
    rows = (
        q.order_by(Order.created_at.desc(), Order.id)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"data": [o.to_dict() for o in rows], "total": total, "page": page, "limit": limit}

# Overview: Voucher validation pipeline, discount math, redemption and admin management.

# backend/storefront/services/voucher_service.py

from __future__ import annotations

from flask import current_app
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, Voucher, VoucherRedemption
from ..validation import (
    BadRequestError,
    ConflictError,
    ModelValidationPolicy,
    NotFoundError,
    validate_payload,
)
from . import voucher_audit_service as audit
from .catalog_service import get_products_by_ids, resolve_currency
from .concurrency import atomic, lock_for_update, run_with_retry
from .settings_service import get_delivery_charge_cents
from storefront.time_utils import utcnow
"""
Storefront Voucher Invariants (authoritative)

Validation:
- validate_voucher() is a read-only pipeline with a fixed check order; the
  first failing check wins. Failures are returned as a result dict
  ({"valid": False, "error_code", "message"}), never raised.
- Every outcome writes a best-effort audit row (VALIDATED / VALIDATION_FAILED).

Discount:
- One computation function per voucher type; the discount never exceeds
  the order total (subtotal + shipping), so totals never go negative.

Redemption:
- used_count is incremented by a conditional UPDATE in the order's
  transaction; the global limit is re-checked in the WHERE clause so two
  concurrent checkouts cannot both take the last use.

Admin:
- create/update/status/remove write a transactional audit row; if the
  audit write fails the mutation is rolled back with it.
"""

PERCENTAGE = "PERCENTAGE"
FIXED_AMOUNT = "FIXED_AMOUNT"
FREE_SHIPPING = "FREE_SHIPPING"
VOUCHER_TYPES = (PERCENTAGE, FIXED_AMOUNT, FREE_SHIPPING)

VOUCHER_ERROR_CODES = {
    "NOT_FOUND": "VOUCHER_NOT_FOUND",
    "EXPIRED": "VOUCHER_EXPIRED",
    "NOT_STARTED": "VOUCHER_NOT_STARTED",
    "INACTIVE": "VOUCHER_INACTIVE",
    "USAGE_LIMIT_REACHED": "VOUCHER_USAGE_LIMIT_REACHED",
    "USER_LIMIT_REACHED": "VOUCHER_USER_LIMIT_REACHED",
    "MIN_ORDER_NOT_MET": "VOUCHER_MIN_ORDER_NOT_MET",
    "NO_ELIGIBLE_PRODUCTS": "VOUCHER_NO_ELIGIBLE_PRODUCTS",
}

STATUS_FILTERS = ("active", "expired", "upcoming")

VOUCHER_POLICY = ModelValidationPolicy(
    writable_fields={
        "code", "type", "value", "min_order_value_cents", "max_discount_cents",
        "start_date", "expiry_date", "usage_limit_global", "usage_limit_per_user",
        "applicable_product_ids", "applicable_category_ids", "is_active",
    },
    required_on_create={"code", "type", "value", "start_date", "expiry_date"},
)


def normalize_code(code) -> str:
    # Stored form; lookups compare against it directly.
    return str(code).strip().upper() if code is not None else ""


# =============================================================================
# Discount computation (one function per voucher type)
# =============================================================================

def _percentage_discount(voucher: Voucher, eligible_cents: int, shipping_cents: int, order_total_cents: int) -> int:
    raw = (eligible_cents * voucher.value) // 100
    if voucher.max_discount_cents is not None:
        raw = min(raw, voucher.max_discount_cents)
    return min(raw, order_total_cents)


def _fixed_amount_discount(voucher: Voucher, eligible_cents: int, shipping_cents: int, order_total_cents: int) -> int:
    return min(voucher.value, eligible_cents, order_total_cents)


def _free_shipping_discount(voucher: Voucher, eligible_cents: int, shipping_cents: int, order_total_cents: int) -> int:
    if shipping_cents <= 0:
        return 0
    return min(shipping_cents, order_total_cents)


DISCOUNT_CALCULATORS = {
    PERCENTAGE: _percentage_discount,
    FIXED_AMOUNT: _fixed_amount_discount,
    FREE_SHIPPING: _free_shipping_discount,
}


def compute_discount_cents(voucher: Voucher, eligible_cents: int, shipping_cents: int, order_total_cents: int) -> int:
    calculator = DISCOUNT_CALCULATORS.get(voucher.type)
    if calculator is None:
        raise ValueError(f"Unknown voucher type {voucher.type!r}")
    return max(0, calculator(voucher, eligible_cents, shipping_cents, order_total_cents))


def _item_is_eligible(product, product_filter: set[str] | None, category_filter: set[str] | None) -> bool:
    if product_filter and product.id not in product_filter:
        return False
    if category_filter and not category_filter.intersection(product.category_ids):
        return False
    return True


def _cart_subtotals(voucher: Voucher, items, products) -> tuple[int, int]:
    """(full subtotal, eligible subtotal) in cents. Unknown product ids are ignored."""
    product_filter = set(voucher.applicable_product_ids or []) or None
    category_filter = set(voucher.applicable_category_ids or []) or None

    subtotal = 0
    eligible = 0
    for item in items:
        product = products.get(item["product_id"])
        if product is None:
            continue
        line = product.price_cents * item["quantity"]
        subtotal += line
        if _item_is_eligible(product, product_filter, category_filter):
            eligible += line
    return subtotal, eligible


# =============================================================================
# Validation pipeline
# =============================================================================

def _find_by_code(code: str) -> Voucher | None:
    return (
        db.session.query(Voucher)
        .filter(Voucher.code == code, Voucher.deleted_at.is_(None))
        .first()
    )


def _user_redemption_count(voucher_id: str, user_id: str) -> int:
    return (
        db.session.query(func.count(VoucherRedemption.id))
        .filter_by(voucher_id=voucher_id, user_id=user_id)
        .scalar()
    ) or 0


def _failure(error_key: str, message: str) -> dict:
    return {"valid": False, "error_code": VOUCHER_ERROR_CODES[error_key], "message": message}


def _run_checks(voucher: Voucher | None, code: str, items, products, customer_user_id, currency) -> dict | None:
    if not code:
        return _failure("NOT_FOUND", "Voucher code is required.")
    if voucher is None:
        return _failure("NOT_FOUND", "Invalid voucher code.")

    now = utcnow()
    if now > voucher.expiry_date:
        return _failure("EXPIRED", "This voucher has expired.")
    if now < voucher.start_date:
        return _failure("NOT_STARTED", "This voucher is not yet valid.")
    if not voucher.is_active:
        return _failure("INACTIVE", "This voucher is no longer active.")

    if voucher.usage_limit_global is not None and voucher.used_count >= voucher.usage_limit_global:
        return _failure("USAGE_LIMIT_REACHED", "This voucher has reached its usage limit.")

    if voucher.usage_limit_per_user is not None and customer_user_id:
        if _user_redemption_count(voucher.id, customer_user_id) >= voucher.usage_limit_per_user:
            return _failure(
                "USER_LIMIT_REACHED",
                "You have already used this voucher the maximum number of times.",
            )

    subtotal, eligible = _cart_subtotals(voucher, items, products)
    minimum = voucher.min_order_value_cents or 0
    if subtotal < minimum:
        return _failure("MIN_ORDER_NOT_MET", f"Minimum order value of {minimum / 100:.0f} {currency} required.")

    restricted = bool(voucher.applicable_product_ids) or bool(voucher.applicable_category_ids)
    if restricted and eligible == 0:
        return _failure("NO_ELIGIBLE_PRODUCTS", "No items in your cart are eligible for this voucher.")

    return None


def validate_voucher(
    code,
    items,
    customer_user_id: str | None = None,
    *,
    shipping_cents: int | None = None,
    request_id: str | None = None,
) -> dict:
    """
    Check a voucher code against a cart and price the discount.

    items: [{"product_id": str, "quantity": int}, ...]
    shipping_cents: delivery charge to price against; read from settings when omitted.

    Returns {"valid": True, voucher_id, code, type, discount_cents, shipping_cents,
    total_cents, subtotal_cents, currency} or {"valid": False, error_code, message}.
    """
    normalized = normalize_code(code)
    products = get_products_by_ids(item["product_id"] for item in items)
    currency = resolve_currency(products.values())

    voucher = _find_by_code(normalized) if normalized else None
    failure = _run_checks(voucher, normalized, items, products, customer_user_id, currency)

    if failure is not None:
        current_app.logger.info(
            "Voucher validation failed: code=%s error=%s", normalized, failure["error_code"]
        )
        audit.publish_best_effort(
            action=audit.ACTION_VALIDATION_FAILED,
            actor_type=audit.ACTOR_CUSTOMER,
            actor_id=customer_user_id,
            voucher_id=voucher.id if voucher is not None else None,
            code=normalized or None,
            result=audit.RESULT_INVALID,
            error_code=failure["error_code"],
            metadata={"item_count": len(items)},
            request_id=request_id,
        )
        return failure

    if shipping_cents is None:
        shipping_cents = get_delivery_charge_cents()
    subtotal, eligible = _cart_subtotals(voucher, items, products)
    order_total = subtotal + shipping_cents
    discount = compute_discount_cents(voucher, eligible, shipping_cents, order_total)
    total = max(0, order_total - discount)

    result = {
        "valid": True,
        "voucher_id": voucher.id,
        "code": voucher.code,
        "type": voucher.type,
        "discount_cents": discount,
        "shipping_cents": shipping_cents,
        "total_cents": total,
        "subtotal_cents": subtotal,
        "currency": currency,
    }

    current_app.logger.info("Voucher validated: code=%s discount_cents=%d", voucher.code, discount)
    audit.publish_best_effort(
        action=audit.ACTION_VALIDATED,
        actor_type=audit.ACTOR_CUSTOMER,
        actor_id=customer_user_id,
        voucher_id=result["voucher_id"],
        code=result["code"],
        result=audit.RESULT_VALID,
        metadata={"discount_cents": discount, "subtotal_cents": subtotal},
        request_id=request_id,
    )
    return result


def compute_discount_for_order(
    code,
    items,
    customer_user_id: str | None = None,
    *,
    throw_on_invalid: bool = False,
    shipping_cents: int | None = None,
    request_id: str | None = None,
) -> dict | None:
    """
    Discount to apply to a quote or an order, or None when no code was given.

    An invalid code yields None, or BadRequestError with the validation
    message when throw_on_invalid is set (checkout).
    """
    if not normalize_code(code):
        return None

    result = validate_voucher(
        code,
        items,
        customer_user_id,
        shipping_cents=shipping_cents,
        request_id=request_id,
    )
    if not result["valid"]:
        if throw_on_invalid:
            raise BadRequestError(
                result["message"] or "Voucher is no longer valid. Please remove it and try again.",
                details={"error_code": result["error_code"]},
            )
        return None

    return {
        "voucher_id": result["voucher_id"],
        "voucher_code": result["code"],
        "discount_type": result["type"],
        "discount_cents": result["discount_cents"],
    }


# =============================================================================
# Redemption (runs inside the checkout transaction)
# =============================================================================

def redeem_voucher(
    *,
    voucher_id: str,
    order_id: str,
    user_id: str | None = None,
    discount_cents: int = 0,
    request_id: str | None = None,
) -> VoucherRedemption:
    """
    Record a redemption and bump used_count. Flushes; the caller commits.

    Raises BadRequestError when the voucher was used up (or deleted) between
    validation and checkout. The caller must roll back.
    """
    # Locked so the per-user count below is serialized per voucher
    voucher = lock_for_update(
        db.session.query(Voucher).filter(Voucher.id == voucher_id).populate_existing()
    ).first()
    if voucher is None or voucher.deleted_at is not None:
        raise BadRequestError("Voucher is no longer valid. Please remove it and try again.")

    if voucher.usage_limit_per_user is not None and user_id:
        if _user_redemption_count(voucher_id, user_id) >= voucher.usage_limit_per_user:
            raise BadRequestError(
                "You have already used this voucher the maximum number of times.",
                details={"error_code": VOUCHER_ERROR_CODES["USER_LIMIT_REACHED"]},
            )

    stmt = (
        update(Voucher)
        .where(
            Voucher.id == voucher_id,
            Voucher.deleted_at.is_(None),
            or_(
                Voucher.usage_limit_global.is_(None),
                Voucher.used_count < Voucher.usage_limit_global,
            ),
        )
        .values(
            used_count=Voucher.used_count + 1,
            version_id=Voucher.version_id + 1,
            updated_at=utcnow(),
        )
    )
    if not db.session.execute(stmt).rowcount:
        raise BadRequestError(
            "This voucher has reached its usage limit.",
            details={"error_code": VOUCHER_ERROR_CODES["USAGE_LIMIT_REACHED"]},
        )

    redemption = VoucherRedemption(voucher_id=voucher_id, order_id=order_id, user_id=user_id)
    db.session.add(redemption)
    db.session.flush()

    audit.publish(
        action=audit.ACTION_REDEEMED,
        actor_type=audit.ACTOR_CUSTOMER,
        actor_id=user_id,
        voucher_id=voucher_id,
        order_id=order_id,
        code=voucher.code,
        result=audit.RESULT_VALID,
        metadata={"discount_cents": discount_cents},
        request_id=request_id,
        in_transaction=True,
    )
    return redemption


# =============================================================================
# Admin management
# =============================================================================

def _get_live_voucher(voucher_id: str) -> Voucher:
    voucher = (
        db.session.query(Voucher)
        .filter(Voucher.id == voucher_id, Voucher.deleted_at.is_(None))
        .first()
    )
    if voucher is None:
        raise NotFoundError("Voucher not found")
    return voucher


def _ensure_code_available(code: str, exclude_id: str | None = None) -> None:
    q = db.session.query(Voucher.id).filter(Voucher.code == code, Voucher.deleted_at.is_(None))
    if exclude_id is not None:
        q = q.filter(Voucher.id != exclude_id)
    if q.first() is not None:
        raise ConflictError(f'Voucher with code "{code}" already exists')


def _enforce_voucher_rules(values: dict) -> None:
    """values: the effective field values after the patch is applied."""
    if not values.get("code"):
        raise BadRequestError("code cannot be blank")

    voucher_type = values.get("type")
    if voucher_type not in VOUCHER_TYPES:
        raise BadRequestError(f"type must be one of: {', '.join(VOUCHER_TYPES)}")

    value = values.get("value") or 0
    if voucher_type == PERCENTAGE and not 1 <= value <= 100:
        raise BadRequestError("Percentage value must be between 1 and 100")
    if voucher_type == FIXED_AMOUNT and value < 1:
        raise BadRequestError("Fixed amount must be positive")
    if value < 0:
        raise BadRequestError("value must be >= 0")

    for key in ("min_order_value_cents", "max_discount_cents"):
        amount = values.get(key)
        if amount is not None and amount < 0:
            raise BadRequestError(f"{key} must be >= 0")
    for key in ("usage_limit_global", "usage_limit_per_user"):
        limit = values.get(key)
        if limit is not None and limit < 1:
            raise BadRequestError(f"{key} must be >= 1")

    if values["expiry_date"] <= values["start_date"]:
        raise BadRequestError("Expiry date must be after start date")


def _normalize_patch(patch: dict) -> dict:
    if "code" in patch and patch["code"] is not None:
        patch["code"] = normalize_code(patch["code"])
    if "type" in patch and patch["type"] is not None:
        patch["type"] = patch["type"].upper()
    for key in ("applicable_product_ids", "applicable_category_ids"):
        if key in patch and not patch[key]:
            patch[key] = None
    return patch


def create_voucher(payload: dict, *, actor_id: str | None = None, request_id: str | None = None) -> dict:
    patch = _normalize_patch(
        validate_payload(model=Voucher, payload=payload, policy=VOUCHER_POLICY, partial=False)
    )
    values = {
        "min_order_value_cents": 0,
        "is_active": True,
        **patch,
    }
    _enforce_voucher_rules(values)

    def _create():
        with atomic():
            _ensure_code_available(values["code"])
            voucher = Voucher(**values)
            db.session.add(voucher)
            db.session.flush()
            audit.publish(
                action=audit.ACTION_CREATED,
                actor_type=audit.ACTOR_ADMIN,
                actor_id=actor_id,
                voucher_id=voucher.id,
                code=voucher.code,
                metadata={"type": voucher.type, "value": voucher.value},
                request_id=request_id,
                in_transaction=True,
            )
        return voucher.to_dict()

    try:
        return run_with_retry(_create)
    except IntegrityError:
        # A concurrent create took the code between the check and the insert
        raise ConflictError(f'Voucher with code "{values["code"]}" already exists')


_ADMIN_FIELDS = tuple(sorted(VOUCHER_POLICY.writable_fields))


def update_voucher(
    voucher_id: str,
    payload: dict,
    *,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> dict:
    patch = _normalize_patch(
        validate_payload(model=Voucher, payload=payload, policy=VOUCHER_POLICY, partial=True)
    )

    def _update():
        with atomic():
            voucher = _get_live_voucher(voucher_id)
            values = {key: getattr(voucher, key) for key in _ADMIN_FIELDS}
            values.update(patch)
            _enforce_voucher_rules(values)
            if "code" in patch and patch["code"] != voucher.code:
                _ensure_code_available(patch["code"], exclude_id=voucher.id)

            changed = sorted(k for k, v in patch.items() if getattr(voucher, k) != v)
            for key, value in patch.items():
                setattr(voucher, key, value)
            db.session.flush()
            audit.publish(
                action=audit.ACTION_UPDATED,
                actor_type=audit.ACTOR_ADMIN,
                actor_id=actor_id,
                voucher_id=voucher.id,
                code=voucher.code,
                metadata={"changed_fields": changed},
                request_id=request_id,
                in_transaction=True,
            )
        return voucher.to_dict()

    try:
        return run_with_retry(_update)
    except IntegrityError:
        if not patch.get("code"):
            raise
        raise ConflictError(f'Voucher with code "{patch["code"]}" already exists')


def update_voucher_status(
    voucher_id: str,
    is_active,
    *,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> dict:
    if not isinstance(is_active, bool):
        raise BadRequestError("is_active must be a boolean")

    def _update_status():
        with atomic():
            voucher = _get_live_voucher(voucher_id)
            voucher.is_active = is_active
            db.session.flush()
            audit.publish(
                action=audit.ACTION_ACTIVATED if is_active else audit.ACTION_DEACTIVATED,
                actor_type=audit.ACTOR_ADMIN,
                actor_id=actor_id,
                voucher_id=voucher.id,
                code=voucher.code,
                request_id=request_id,
                in_transaction=True,
            )
        return voucher.to_dict()

    return run_with_retry(_update_status)


def remove_voucher(voucher_id: str, *, actor_id: str | None = None, request_id: str | None = None) -> dict:
    """Soft delete: the code becomes reusable and the voucher stops validating."""

    def _remove():
        with atomic():
            voucher = _get_live_voucher(voucher_id)
            voucher.deleted_at = utcnow()
            db.session.flush()
            audit.publish(
                action=audit.ACTION_DELETED,
                actor_type=audit.ACTOR_ADMIN,
                actor_id=actor_id,
                voucher_id=voucher.id,
                code=voucher.code,
                request_id=request_id,
                in_transaction=True,
            )
        return {"success": True}

    return run_with_retry(_remove)


def get_voucher(voucher_id: str) -> dict:
    return _get_live_voucher(voucher_id).to_dict()


def list_vouchers(
    *,
    page: int = 1,
    limit: int = 20,
    search: str | None = None,
    status: str | None = None,
) -> dict:
    q = db.session.query(Voucher).filter(Voucher.deleted_at.is_(None))

    if search and search.strip():
        term = search.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        q = q.filter(Voucher.code.ilike(f"%{term}%", escape="\\"))

    if status:
        status = status.strip().lower()
        if status not in STATUS_FILTERS:
            raise BadRequestError(f"status must be one of: {', '.join(STATUS_FILTERS)}")
        now = utcnow()
        if status == "active":
            q = q.filter(Voucher.is_active.is_(True), Voucher.start_date <= now, Voucher.expiry_date >= now)
        elif status == "expired":
            q = q.filter(Voucher.expiry_date < now)
        else:
            q = q.filter(Voucher.start_date > now)

    total = q.count()
    rows = (
        q.order_by(Voucher.created_at.desc(), Voucher.code)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"data": [v.to_dict() for v in rows], "total": total, "page": page, "limit": limit}


def get_voucher_stats(voucher_id: str) -> dict:
    voucher = _get_live_voucher(voucher_id)

    total_redemptions, revenue_impact = (
        db.session.query(
            func.count(VoucherRedemption.id),
            func.coalesce(func.sum(Order.discount_cents), 0),
        )
        .join(Order, Order.id == VoucherRedemption.order_id)
        .filter(VoucherRedemption.voucher_id == voucher_id)
        .one()
    )

    remaining = None
    if voucher.usage_limit_global is not None:
        remaining = max(0, voucher.usage_limit_global - voucher.used_count)

    return {
        "total_redemptions": int(total_redemptions),
        "revenue_impact_cents": int(revenue_impact),
        "remaining_uses": remaining,
        "used_count": voucher.used_count,
        "usage_limit_global": voucher.usage_limit_global,
    }

# Overview: Service-layer operations for inventory; atomic stock counter mutations and their ledger.

# backend/storefront/services/inventory_service.py

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, update

from ..extensions import db
from ..models import Product, InventoryMovement, OrderItem, IdempotencyKey
from ..models.inventory import MOVEMENT_SALE, MOVEMENT_RESTORE, MOVEMENT_ADJUSTMENT
from ..validation import BadRequestError, ConflictError, NotFoundError
from storefront.time_utils import utcnow
"""
Storefront Inventory Invariants (authoritative)

Stock model:
- Product.stock_quantity is a stored counter, never negative.
- Every mutation of the counter appends exactly one InventoryMovement row
  in the same DB transaction (SALE, RESTORE or ADJUSTMENT).

Concurrency:
- Decrements are a single conditional statement:
    UPDATE products SET stock_quantity = stock_quantity - :qty
    WHERE id = :id AND stock_quantity >= :qty
  Zero affected rows means insufficient stock. Two checkouts racing for the
  last unit cannot both succeed; no row lock or SERIALIZABLE is needed.
- Increments are unconditional atomic UPDATEs (stock_quantity + :qty).

Transactions:
- Nothing in this module commits. Callers own the transaction boundary
  (order_service, routes, CLI) and roll back everything on any error,
  including deductions already applied for earlier lines of the same order.
"""


class InsufficientStockError(BadRequestError):
    """Raised when a decrement would drive stock_quantity below zero."""

    def __init__(
        self,
        *,
        product_id: str,
        product_name: str | None,
        available: int,
        requested: int,
        message: str | None = None,
    ):
        if message is None:
            if product_name is not None:
                message = (
                    f'Insufficient stock for "{product_name}". '
                    f"Available: {available}, requested: {requested}."
                )
            else:
                message = f"Insufficient stock for product {product_id}"
        super().__init__(
            message,
            details={
                "product_id": product_id,
                "product_name": product_name,
                "available": available,
                "requested": requested,
            },
        )
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        self.requested = requested


class IdempotencyKeyInUseError(ConflictError):
    """A live idempotency key already points at another order."""


def _aggregate_quantities(items) -> dict[str, int]:
    totals: dict[str, int] = {}
    for item in items:
        quantity = item["quantity"]
        if quantity <= 0:
            continue
        product_id = item["product_id"]
        totals[product_id] = totals.get(product_id, 0) + quantity
    return totals


def _current_stock(product_id: str) -> int | None:
    return (
        db.session.query(Product.stock_quantity)
        .filter(Product.id == product_id)
        .scalar()
    )


def _decrement(product_id: str, quantity: int) -> bool:
    """Conditional atomic decrement. Returns False when stock is insufficient."""
    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.stock_quantity >= quantity)
        .values(stock_quantity=Product.stock_quantity - quantity, updated_at=utcnow())
    )
    result = db.session.execute(stmt)
    return bool(result.rowcount)


def _increment(product_id: str, quantity: int) -> bool:
    stmt = (
        update(Product)
        .where(Product.id == product_id)
        .values(stock_quantity=Product.stock_quantity + quantity, updated_at=utcnow())
    )
    result = db.session.execute(stmt)
    return bool(result.rowcount)


def _insufficient(product_id: str, requested: int) -> InsufficientStockError:
    row = (
        db.session.query(Product.name, Product.stock_quantity)
        .filter(Product.id == product_id)
        .first()
    )
    if row is None:
        return InsufficientStockError(
            product_id=product_id, product_name=None, available=0, requested=requested
        )
    return InsufficientStockError(
        product_id=product_id,
        product_name=row.name,
        available=row.stock_quantity,
        requested=requested,
    )


def deduct_for_order(order_id: str, items) -> list[InventoryMovement]:
    """
    Deduct stock for every line of an order.

    items: iterable of {"product_id": str, "quantity": int}. Duplicate
    product ids are summed; non-positive quantities are skipped.

    Raises InsufficientStockError on the first product that cannot be
    covered. The caller MUST roll back: earlier products of the same call
    may already have been decremented inside the open transaction.
    """
    movements = []
    for product_id, quantity in _aggregate_quantities(items).items():
        if not _decrement(product_id, quantity):
            raise _insufficient(product_id, quantity)

        movement = InventoryMovement(
            product_id=product_id,
            order_id=order_id,
            type=MOVEMENT_SALE,
            quantity_delta=-quantity,
            reference=f"Order {order_id}",
            stock_after=_current_stock(product_id),
        )
        db.session.add(movement)
        movements.append(movement)

    db.session.flush()
    return movements


def has_restore(order_id: str) -> bool:
    return (
        db.session.query(InventoryMovement.id)
        .filter_by(order_id=order_id, type=MOVEMENT_RESTORE)
        .first()
        is not None
    )


def restore_for_order(order_id: str) -> list[InventoryMovement]:
    """
    Put an order's units back on the shelf (cancellation).

    Idempotent: an existing RESTORE movement for order_id means the order
    was already restored and nothing is credited again.
    """
    if has_restore(order_id):
        return []

    rows = (
        db.session.query(OrderItem.product_id, func.sum(OrderItem.quantity))
        .filter(OrderItem.order_id == order_id)
        .group_by(OrderItem.product_id)
        .order_by(OrderItem.product_id)
        .all()
    )

    movements = []
    for product_id, quantity in rows:
        quantity = int(quantity or 0)
        if quantity <= 0:
            continue
        if not _increment(product_id, quantity):
            raise NotFoundError(f"Product {product_id} not found")
        movement = InventoryMovement(
            product_id=product_id,
            order_id=order_id,
            type=MOVEMENT_RESTORE,
            quantity_delta=quantity,
            reference=f"Order {order_id} cancelled",
            stock_after=_current_stock(product_id),
        )
        db.session.add(movement)
        movements.append(movement)

    db.session.flush()
    return movements


def adjust_stock(
    product_id: str,
    quantity_delta: int,
    reference: str,
    performed_by_user_id: str | None = None,
) -> InventoryMovement | None:
    """
    Manual admin correction. Positive adds, negative subtracts, zero is a no-op.

    A negative delta uses the same conditional decrement as checkout and
    fails with InsufficientStockError rather than go below zero.
    """
    if quantity_delta == 0:
        return None

    if _current_stock(product_id) is None:
        raise NotFoundError(f"Product with id \"{product_id}\" not found")

    if quantity_delta > 0:
        _increment(product_id, quantity_delta)
    elif not _decrement(product_id, -quantity_delta):
        row = (
            db.session.query(Product.name, Product.stock_quantity)
            .filter(Product.id == product_id)
            .one()
        )
        raise InsufficientStockError(
            product_id=product_id,
            product_name=row.name,
            available=row.stock_quantity,
            requested=-quantity_delta,
            message=f'Cannot adjust by {quantity_delta}: "{row.name}" has only {row.stock_quantity} in stock.',
        )

    movement = InventoryMovement(
        product_id=product_id,
        type=MOVEMENT_ADJUSTMENT,
        quantity_delta=quantity_delta,
        reference=reference,
        performed_by_user_id=performed_by_user_id,
        stock_after=_current_stock(product_id),
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def get_movements(product_id: str, *, page: int = 1, limit: int = 20) -> dict:
    """Paginated movement log for a product, newest first."""
    page = max(1, page)
    limit = min(50, max(1, limit))

    if _current_stock(product_id) is None:
        raise NotFoundError(f"Product with id \"{product_id}\" not found")

    q = db.session.query(InventoryMovement).filter_by(product_id=product_id)
    total = q.count()
    rows = (
        q.order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"data": [m.to_dict() for m in rows], "total": total, "page": page, "limit": limit}


# =============================================================================
# Idempotency keys
# =============================================================================

def get_idempotent_order_id(key: str) -> str | None:
    """Return the order id for a live key; a missing or expired key is a miss."""
    row = db.session.query(IdempotencyKey).filter_by(key=key).first()
    if row is None or row.order_id is None:
        return None
    if row.expires_at <= utcnow():
        return None
    return row.order_id


def set_idempotency_key(key: str, order_id: str, expires_at: datetime) -> IdempotencyKey:
    """
    Bind key to order_id. Call only after the order and its deduction have
    succeeded, inside the same transaction, so both commit together.

    An expired row for the same key is reused. A live row pointing elsewhere
    raises IdempotencyKeyInUseError; a concurrent insert of the same key
    surfaces as IntegrityError at flush.
    """
    row = db.session.query(IdempotencyKey).filter_by(key=key).first()
    if row is not None:
        if row.expires_at > utcnow() and row.order_id not in (None, order_id):
            raise IdempotencyKeyInUseError(
                "Idempotency key is already bound to another order",
                details={"order_id": row.order_id},
            )
        row.order_id = order_id
        row.created_at = utcnow()
        row.expires_at = expires_at
    else:
        row = IdempotencyKey(key=key, order_id=order_id, expires_at=expires_at)
        db.session.add(row)
    db.session.flush()
    return row


def purge_expired_idempotency_keys() -> int:
    """Delete keys past expiry. Returns number of rows removed."""
    deleted = (
        db.session.query(IdempotencyKey)
        .filter(IdempotencyKey.expires_at <= utcnow())
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return deleted

from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z, utcnow
from .common import new_id


class Order(db.Model):
    """
    Customer order created by one checkout transaction.

    WHY: Orders are never deleted. The only soft end-of-life is status
    CANCELLED, reached through order_service.update_order, which consults
    order_status.can_transition before any status write.

    PRICING SNAPSHOT:
    subtotal/shipping/discount/total are captured at checkout and never
    recomputed. total_cents = max(0, subtotal_cents - discount_cents + shipping_cents).
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        db.CheckConstraint("total_cents >= 0", name="ck_orders_total_non_negative"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    # Pricing (all amounts in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_type = db.Column(db.String(32), nullable=True)
    total_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)

    voucher_id = db.Column(db.String(36), db.ForeignKey("vouchers.id"), nullable=True, index=True)
    voucher_code = db.Column(db.String(64), nullable=True)

    # Customer identity
    customer_email = db.Column(db.String(255), nullable=False, index=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(64), nullable=True)
    customer_user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)

    shipping_country = db.Column(db.String(128), nullable=True)
    shipping_address_line1 = db.Column(db.String(255), nullable=True)
    shipping_address_line2 = db.Column(db.String(255), nullable=True)
    shipping_city = db.Column(db.String(128), nullable=True)
    shipping_postal_code = db.Column(db.String(32), nullable=True)

    payment_method = db.Column(db.String(16), nullable=False, default="COD")  # COD, BANK_DEPOSIT
    payment_proof_reference = db.Column(db.String(255), nullable=True)

    # Fulfillment (set by staff after checkout)
    courier_service_name = db.Column(db.String(128), nullable=True)
    tracking_id = db.Column(db.String(128), nullable=True)
    assigned_to_user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy="selectin",
        order_by="OrderItem.id",
    )
    status_history = db.relationship(
        "OrderStatusHistory",
        backref="order",
        lazy="selectin",
        order_by="OrderStatusHistory.id",
    )
    assigned_to = db.relationship("User", foreign_keys=[assigned_to_user_id])

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status} total_cents={self.total_cents}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "shipping_cents": self.shipping_cents,
            "discount_cents": self.discount_cents,
            "discount_type": self.discount_type,
            "total_cents": self.total_cents,
            "currency": self.currency,
            "voucher_id": self.voucher_id,
            "voucher_code": self.voucher_code,
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "customer_user_id": self.customer_user_id,
            "shipping_country": self.shipping_country,
            "shipping_address_line1": self.shipping_address_line1,
            "shipping_address_line2": self.shipping_address_line2,
            "shipping_city": self.shipping_city,
            "shipping_postal_code": self.shipping_postal_code,
            "payment_method": self.payment_method,
            "payment_proof_reference": self.payment_proof_reference,
            "courier_service_name": self.courier_service_name,
            "tracking_id": self.tracking_id,
            "assigned_to_user_id": self.assigned_to_user_id,
            "assigned_to_user_name": self.assigned_to.name if self.assigned_to else None,
            "items": [item.to_dict() for item in self.items],
            "status_history": [entry.to_dict() for entry in self.status_history],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OrderItem(db.Model):
    """
    Line item captured at checkout.

    IMMUTABLE: unit_cents is the price at order time; later catalog price
    changes never touch historical orders.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_cents = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    product = db.relationship("Product", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "unit_cents": self.unit_cents,
            "line_total_cents": self.unit_cents * self.quantity,
        }


class OrderStatusHistory(db.Model):
    """Append-only: one row per status transition, including the initial PENDING."""
    __tablename__ = "order_status_history"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class IdempotencyKey(db.Model):
    """
    Client-supplied checkout key -> order it produced.

    Written in the same transaction as the order it protects. A row past
    expires_at is treated as absent and may be overwritten.
    """
    __tablename__ = "idempotency_keys"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(255), nullable=False, unique=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

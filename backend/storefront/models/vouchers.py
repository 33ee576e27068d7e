from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z, utcnow
from .common import new_id


class Voucher(db.Model):
    """
    Discount voucher redeemable at checkout.

    - code is stored upper-cased; uq_vouchers_live_code keeps it unique among
      non-deleted vouchers, so a soft-deleted code can be reused.
    - value: 1-100 for PERCENTAGE, cents for FIXED_AMOUNT, ignored for FREE_SHIPPING.
    - used_count only ever grows, by exactly one per VoucherRedemption, in the
      same transaction as the order it discounts.
    - Soft delete via deleted_at; deleted vouchers never validate.
    """
    __tablename__ = "vouchers"
    __table_args__ = (
        db.Index(
            "uq_vouchers_live_code",
            "code",
            unique=True,
            sqlite_where=db.text("deleted_at IS NULL"),
            postgresql_where=db.text("deleted_at IS NULL"),
        ),
        db.CheckConstraint("used_count >= 0", name="ck_vouchers_used_count_non_negative"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    code = db.Column(db.String(64), nullable=False)
    type = db.Column(db.String(16), nullable=False)  # PERCENTAGE, FIXED_AMOUNT, FREE_SHIPPING
    value = db.Column(db.Integer, nullable=False, default=0)

    min_order_value_cents = db.Column(db.Integer, nullable=False, default=0)
    max_discount_cents = db.Column(db.Integer, nullable=True)

    start_date = db.Column(db.DateTime, nullable=False)
    expiry_date = db.Column(db.DateTime, nullable=False)

    usage_limit_global = db.Column(db.Integer, nullable=True)
    usage_limit_per_user = db.Column(db.Integer, nullable=True)
    used_count = db.Column(db.Integer, nullable=False, default=0)

    # JSON arrays of ids; NULL or [] means unrestricted
    applicable_product_ids = db.Column(db.JSON, nullable=True)
    applicable_category_ids = db.Column(db.JSON, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    deleted_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Voucher id={self.id} code={self.code!r} type={self.type}>"

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "type": self.type,
            "value": self.value,
            "min_order_value_cents": self.min_order_value_cents,
            "max_discount_cents": self.max_discount_cents,
            "start_date": to_utc_z(self.start_date),
            "expiry_date": to_utc_z(self.expiry_date),
            "usage_limit_global": self.usage_limit_global,
            "usage_limit_per_user": self.usage_limit_per_user,
            "used_count": self.used_count,
            "applicable_product_ids": self.applicable_product_ids or [],
            "applicable_category_ids": self.applicable_category_ids or [],
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class VoucherRedemption(db.Model):
    """One row per successful application of a voucher to an order."""
    __tablename__ = "voucher_redemptions"
    __table_args__ = (
        db.UniqueConstraint("voucher_id", "order_id", name="uq_voucher_redemptions_voucher_order"),
        db.Index("ix_voucher_redemptions_voucher_user", "voucher_id", "user_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    voucher_id = db.Column(db.String(36), db.ForeignKey("vouchers.id"), nullable=False)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    order = db.relationship("Order")


class VoucherAuditLog(db.Model):
    """
    Append-only voucher lifecycle log (no updates/deletes).

    Written by voucher_audit_service only.
    """
    __tablename__ = "voucher_audit_logs"
    __table_args__ = (
        db.Index("ix_voucher_audit_voucher", "voucher_id"),
        db.Index("ix_voucher_audit_order", "order_id"),
        db.Index("ix_voucher_audit_action", "action"),
        db.Index("ix_voucher_audit_created", "created_at"),
        db.Index("ix_voucher_audit_code", "code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    voucher_id = db.Column(db.String(36), db.ForeignKey("vouchers.id"), nullable=True)
    action = db.Column(db.String(32), nullable=False)
    actor_type = db.Column(db.String(16), nullable=False)  # ADMIN, CUSTOMER, SYSTEM
    actor_id = db.Column(db.String(36), nullable=True)
    order_id = db.Column(db.String(36), nullable=True)
    code = db.Column(db.String(64), nullable=True)
    result = db.Column(db.String(16), nullable=True)  # VALID, INVALID
    error_code = db.Column(db.String(64), nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_json = db.Column("metadata", db.JSON, nullable=True)
    request_id = db.Column(db.String(128), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "voucher_id": self.voucher_id,
            "action": self.action,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "order_id": self.order_id,
            "code": self.code,
            "result": self.result,
            "error_code": self.error_code,
            "metadata": self.metadata_json,
            "request_id": self.request_id,
            "created_at": to_utc_z(self.created_at),
        }

from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z, utcnow


MOVEMENT_SALE = "SALE"
MOVEMENT_RESTORE = "RESTORE"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"


class InventoryMovement(db.Model):
    """
    Append-only audit ledger of stock counter changes.

    One row per mutation of Product.stock_quantity, written in the same DB
    transaction as the mutation. stock_before is derived, never stored:
    stock_before = stock_after - quantity_delta.

    order_id is a plain reference (no FK) so the ledger outlives any
    order housekeeping.
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_invmov_product_created", "product_id", "created_at"),
        db.Index("ix_invmov_order_type", "order_id", "type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False, index=True)
    order_id = db.Column(db.String(36), nullable=True, index=True)

    type = db.Column(db.String(16), nullable=False)  # SALE, RESTORE, ADJUSTMENT
    quantity_delta = db.Column(db.Integer, nullable=False)
    reference = db.Column(db.String(255), nullable=True)

    performed_by_user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
    stock_after = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    performed_by = db.relationship("User", foreign_keys=[performed_by_user_id])

    @property
    def stock_before(self) -> int | None:
        if self.stock_after is None:
            return None
        return self.stock_after - self.quantity_delta

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "order_id": self.order_id,
            "type": self.type,
            "quantity_delta": self.quantity_delta,
            "reference": self.reference,
            "performed_by_user_id": self.performed_by_user_id,
            "performed_by_name": self.performed_by.name if self.performed_by else None,
            "stock_before": self.stock_before,
            "stock_after": self.stock_after,
            "created_at": to_utc_z(self.created_at),
        }

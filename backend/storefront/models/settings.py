from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z, utcnow


class SiteSetting(db.Model):
    """
    Key-value site settings (JSON values).

    Known keys:
    - "delivery": {"delivery_charges_cents": int}
    """
    __tablename__ = "site_settings"

    key = db.Column(db.String(128), primary_key=True)
    value = db.Column(db.JSON, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "key": self.key,
            "value": self.value,
            "updated_at": to_utc_z(self.updated_at),
        }

from __future__ import annotations

from ..extensions import db
from storefront.time_utils import utcnow
from .common import new_id


class User(db.Model):
    """Staff or customer account; managed elsewhere, referenced here for attribution."""
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"

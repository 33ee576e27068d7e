# Overview: Site settings consumed by checkout (delivery charge).

from __future__ import annotations

from ..extensions import db
from ..models import SiteSetting
from ..validation import BadRequestError, coerce_int


DELIVERY_KEY = "delivery"


def get_setting(key: str):
    row = db.session.query(SiteSetting).filter_by(key=key).first()
    return row.value if row else None


def get_delivery_charge_cents() -> int:
    """Flat delivery charge applied to every order; 0 when unset or malformed."""
    value = get_setting(DELIVERY_KEY)
    if not isinstance(value, dict):
        return 0
    cents = value.get("delivery_charges_cents")
    if isinstance(cents, int) and not isinstance(cents, bool) and cents >= 0:
        return cents
    return 0


def set_delivery_charge_cents(cents) -> SiteSetting:
    cents = coerce_int("delivery_charges_cents", cents)
    if cents < 0:
        raise BadRequestError("delivery_charges_cents must be >= 0")

    row = db.session.query(SiteSetting).filter_by(key=DELIVERY_KEY).first()
    if row is None:
        row = SiteSetting(key=DELIVERY_KEY)
        db.session.add(row)
    row.value = {"delivery_charges_cents": cents}
    db.session.flush()
    return row

# Overview: Read-only product catalog lookups used by pricing and voucher eligibility.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Product
from ..validation import BadRequestError


def get_products_by_ids(product_ids) -> dict[str, Product]:
    ids = {pid for pid in product_ids if pid}
    if not ids:
        return {}
    rows = db.session.query(Product).filter(Product.id.in_(ids)).all()
    return {p.id: p for p in rows}


def resolve_currency(products) -> str:
    """
    Single currency for a set of products.

    Mixed currencies are rejected; an empty set falls back to DEFAULT_CURRENCY.
    """
    currencies = {(p.currency or "").upper() for p in products}
    if len(currencies) > 1:
        raise BadRequestError(
            "Cart contains items priced in different currencies",
            details={"currencies": sorted(currencies)},
        )
    currency = currencies.pop() if currencies else current_app.config["DEFAULT_CURRENCY"].upper()

    supported = current_app.config["SUPPORTED_CURRENCIES"]
    if currency not in supported:
        raise BadRequestError(
            f"Unsupported currency {currency}. Must be one of: {', '.join(supported)}"
        )
    return currency

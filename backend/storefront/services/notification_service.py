# Overview: Customer notifications for orders; dispatched after commit, never fatal.

"""
Order notifications.

The mail transport and its job queue live outside this service. What this
module guarantees to the checkout core:

- Notifications are sent only after the order transaction has committed,
  from a detached snapshot (order.to_dict()), so no DB transaction is held
  open while waiting on network I/O.
- A failing notification is logged and swallowed. It never fails the
  request that triggered it.
"""

from __future__ import annotations

from flask import current_app


def send_order_confirmation(order: dict) -> None:
    current_app.logger.info(
        "Order confirmation queued: order_id=%s to=%s total_cents=%s currency=%s items=%d",
        order["id"],
        order["customer_email"],
        order["total_cents"],
        order["currency"],
        len(order.get("items") or []),
    )


def send_order_status_change(order: dict, status: str, status_updated_at: str | None) -> None:
    current_app.logger.info(
        "Order status notification queued: order_id=%s to=%s status=%s at=%s",
        order["id"],
        order["customer_email"],
        status,
        status_updated_at,
    )


def dispatch(func, *args, **kwargs) -> None:
    """Fire-and-forget: run a notification, logging (not raising) any failure."""
    try:
        func(*args, **kwargs)
    except Exception:
        current_app.logger.warning(
            "Notification %s failed", getattr(func, "__name__", repr(func)), exc_info=True
        )

# Overview: Append-only voucher audit log writer and reader.

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Voucher, VoucherAuditLog
from storefront.time_utils import utcnow
"""
Voucher Audit Log Invariants (authoritative)

- Append-only: rows are inserted here and nowhere else; never updated or deleted.
- in_transaction=True: the row joins the caller's open unit of work (flush
  only). A failed write propagates so the caller's transaction rolls back
  together with the admin mutation or redemption it records.
- in_transaction=False (best-effort): the row is committed on its own. A
  failed write is logged and swallowed; auditing must never break the
  primary flow. Only call this mode when the session holds no pending work
  of the caller (validation pipeline, scheduled jobs).
"""

ACTION_CREATED = "CREATED"
ACTION_UPDATED = "UPDATED"
ACTION_ACTIVATED = "ACTIVATED"
ACTION_DEACTIVATED = "DEACTIVATED"
ACTION_DELETED = "DELETED"
ACTION_VALIDATED = "VALIDATED"
ACTION_VALIDATION_FAILED = "VALIDATION_FAILED"
ACTION_REDEEMED = "REDEEMED"
ACTION_EXPIRED = "EXPIRED"

VALID_ACTIONS = {
    ACTION_CREATED, ACTION_UPDATED, ACTION_ACTIVATED, ACTION_DEACTIVATED, ACTION_DELETED,
    ACTION_VALIDATED, ACTION_VALIDATION_FAILED, ACTION_REDEEMED, ACTION_EXPIRED,
}

ACTOR_ADMIN = "ADMIN"
ACTOR_CUSTOMER = "CUSTOMER"
ACTOR_SYSTEM = "SYSTEM"

RESULT_VALID = "VALID"
RESULT_INVALID = "INVALID"


def publish(
    *,
    action: str,
    actor_type: str,
    voucher_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    order_id: Optional[str] = None,
    code: Optional[str] = None,
    result: Optional[str] = None,
    error_code: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    request_id: Optional[str] = None,
    in_transaction: bool = False,
) -> VoucherAuditLog | None:
    if action not in VALID_ACTIONS:
        raise ValueError(f"Unknown voucher audit action {action!r}")

    try:
        entry = VoucherAuditLog(
            voucher_id=voucher_id,
            action=action,
            actor_type=actor_type,
            actor_id=actor_id,
            order_id=order_id,
            code=code,
            result=result,
            error_code=error_code,
            metadata_json=metadata,
            request_id=request_id,
        )
        db.session.add(entry)
        db.session.flush()
        if not in_transaction:
            db.session.commit()
        return entry
    except SQLAlchemyError:
        current_app.logger.warning(
            "Failed to write voucher audit log: action=%s code=%s", action, code, exc_info=True
        )
        if in_transaction:
            raise
        db.session.rollback()
        return None


def publish_best_effort(**event) -> None:
    """Fire-and-forget: high-volume validation events outside any transaction."""
    event.pop("in_transaction", None)
    publish(in_transaction=False, **event)


def list_audit_logs(
    *,
    page: int = 1,
    limit: int = 20,
    action: str | None = None,
    code: str | None = None,
    actor_id: str | None = None,
    voucher_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> dict:
    q = db.session.query(VoucherAuditLog)
    if action:
        q = q.filter(VoucherAuditLog.action == action.upper())
    if code:
        q = q.filter(VoucherAuditLog.code == code.strip().upper())
    if actor_id:
        q = q.filter(VoucherAuditLog.actor_id == actor_id)
    if voucher_id:
        q = q.filter(VoucherAuditLog.voucher_id == voucher_id)
    if date_from is not None:
        q = q.filter(VoucherAuditLog.created_at >= date_from)
    if date_to is not None:
        q = q.filter(VoucherAuditLog.created_at <= date_to)

    total = q.count()
    rows = (
        q.order_by(VoucherAuditLog.created_at.desc(), VoucherAuditLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"data": [r.to_dict() for r in rows], "total": total, "page": page, "limit": limit}


def process_expired_vouchers() -> int:
    """
    Write one EXPIRED (SYSTEM) row for each non-deleted voucher past expiry
    that does not have one yet. Safe to run repeatedly.
    """
    now = utcnow()
    expired = (
        db.session.query(Voucher.id, Voucher.code, Voucher.type)
        .filter(Voucher.deleted_at.is_(None), Voucher.expiry_date < now)
        .all()
    )

    processed = 0
    for voucher_id, code, voucher_type in expired:
        already_logged = (
            db.session.query(VoucherAuditLog.id)
            .filter_by(voucher_id=voucher_id, action=ACTION_EXPIRED)
            .first()
        )
        if already_logged:
            continue
        entry = publish(
            action=ACTION_EXPIRED,
            actor_type=ACTOR_SYSTEM,
            voucher_id=voucher_id,
            code=code,
            metadata={"type": voucher_type},
        )
        if entry is not None:
            processed += 1
    return processed

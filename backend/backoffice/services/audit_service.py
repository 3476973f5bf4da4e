# Overview: Best-effort audit sink; failures are logged, never propagated.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AuditEvent


# Detail keys stored per action; anything else is dropped before writing.
RECOGNIZED_DETAIL_KEYS: dict[str, frozenset[str]] = {
    "purchase_order.created": frozenset({"order_number", "supplier_id", "total_amount_cents", "item_count"}),
    "purchase_order.updated": frozenset({"order_number", "fields", "total_amount_cents"}),
    "purchase_order.deleted": frozenset({"order_number"}),
    "purchase_order.sent": frozenset({"order_number"}),
    "purchase_order.confirmed": frozenset({"order_number"}),
    "purchase_order.cancelled": frozenset({"order_number", "reason", "previous_status"}),
    "purchase_order.received": frozenset({"order_number", "status", "movement_ids", "quantities"}),
    "order.created": frozenset({"order_number", "total_amount_cents", "item_count", "source"}),
    "order.updated": frozenset({"order_number", "fields"}),
    "order.status_changed": frozenset({"order_number", "from_status", "to_status", "notes"}),
    "order.cancelled": frozenset({"order_number", "from_status", "reason"}),
    "sale.created_from_order": frozenset({"order_number", "receipt_number", "total_amount_cents"}),
    "stock.movement_recorded": frozenset({"movement_id", "type", "quantity", "previous_stock", "new_stock", "reference"}),
}

SEVERITIES = {"low", "medium", "high", "critical"}
STATUSES = {"success", "warning", "error", "info"}


def filter_details(action: str, details: dict | None) -> dict:
    allowed = RECOGNIZED_DETAIL_KEYS.get(action, frozenset())
    return {k: v for k, v in (details or {}).items() if k in allowed}


def record_event(
    *,
    action: str,
    resource: str,
    resource_id=None,
    user_id: int | None = None,
    details: dict | None = None,
    severity: str = "medium",
    status: str = "success",
) -> AuditEvent | None:
    """
    Write an audit event in its own transaction.

    Call after the primary operation committed. A failure here is logged and
    rolled back; the primary operation's result stands.
    """
    if severity not in SEVERITIES:
        severity = "medium"
    if status not in STATUSES:
        status = "info"

    try:
        ev = AuditEvent(
            action=action,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            user_id=user_id,
            severity=severity,
            status=status,
            details=filter_details(action, details),
        )
        db.session.add(ev)
        db.session.commit()
        return ev
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning(
            "Audit event %s for %s %s was not recorded", action, resource, resource_id, exc_info=True
        )
        return None


def list_events(*, resource: str | None = None, resource_id=None, limit: int = 100) -> list[AuditEvent]:
    query = db.session.query(AuditEvent)
    if resource:
        query = query.filter(AuditEvent.resource == resource)
    if resource_id is not None:
        query = query.filter(AuditEvent.resource_id == str(resource_id))
    return query.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()

# Overview: Sales order creation and the fulfillment state machine.

"""
Order Fulfillment State Machine

STATE MACHINE:
    pending -> confirmed -> processing -> packed -> shipped
            -> out_for_delivery -> delivered
    side exits: cancelled, refunded

    Terminal: delivered, cancelled, refunded.

RULES:
1. Every status change appends exactly one history entry; the last entry
   always mirrors order.status and history never shrinks.
2. confirmed / packed / shipped / delivered stamp their milestone once.
   delivered also stamps actual_delivery; packed and shipped record who.
3. A terminal order accepts no further status change.
4. Moving to the current status is not a change: no history entry.
5. Entering delivered converts the order into a Sale after the status
   commit. A failed conversion leaves the order delivered and raises
   SaleConversionError; retry with convert_order_to_sale().

POLICIES (ORDER_TRANSITION_POLICY):
    permissive: any recognized status from a non-terminal order
    strict:     one happy-path step forward, or cancelled / refunded
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from ..errors import BackofficeError, ConflictError, NotFoundError, SaleConversionError, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, OrderStatusHistory
from ..time_utils import to_utc_z, utcnow
from ..validation import MAX_AMOUNT_CENTS, coerce_int, optional_int, optional_str, require_choice, require_int, require_str
from . import audit_service, catalog_service, directory_service
from .concurrency import begin_write, lock_for_update, run_with_retry
from .document_service import SALES_ORDER, next_document_number
from .order_sale_service import convert_order_to_sale


HAPPY_PATH = (
    "pending",
    "confirmed",
    "processing",
    "packed",
    "shipped",
    "out_for_delivery",
    "delivered",
)
SIDE_EXITS = ("cancelled", "refunded")
ORDER_STATUSES = frozenset(HAPPY_PATH + SIDE_EXITS)
TERMINAL_STATUSES = frozenset({"delivered", "cancelled", "refunded"})

# Status -> timestamp column stamped on first entry
MILESTONES = {
    "confirmed": "confirmed_at",
    "packed": "packed_at",
    "shipped": "shipped_at",
    "delivered": "delivered_at",
}

SHIPPING_METHODS = ("standard", "express", "overnight", "pickup")
PAYMENT_METHODS = ("card", "mobile_money", "bank_transfer", "cash", "other")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")
PRIORITIES = ("low", "normal", "high", "urgent")
SOURCES = ("ecommerce", "pos", "phone", "email")

DEFAULT_CANCEL_REASON = "Order cancelled"

# Fields editable on a pending order via update_pending_order()
PENDING_EDITABLE_FIELDS = (
    "items",
    "shipping_cost_cents",
    "tax_amount_cents",
    "discount_amount_cents",
    "shipping_address",
    "shipping_method",
    "notes",
    "priority",
)


def _permissive_table() -> dict[str, frozenset[str]]:
    return {
        status: (ORDER_STATUSES - {status}) if status not in TERMINAL_STATUSES else frozenset()
        for status in ORDER_STATUSES
    }


def _strict_table() -> dict[str, frozenset[str]]:
    table = {status: frozenset() for status in ORDER_STATUSES}
    for current, following in zip(HAPPY_PATH, HAPPY_PATH[1:]):
        table[current] = frozenset({following, *SIDE_EXITS})
    return table


TRANSITION_TABLES = {
    "permissive": _permissive_table(),
    "strict": _strict_table(),
}


def _policy() -> str:
    policy = current_app.config.get("ORDER_TRANSITION_POLICY", "permissive")
    if policy not in TRANSITION_TABLES:
        raise ValidationError(
            f"Unknown ORDER_TRANSITION_POLICY '{policy}'. Must be one of: {', '.join(TRANSITION_TABLES)}"
        )
    return policy


def can_transition(current: str, new_status: str, policy: str = "permissive") -> bool:
    return new_status in TRANSITION_TABLES[policy].get(current, frozenset())


def _check_transition(order: Order, new_status: str) -> None:
    current = order.status
    details = {"order_number": order.order_number, "from_status": current, "to_status": new_status}
    if current in TERMINAL_STATUSES:
        if new_status == "cancelled":
            raise ConflictError(f"Cannot cancel a {current} order", details=details)
        raise ConflictError(f"Order is {current}; no further status changes are allowed", details=details)
    policy = _policy()
    if not can_transition(current, new_status, policy):
        raise ConflictError(
            f"Cannot move order from {current} to {new_status} under the {policy} policy",
            details=details,
        )


def _append_history(order: Order, status: str, actor_id: int, notes: str | None, now: datetime) -> None:
    sequence = order.status_history[-1].sequence + 1 if order.status_history else 1
    order.status_history.append(OrderStatusHistory(
        sequence=sequence,
        status=status,
        timestamp=now,
        notes=notes,
        updated_by_user_id=actor_id,
    ))


def _apply_transition(order: Order, new_status: str, actor_id: int, notes: str | None) -> None:
    now = utcnow()
    order.status = new_status
    _append_history(order, new_status, actor_id, notes, now)

    column = MILESTONES.get(new_status)
    if column and getattr(order, column) is None:
        setattr(order, column, now)
    if new_status == "delivered" and order.actual_delivery is None:
        order.actual_delivery = now
    if new_status == "packed":
        order.packed_by_user_id = actor_id
    elif new_status == "shipped":
        order.shipped_by_user_id = actor_id


def _append_internal_note(order: Order, notes: str, now: datetime) -> None:
    entry = f"[{to_utc_z(now)}] {notes}"
    order.internal_notes = f"{order.internal_notes}\n{entry}" if order.internal_notes else entry


def get_order(order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def list_orders(
    *,
    status: str | None = None,
    source: str | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    """Newest first. search matches order number, customer email or name."""
    query = db.session.query(Order)
    if status:
        require_choice(status, "status", ORDER_STATUSES)
        query = query.filter(Order.status == status)
    if source:
        require_choice(source, "source", SOURCES)
        query = query.filter(Order.source == source)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(
                Order.order_number.ilike(pattern),
                Order.customer_email.ilike(pattern),
                Order.customer_first_name.ilike(pattern),
                Order.customer_last_name.ilike(pattern),
            )
        )

    total = query.count()
    rows = query.order_by(Order.order_date.desc(), Order.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def _parse_customer(customer) -> dict:
    if not isinstance(customer, dict):
        raise ValidationError("customer_info is required")
    email = require_str(customer, "email", max_length=255)
    if "@" not in email:
        raise ValidationError("customer_info.email must be a valid email address")
    return {
        "customer_first_name": require_str(customer, "first_name", max_length=120),
        "customer_last_name": require_str(customer, "last_name", max_length=120),
        "customer_email": email.lower(),
        "customer_phone": optional_str(customer, "phone", max_length=64),
    }


def _parse_shipping_address(address) -> dict:
    if address is None:
        return {}
    if not isinstance(address, dict):
        raise ValidationError("shipping_address must be an object")
    return {
        "ship_full_name": require_str(address, "full_name", max_length=255),
        "ship_address": require_str(address, "address", max_length=255),
        "ship_city": require_str(address, "city", max_length=120),
        "ship_state": optional_str(address, "state", max_length=120),
        "ship_zip_code": optional_str(address, "zip_code", max_length=32),
        "ship_country": optional_str(address, "country", max_length=64) or "US",
        "ship_phone": optional_str(address, "phone", max_length=64),
    }


def _build_items(raw) -> list[OrderItem]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("Order must have at least one item")

    parsed = []
    for index, entry in enumerate(raw, start=1):
        if not isinstance(entry, dict):
            raise ValidationError(f"items[{index}] must be an object")
        parsed.append((
            require_int(entry, "product_id", minimum=1),
            require_int(entry, "quantity", minimum=1),
            optional_int(entry, "unit_price_cents", minimum=0),
        ))

    products = catalog_service.get_products([product_id for product_id, _, _ in parsed])
    items = []
    for product_id, quantity, unit_price in parsed:
        product = products[product_id]
        if not product.is_active:
            raise ValidationError(f"Product {product.sku} is inactive", details={"product_id": product_id})
        if unit_price is None:
            unit_price = product.price_cents or 0
        items.append(OrderItem(
            product_id=product.id,
            name=product.name,
            sku=product.sku,
            quantity=quantity,
            unit_price_cents=unit_price,
            total_price_cents=quantity * unit_price,
        ))
    return items


def _amount(value, field: str) -> int:
    amount = coerce_int(value, field) if value is not None else 0
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0")
    if amount > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_CENTS}")
    return amount


def _apply_totals(order: Order) -> None:
    """total = subtotal + shipping + tax - discount, never negative."""
    order.subtotal_cents = sum(item.total_price_cents for item in order.items)
    total = (
        order.subtotal_cents
        + (order.shipping_cost_cents or 0)
        + (order.tax_amount_cents or 0)
        - (order.discount_amount_cents or 0)
    )
    if total < 0:
        raise ValidationError("Discount cannot exceed the order amount")
    if total > MAX_AMOUNT_CENTS:
        raise ValidationError(f"total_amount_cents cannot exceed {MAX_AMOUNT_CENTS}")
    order.total_amount_cents = total


def create_order(
    *,
    customer_info,
    items,
    actor_id: int,
    customer_id: int | None = None,
    shipping_address=None,
    shipping_method: str = "standard",
    shipping_cost_cents: int = 0,
    tax_amount_cents: int = 0,
    discount_amount_cents: int = 0,
    payment_info=None,
    priority: str = "normal",
    source: str = "ecommerce",
    notes: str | None = None,
) -> Order:
    """
    Create a pending order with an ORD- number and its first history entry.

    Unit prices default to the product's current price. The payment amount
    defaults to the order total.
    """
    directory_service.require_user(actor_id)
    customer = _parse_customer(customer_info)
    shipping = _parse_shipping_address(shipping_address)
    require_choice(shipping_method, "shipping_method", SHIPPING_METHODS)
    require_choice(priority, "priority", PRIORITIES)
    require_choice(source, "source", SOURCES)

    payment = payment_info or {}
    if not isinstance(payment, dict):
        raise ValidationError("payment_info must be an object")
    payment_method = payment.get("method") or "other"
    require_choice(payment_method, "payment_info.method", PAYMENT_METHODS)
    payment_status = payment.get("status") or "pending"
    require_choice(payment_status, "payment_info.status", PAYMENT_STATUSES)

    amounts = {
        "shipping_cost_cents": _amount(shipping_cost_cents, "shipping_cost_cents"),
        "tax_amount_cents": _amount(tax_amount_cents, "tax_amount_cents"),
        "discount_amount_cents": _amount(discount_amount_cents, "discount_amount_cents"),
    }

    def _op() -> Order:
        begin_write()
        order = Order(
            order_number=next_document_number(document_type=SALES_ORDER[0], prefix=SALES_ORDER[1]),
            customer_id=customer_id,
            status="pending",
            shipping_method=shipping_method,
            payment_method=payment_method,
            payment_reference=optional_str(payment, "reference", max_length=128),
            payment_currency=payment.get("currency") or current_app.config.get("DEFAULT_CURRENCY", "USD"),
            payment_status=payment_status,
            payment_gateway=optional_str(payment, "gateway", max_length=64),
            payment_transaction_id=optional_str(payment, "transaction_id", max_length=128),
            priority=priority,
            source=source,
            notes=notes,
            order_date=utcnow(),
            **customer,
            **shipping,
            **amounts,
        )
        order.items = _build_items(items)
        _apply_totals(order)
        order.payment_amount_cents = optional_int(payment, "amount_cents", minimum=0)
        if order.payment_amount_cents is None:
            order.payment_amount_cents = order.total_amount_cents
        _append_history(order, "pending", actor_id, "Order created", order.order_date)

        db.session.add(order)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info(
        "Created order %s (%d items, total %d cents)",
        order.order_number, len(order.items), order.total_amount_cents,
    )
    audit_service.record_event(
        action="order.created",
        resource="order",
        resource_id=order.id,
        user_id=actor_id,
        details={
            "order_number": order.order_number,
            "total_amount_cents": order.total_amount_cents,
            "item_count": len(order.items),
            "source": order.source,
        },
    )
    return order


def update_pending_order(order_id: int, *, actor_id: int, changes: dict) -> Order:
    """Edit items, amounts, shipping and notes while the order is still pending."""
    directory_service.require_user(actor_id)
    unknown = sorted(set(changes) - set(PENDING_EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}", details={"fields": unknown})
    if not changes:
        raise ValidationError("No changes supplied")
    if "shipping_method" in changes:
        require_choice(changes["shipping_method"], "shipping_method", SHIPPING_METHODS)
    if "priority" in changes:
        require_choice(changes["priority"], "priority", PRIORITIES)
    shipping = _parse_shipping_address(changes["shipping_address"]) if changes.get("shipping_address") else None

    def _op() -> Order:
        begin_write()
        order = get_order(order_id, lock=True)
        if order.status != "pending":
            raise ConflictError(
                f"Cannot edit a {order.status} order. Only pending orders can be edited.",
                details={"order_number": order.order_number, "status": order.status},
            )
        if "items" in changes:
            order.items = _build_items(changes["items"])
        for field in ("shipping_cost_cents", "tax_amount_cents", "discount_amount_cents"):
            if field in changes:
                setattr(order, field, _amount(changes[field], field))
        if shipping:
            for column, value in shipping.items():
                setattr(order, column, value)
        for field in ("shipping_method", "notes", "priority"):
            if field in changes:
                setattr(order, field, changes[field])

        _apply_totals(order)
        if order.payment_status == "pending":
            order.payment_amount_cents = order.total_amount_cents

        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Updated pending order %s (%s)", order.order_number, ", ".join(sorted(changes)))
    audit_service.record_event(
        action="order.updated",
        resource="order",
        resource_id=order.id,
        user_id=actor_id,
        details={"order_number": order.order_number, "fields": sorted(changes)},
    )
    return order


def update_order_status(
    order_id: int,
    *,
    actor_id: int,
    status: str | None = None,
    notes: str | None = None,
    tracking_number: str | None = None,
    estimated_delivery: datetime | None = None,
    assigned_to: int | None = None,
) -> Order:
    """
    Move an order to a new status and/or update its fulfillment details.

    Notes travel with the history entry when the status changes; otherwise
    they are appended to internal_notes with a timestamp.

    Raises:
        NotFoundError: order, actor or assignee missing
        ValidationError: unknown status, or nothing to update
        ConflictError: transition not allowed
        SaleConversionError: order is delivered but its Sale was not written
    """
    directory_service.require_user(actor_id)
    if status is not None:
        require_choice(status, "status", ORDER_STATUSES)
    if assigned_to is not None:
        directory_service.require_user(assigned_to, role="Assignee")
    if all(v is None for v in (status, notes, tracking_number, estimated_delivery, assigned_to)):
        raise ValidationError("No changes supplied")

    def _op() -> tuple[Order, str, bool]:
        begin_write()
        order = get_order(order_id, lock=True)
        previous = order.status
        changed = status is not None and status != order.status

        if changed:
            _check_transition(order, status)
            _apply_transition(order, status, actor_id, notes)
        elif notes:
            _append_internal_note(order, notes, utcnow())

        if tracking_number is not None:
            order.tracking_number = tracking_number
        if estimated_delivery is not None:
            order.estimated_delivery = estimated_delivery
        if assigned_to is not None:
            order.assigned_to_user_id = assigned_to

        db.session.commit()
        return order, previous, changed

    order, previous, changed = run_with_retry(_op)

    if changed:
        current_app.logger.info("Order %s: %s -> %s", order.order_number, previous, order.status)
        audit_service.record_event(
            action="order.status_changed",
            resource="order",
            resource_id=order.id,
            user_id=actor_id,
            details={
                "order_number": order.order_number,
                "from_status": previous,
                "to_status": order.status,
                "notes": notes,
            },
            severity="high" if order.status in SIDE_EXITS else "medium",
        )
    else:
        current_app.logger.info("Updated fulfillment details on order %s", order.order_number)
        fields = [
            name for name, value in (
                ("notes", notes),
                ("tracking_number", tracking_number),
                ("estimated_delivery", estimated_delivery),
                ("assigned_to", assigned_to),
            )
            if value is not None
        ]
        audit_service.record_event(
            action="order.updated",
            resource="order",
            resource_id=order.id,
            user_id=actor_id,
            details={"order_number": order.order_number, "fields": fields},
        )

    if changed and order.status == "delivered":
        _convert_delivered(order, actor_id)
    return order


def _convert_delivered(order: Order, actor_id: int) -> None:
    order_id, order_number = order.id, order.order_number
    try:
        convert_order_to_sale(order_id, actor_id)
    except (BackofficeError, SQLAlchemyError) as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create sale for delivered order %s", order_number)
        raise SaleConversionError(order_number, exc) from exc


def transition(order_id: int, new_status: str, *, actor_id: int, notes: str | None = None) -> Order:
    return update_order_status(order_id, actor_id=actor_id, status=new_status, notes=notes)


def cancel_order(order_id: int, *, actor_id: int, reason: str | None = None) -> Order:
    """
    Cancel a non-terminal order. The reason is recorded as the history note.

    No stock is returned: cancellation creates no stock movement.
    """
    directory_service.require_user(actor_id)
    reason = (reason or "").strip() or DEFAULT_CANCEL_REASON

    def _op() -> tuple[Order, str]:
        begin_write()
        order = get_order(order_id, lock=True)
        previous = order.status
        if previous in TERMINAL_STATUSES:
            raise ConflictError(
                f"Cannot cancel a {previous} order",
                details={"order_number": order.order_number, "status": previous},
            )
        _apply_transition(order, "cancelled", actor_id, reason)
        db.session.commit()
        return order, previous

    order, previous = run_with_retry(_op)
    current_app.logger.info("Order %s cancelled from %s: %s", order.order_number, previous, reason)
    audit_service.record_event(
        action="order.cancelled",
        resource="order",
        resource_id=order.id,
        user_id=actor_id,
        details={"order_number": order.order_number, "from_status": previous, "reason": reason},
        severity="high",
    )
    return order

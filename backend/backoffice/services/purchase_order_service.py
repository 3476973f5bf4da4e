# Overview: Purchase order administration and the receiving engine.

"""
Purchase Order Service

LIFECYCLE:
    draft -> sent -> confirmed -> partial_received -> fully_received
    cancelled is reachable from any non-terminal state.

    draft:            items and amounts editable, deletable
    sent/confirmed:   open for receiving
    partial_received: some goods in, still open for receiving
    fully_received:   terminal, every item complete
    cancelled:        terminal

RECEIVING (all-or-nothing):
1. Lock the purchase order and validate every line against its items,
   accumulating per-product quantities within the call.
2. Only when every line passes, apply them in caller order: bump product
   stock, append a 'purchase' StockMovement, raise received_quantity.
3. Recompute the receipt status and commit once.

A failed receive leaves no stock change, no movement and no item change.
Receiving is not idempotent; repeating a completed receive fails the
over-receive check.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import or_

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Product, PurchaseOrder, PurchaseOrderItem, StockMovement, Supplier
from ..time_utils import utcnow
from ..validation import MAX_AMOUNT_CENTS, coerce_int, optional_int, optional_str, require_choice, require_int
from . import audit_service, catalog_service, directory_service
from .concurrency import begin_write, lock_for_update, run_with_retry
from .document_service import PURCHASE_ORDER, next_document_number
from .stock_ledger_service import apply_stock_change


STATUS_DRAFT = "draft"
STATUS_SENT = "sent"
STATUS_CONFIRMED = "confirmed"
STATUS_PARTIAL = "partial_received"
STATUS_FULL = "fully_received"
STATUS_CANCELLED = "cancelled"

PO_STATUSES = frozenset({
    STATUS_DRAFT, STATUS_SENT, STATUS_CONFIRMED, STATUS_PARTIAL, STATUS_FULL, STATUS_CANCELLED,
})
RECEIVABLE_STATUSES = frozenset({STATUS_SENT, STATUS_CONFIRMED, STATUS_PARTIAL})
TERMINAL_STATUSES = frozenset({STATUS_FULL, STATUS_CANCELLED})

PAYMENT_TERMS = ("net_15", "net_30", "net_45", "net_60", "cod", "prepaid")
DEFAULT_PAYMENT_TERMS = "net_30"

# Header fields editable on a draft via update_purchase_order()
EDITABLE_FIELDS = (
    "expected_delivery_date",
    "tax_amount_cents",
    "shipping_cost_cents",
    "discount_amount_cents",
    "payment_terms",
    "currency",
    "notes",
    "internal_notes",
    "items",
)


@dataclass(frozen=True)
class ReceivingLine:
    """One product's delivered quantity in a receive call."""
    product_id: int
    quantity: int
    notes: str | None = None


@dataclass(frozen=True)
class OrderedLine:
    product_id: int
    ordered_quantity: int
    unit_cost_cents: int | None
    notes: str | None = None


def parse_receiving_lines(raw) -> list[ReceivingLine]:
    """
    Parse JSON receiving lines: [{"product_id", "quantity", "notes"?}, ...].

    "received_quantity" is accepted as an alias of "quantity".
    """
    if not isinstance(raw, list) or not raw:
        raise ValidationError("items must be a non-empty list")

    lines = []
    for index, entry in enumerate(raw, start=1):
        if not isinstance(entry, dict):
            raise ValidationError(f"items[{index}] must be an object")
        product_id = require_int(entry, "product_id", minimum=1)
        qty_key = "quantity" if entry.get("quantity") is not None else "received_quantity"
        quantity = require_int(entry, qty_key)
        lines.append(ReceivingLine(
            product_id=product_id,
            quantity=quantity,
            notes=optional_str(entry, "notes", max_length=255),
        ))
    return lines


def _parse_ordered_lines(raw) -> list[OrderedLine]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("Purchase order must have at least one item")

    lines = []
    seen: set[int] = set()
    for index, entry in enumerate(raw, start=1):
        if not isinstance(entry, dict):
            raise ValidationError(f"items[{index}] must be an object")
        product_id = require_int(entry, "product_id", minimum=1)
        if product_id in seen:
            raise ValidationError(
                f"Product {product_id} appears more than once",
                details={"product_id": product_id},
            )
        seen.add(product_id)
        qty_key = "ordered_quantity" if entry.get("ordered_quantity") is not None else "quantity"
        lines.append(OrderedLine(
            product_id=product_id,
            ordered_quantity=require_int(entry, qty_key, minimum=1),
            unit_cost_cents=optional_int(entry, "unit_cost_cents", minimum=0),
            notes=optional_str(entry, "notes", max_length=255),
        ))
    return lines


def _build_items(lines: list[OrderedLine]) -> list[PurchaseOrderItem]:
    products = catalog_service.get_products([line.product_id for line in lines])
    items = []
    for line in lines:
        product = products[line.product_id]
        unit_cost = line.unit_cost_cents
        if unit_cost is None:
            unit_cost = product.cost_price_cents or 0
        items.append(PurchaseOrderItem(
            product_id=product.id,
            ordered_quantity=line.ordered_quantity,
            received_quantity=0,
            unit_cost_cents=unit_cost,
            total_cost_cents=line.ordered_quantity * unit_cost,
            notes=line.notes,
        ))
    return items


def _apply_totals(po: PurchaseOrder) -> None:
    """total = subtotal + tax + shipping - discount, never negative."""
    po.subtotal_cents = sum(item.total_cost_cents for item in po.items)
    total = (
        po.subtotal_cents
        + (po.tax_amount_cents or 0)
        + (po.shipping_cost_cents or 0)
        - (po.discount_amount_cents or 0)
    )
    if total < 0:
        raise ValidationError(
            "Discount cannot exceed subtotal plus tax and shipping",
            details={"subtotal_cents": po.subtotal_cents, "discount_amount_cents": po.discount_amount_cents},
        )
    if total > MAX_AMOUNT_CENTS:
        raise ValidationError(f"total_amount_cents cannot exceed {MAX_AMOUNT_CENTS}")
    po.total_amount_cents = total


def _amount(value, field: str) -> int:
    amount = coerce_int(value, field) if value is not None else 0
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0")
    if amount > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_CENTS}")
    return amount


def get_purchase_order(purchase_order_id: int, *, lock: bool = False) -> PurchaseOrder:
    query = db.session.query(PurchaseOrder).filter_by(id=purchase_order_id)
    if lock:
        query = lock_for_update(query)
    po = query.first()
    if po is None:
        raise NotFoundError(
            f"Purchase order {purchase_order_id} not found",
            details={"purchase_order_id": purchase_order_id},
        )
    return po


def list_purchase_orders(
    *,
    status: str | None = None,
    supplier_id: int | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[PurchaseOrder], int]:
    """
    List purchase orders, newest first.

    search matches the order number or the supplier's name/code.
    """
    query = db.session.query(PurchaseOrder)
    if status:
        require_choice(status, "status", PO_STATUSES)
        query = query.filter(PurchaseOrder.status == status)
    if supplier_id is not None:
        query = query.filter(PurchaseOrder.supplier_id == supplier_id)
    if search:
        pattern = f"%{search}%"
        query = query.join(Supplier, Supplier.id == PurchaseOrder.supplier_id).filter(
            or_(
                PurchaseOrder.order_number.ilike(pattern),
                Supplier.name.ilike(pattern),
                Supplier.code.ilike(pattern),
            )
        )

    total = query.count()
    rows = (
        query.order_by(PurchaseOrder.order_date.desc(), PurchaseOrder.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total


def create_purchase_order(
    *,
    supplier_id: int,
    items,
    created_by: int,
    expected_delivery_date: datetime | None = None,
    tax_amount_cents: int = 0,
    shipping_cost_cents: int = 0,
    discount_amount_cents: int = 0,
    payment_terms: str | None = None,
    currency: str | None = None,
    notes: str | None = None,
    internal_notes: str | None = None,
) -> PurchaseOrder:
    """
    Create a draft purchase order with a fresh PO number.

    Payment terms default to the supplier's. The supplier's running
    total_orders / total_spent_cents are bumped in the same transaction.
    """
    directory_service.require_user(created_by)
    lines = _parse_ordered_lines(items)
    tax = _amount(tax_amount_cents, "tax_amount_cents")
    shipping = _amount(shipping_cost_cents, "shipping_cost_cents")
    discount = _amount(discount_amount_cents, "discount_amount_cents")
    if payment_terms is not None:
        require_choice(payment_terms, "payment_terms", PAYMENT_TERMS)

    def _op() -> PurchaseOrder:
        begin_write()
        supplier = catalog_service.get_supplier(supplier_id)
        po = PurchaseOrder(
            order_number=next_document_number(document_type=PURCHASE_ORDER[0], prefix=PURCHASE_ORDER[1]),
            supplier_id=supplier.id,
            status=STATUS_DRAFT,
            order_date=utcnow(),
            expected_delivery_date=expected_delivery_date,
            tax_amount_cents=tax,
            shipping_cost_cents=shipping,
            discount_amount_cents=discount,
            currency=currency or current_app.config.get("DEFAULT_CURRENCY", "USD"),
            payment_terms=payment_terms or supplier.payment_terms or DEFAULT_PAYMENT_TERMS,
            notes=notes,
            internal_notes=internal_notes,
            created_by_user_id=created_by,
        )
        po.items = _build_items(lines)
        _apply_totals(po)
        db.session.add(po)

        supplier.total_orders = (supplier.total_orders or 0) + 1
        supplier.total_spent_cents = (supplier.total_spent_cents or 0) + po.total_amount_cents

        db.session.commit()
        return po

    po = run_with_retry(_op)
    current_app.logger.info(
        "Created purchase order %s for supplier %s (%d items, total %d cents)",
        po.order_number, po.supplier_id, len(po.items), po.total_amount_cents,
    )
    audit_service.record_event(
        action="purchase_order.created",
        resource="purchase_order",
        resource_id=po.id,
        user_id=created_by,
        details={
            "order_number": po.order_number,
            "supplier_id": po.supplier_id,
            "total_amount_cents": po.total_amount_cents,
            "item_count": len(po.items),
        },
    )
    return po


def update_purchase_order(purchase_order_id: int, *, actor_id: int, changes: dict) -> PurchaseOrder:
    """
    Edit a draft purchase order. Passing "items" replaces every line.

    Totals are recomputed and the supplier's total_spent_cents follows the
    change in total.
    """
    directory_service.require_user(actor_id)
    unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(
            f"Fields cannot be updated: {', '.join(unknown)}",
            details={"fields": unknown},
        )
    if not changes:
        raise ValidationError("No changes supplied")

    lines = _parse_ordered_lines(changes["items"]) if "items" in changes else None
    if changes.get("payment_terms") is not None:
        require_choice(changes["payment_terms"], "payment_terms", PAYMENT_TERMS)

    def _op() -> PurchaseOrder:
        begin_write()
        po = get_purchase_order(purchase_order_id, lock=True)
        if po.status != STATUS_DRAFT:
            raise ConflictError(
                f"Cannot edit {po.status} purchase order. Only draft orders can be edited.",
                details={"status": po.status},
            )
        previous_total = po.total_amount_cents

        if lines is not None:
            # Drop old lines first; the (order, product) key may be reused.
            po.items.clear()
            db.session.flush()
            po.items = _build_items(lines)
        for field in ("tax_amount_cents", "shipping_cost_cents", "discount_amount_cents"):
            if field in changes:
                setattr(po, field, _amount(changes[field], field))
        if "expected_delivery_date" in changes:
            po.expected_delivery_date = changes["expected_delivery_date"]
        if changes.get("payment_terms"):
            po.payment_terms = changes["payment_terms"]
        if changes.get("currency"):
            po.currency = changes["currency"]
        for field in ("notes", "internal_notes"):
            if field in changes:
                setattr(po, field, changes[field])

        _apply_totals(po)

        supplier = catalog_service.get_supplier(po.supplier_id, require_active=False)
        supplier.total_spent_cents = max(
            (supplier.total_spent_cents or 0) + po.total_amount_cents - previous_total, 0
        )

        db.session.commit()
        return po

    po = run_with_retry(_op)
    current_app.logger.info("Updated purchase order %s (%s)", po.order_number, ", ".join(sorted(changes)))
    audit_service.record_event(
        action="purchase_order.updated",
        resource="purchase_order",
        resource_id=po.id,
        user_id=actor_id,
        details={
            "order_number": po.order_number,
            "fields": sorted(changes),
            "total_amount_cents": po.total_amount_cents,
        },
    )
    return po


def delete_purchase_order(purchase_order_id: int, *, actor_id: int) -> str:
    """Delete a draft purchase order and roll back the supplier statistics."""
    directory_service.require_user(actor_id)

    def _op() -> tuple[int, str]:
        begin_write()
        po = get_purchase_order(purchase_order_id, lock=True)
        if po.status != STATUS_DRAFT:
            raise ConflictError(
                f"Cannot delete {po.status} purchase order. Only draft orders can be deleted.",
                details={"status": po.status},
            )
        supplier = catalog_service.get_supplier(po.supplier_id, require_active=False)
        supplier.total_orders = max((supplier.total_orders or 0) - 1, 0)
        supplier.total_spent_cents = max((supplier.total_spent_cents or 0) - po.total_amount_cents, 0)

        po_id, number = po.id, po.order_number
        db.session.delete(po)
        db.session.commit()
        return po_id, number

    po_id, number = run_with_retry(_op)
    current_app.logger.info("Deleted draft purchase order %s", number)
    audit_service.record_event(
        action="purchase_order.deleted",
        resource="purchase_order",
        resource_id=po_id,
        user_id=actor_id,
        details={"order_number": number},
        severity="high",
    )
    return number


def _change_status(purchase_order_id: int, *, allowed_from, apply, action: str, actor_id: int, details=None):
    directory_service.require_user(actor_id)

    def _op() -> tuple[PurchaseOrder, str]:
        begin_write()
        po = get_purchase_order(purchase_order_id, lock=True)
        if po.status not in allowed_from:
            raise ConflictError(
                f"Cannot {action} a {po.status} purchase order",
                details={"status": po.status},
            )
        previous = po.status
        apply(po)
        db.session.commit()
        return po, previous

    po, previous = run_with_retry(_op)
    current_app.logger.info("Purchase order %s: %s -> %s", po.order_number, previous, po.status)
    event_details = {"order_number": po.order_number, "previous_status": previous}
    event_details.update(details or {})
    audit_service.record_event(
        action=f"purchase_order.{po.status}",
        resource="purchase_order",
        resource_id=po.id,
        user_id=actor_id,
        details=event_details,
    )
    return po


def send_purchase_order(purchase_order_id: int, *, actor_id: int) -> PurchaseOrder:
    """draft -> sent."""
    def apply(po: PurchaseOrder) -> None:
        if not po.items:
            raise ValidationError("Cannot send a purchase order without items")
        po.status = STATUS_SENT
        po.sent_at = utcnow()

    return _change_status(
        purchase_order_id, allowed_from={STATUS_DRAFT}, apply=apply, action="send", actor_id=actor_id
    )


def confirm_purchase_order(purchase_order_id: int, *, actor_id: int) -> PurchaseOrder:
    """sent -> confirmed (supplier acknowledged the order)."""
    def apply(po: PurchaseOrder) -> None:
        po.status = STATUS_CONFIRMED
        po.confirmed_at = utcnow()

    return _change_status(
        purchase_order_id, allowed_from={STATUS_SENT}, apply=apply, action="confirm", actor_id=actor_id
    )


def cancel_purchase_order(purchase_order_id: int, *, actor_id: int, reason: str | None = None) -> PurchaseOrder:
    """Any non-terminal status -> cancelled. Goods already received stay in stock."""
    reason = (reason or "").strip() or "Purchase order cancelled"

    def apply(po: PurchaseOrder) -> None:
        po.status = STATUS_CANCELLED
        po.cancelled_at = utcnow()
        po.cancelled_by_user_id = actor_id
        po.cancellation_reason = reason[:255]

    return _change_status(
        purchase_order_id,
        allowed_from=PO_STATUSES - TERMINAL_STATUSES,
        apply=apply,
        action="cancel",
        actor_id=actor_id,
        details={"reason": reason},
    )


def recompute_receipt_status(po: PurchaseOrder) -> str:
    """
    fully_received when every item is complete, partial_received when any item
    has receipts, otherwise the status is left as is.
    """
    if po.is_fully_received:
        po.status = STATUS_FULL
    elif po.is_partially_received:
        po.status = STATUS_PARTIAL
    return po.status


def _validate_lines(po: PurchaseOrder, lines: list[ReceivingLine]) -> list[ReceivingLine]:
    """
    Check every line before anything is written. Returns the accepted lines
    (positive quantities) in caller order, or raises with every problem found.
    """
    errors = []
    accepted = []
    planned: dict[int, int] = {}

    for index, line in enumerate(lines, start=1):
        item = po.item_for_product(line.product_id)
        if item is None:
            errors.append({
                "line": index,
                "product_id": line.product_id,
                "code": "not_in_order",
                "message": f"Product {line.product_id} is not on purchase order {po.order_number}",
            })
            continue
        if line.quantity <= 0:
            continue

        planned[line.product_id] = planned.get(line.product_id, 0) + line.quantity
        if item.received_quantity + planned[line.product_id] > item.ordered_quantity:
            errors.append({
                "line": index,
                "product_id": line.product_id,
                "code": "over_receive",
                "message": (
                    f"Cannot receive more than ordered for product {line.product_id}: "
                    f"ordered {item.ordered_quantity}, already received {item.received_quantity}, "
                    f"requested {planned[line.product_id]}"
                ),
                "ordered_quantity": item.ordered_quantity,
                "received_quantity": item.received_quantity,
                "requested_quantity": planned[line.product_id],
            })
            continue
        accepted.append((index, line))

    if planned:
        existing = {
            pid for (pid,) in db.session.query(Product.id).filter(Product.id.in_(planned)).all()
        }
        for index, line in accepted:
            if line.product_id not in existing:
                errors.append({
                    "line": index,
                    "product_id": line.product_id,
                    "code": "product_missing",
                    "message": f"Product {line.product_id} no longer exists in the catalog",
                })

    if errors:
        details = {"order_number": po.order_number, "errors": errors}
        codes = {e["code"] for e in errors}
        if "over_receive" in codes:
            raise ConflictError("Receiving would exceed ordered quantities", details=details)
        if "product_missing" in codes:
            raise NotFoundError("One or more products not found", details=details)
        raise ValidationError("One or more lines are not on this purchase order", details=details)

    return [line for _, line in accepted]


def receive_purchase_order(
    purchase_order_id: int,
    lines: list[ReceivingLine],
    received_by: int,
    receiving_notes: str | None = None,
    actual_delivery_date: datetime | None = None,
) -> tuple[PurchaseOrder, list[StockMovement]]:
    """
    Reconcile a supplier delivery against an open purchase order.

    Args:
        purchase_order_id: PO being received
        lines: delivered quantities; lines with quantity <= 0 are skipped
        received_by: user receiving the goods
        receiving_notes: replaces the PO's receiving notes when given
        actual_delivery_date: recorded once the PO is fully received (default now)

    Returns:
        (purchase order, stock movements written in line order)

    Raises:
        NotFoundError: PO, user or product missing
        ConflictError: PO not receivable, or a line would over-receive
        ValidationError: no lines, or a line's product is not on the PO
    """
    if not lines:
        raise ValidationError("At least one receiving line is required")
    directory_service.require_user(received_by)

    def _op() -> tuple[PurchaseOrder, list[StockMovement]]:
        begin_write()
        po = get_purchase_order(purchase_order_id, lock=True)
        if po.status not in RECEIVABLE_STATUSES:
            raise ConflictError(
                f"Cannot receive a {po.status} purchase order. "
                f"Status must be one of: {', '.join(sorted(RECEIVABLE_STATUSES))}",
                details={"order_number": po.order_number, "status": po.status},
            )

        accepted = _validate_lines(po, lines)

        movements = []
        for line in accepted:
            item = po.item_for_product(line.product_id)
            note = f"Purchase Order: {po.order_number}"
            if line.notes:
                note = f"{note} - {line.notes}"
            movements.append(apply_stock_change(
                product_id=line.product_id,
                movement_type="purchase",
                quantity=line.quantity,
                user_id=received_by,
                unit_cost_cents=item.unit_cost_cents,
                reference=po.order_number,
                notes=note,
            ))
            item.received_quantity += line.quantity
            if line.notes:
                item.notes = line.notes

        recompute_receipt_status(po)
        if po.status == STATUS_FULL:
            po.actual_delivery_date = actual_delivery_date or utcnow()
        po.received_by_user_id = received_by
        if receiving_notes is not None:
            po.receiving_notes = receiving_notes

        db.session.commit()
        return po, movements

    try:
        po, movements = run_with_retry(_op)
    except (ConflictError, ValidationError, NotFoundError) as exc:
        current_app.logger.warning(
            "Rejected receive for purchase order %s: %s", purchase_order_id, exc.message
        )
        raise

    quantities: dict[str, int] = {}
    for movement in movements:
        key = str(movement.product_id)
        quantities[key] = quantities.get(key, 0) + movement.quantity

    current_app.logger.info(
        "Received %d line(s) on purchase order %s; status now %s",
        len(movements), po.order_number, po.status,
    )
    audit_service.record_event(
        action="purchase_order.received",
        resource="purchase_order",
        resource_id=po.id,
        user_id=received_by,
        details={
            "order_number": po.order_number,
            "status": po.status,
            "movement_ids": [m.id for m in movements],
            "quantities": quantities,
        },
    )
    return po, movements

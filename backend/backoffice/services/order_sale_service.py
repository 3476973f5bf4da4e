# Overview: Materializes delivered orders into Sale records, at most once per order.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import BackofficeError, ConflictError, DependencyError, NotFoundError
from ..extensions import db
from ..models import Order, Sale, SaleLine, SalePayment
from ..time_utils import utcnow
from . import audit_service
from .concurrency import RetryableConflict, begin_write, run_with_retry
from .document_service import SALE_RECEIPT, next_document_number


DELIVERED = "delivered"


def find_sale_for_order(order_number: str) -> Sale | None:
    return db.session.query(Sale).filter_by(order_number=order_number).first()


def _default_seller(order: Order) -> int | None:
    """Whoever moved the order to its current status."""
    if order.status_history:
        return order.status_history[-1].updated_by_user_id
    return None


def _build_sale(order: Order, seller_id: int) -> Sale:
    sale = Sale(
        receipt_number=next_document_number(document_type=SALE_RECEIPT[0], prefix=SALE_RECEIPT[1]),
        order_number=order.order_number,
        customer_id=order.customer_id,
        seller_id=seller_id,
        source=order.source,
        subtotal_cents=order.subtotal_cents,
        tax_amount_cents=order.tax_amount_cents,
        discount_amount_cents=order.discount_amount_cents,
        total_amount_cents=order.total_amount_cents,
        amount_paid_cents=order.total_amount_cents,
        change_amount_cents=0,
        status="completed",
        notes=f"Sale from e-commerce order {order.order_number}",
        sale_date=order.delivered_at or order.actual_delivery or utcnow(),
    )
    sale.lines = [
        SaleLine(
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            discount=0,
            discount_type="fixed",
            total_price_cents=item.total_price_cents,
        )
        for item in order.items
    ]
    sale.payments = [
        SalePayment(
            method=order.payment_method,
            amount_cents=order.total_amount_cents,
            reference=order.payment_reference or order.order_number,
            status="completed",
        )
    ]
    return sale


def convert_order_to_sale(order_id: int, actor_id: int | None = None) -> tuple[Sale, bool]:
    """
    Create the Sale for a delivered order, or return the one that exists.

    Returns (sale, created). Two racing conversions both end up with the
    same Sale: the loser's insert trips the unique order_number and it
    returns the winner's row instead.

    Raises:
        NotFoundError: order missing
        ConflictError: order is not delivered
        DependencyError: the Sale could not be written
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    if order.status != DELIVERED:
        raise ConflictError(
            f"Only delivered orders can be converted to a sale (order is {order.status})",
            details={"order_number": order.order_number, "status": order.status},
        )

    existing = find_sale_for_order(order.order_number)
    if existing is not None:
        return existing, False

    seller_id = actor_id or _default_seller(order)
    order_number = order.order_number

    def _op() -> tuple[Sale, bool]:
        begin_write()
        current = find_sale_for_order(order_number)
        if current is not None:
            return current, False

        sale = _build_sale(db.session.get(Order, order_id), seller_id)
        db.session.add(sale)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            winner = find_sale_for_order(order_number)
            if winner is not None:
                return winner, False
            # Receipt number collided rather than the order number
            raise RetryableConflict(f"Receipt number race while converting {order_number}")
        return sale, True

    try:
        sale, created = run_with_retry(_op)
    except SQLAlchemyError as exc:
        raise DependencyError(
            f"Could not record sale for order {order_number}",
            details={"order_number": order_number, "retryable": True},
        ) from exc

    if created:
        current_app.logger.info(
            "Created sale %s from order %s (%d cents)",
            sale.receipt_number, order_number, sale.total_amount_cents,
        )
        audit_service.record_event(
            action="sale.created_from_order",
            resource="sale",
            resource_id=sale.id,
            user_id=seller_id,
            details={
                "order_number": order_number,
                "receipt_number": sale.receipt_number,
                "total_amount_cents": sale.total_amount_cents,
            },
        )
    return sale, created


def convert_pending_deliveries() -> list[tuple[str, str | None]]:
    """
    Retry conversion for every delivered order that has no Sale.

    Returns [(order_number, receipt_number or None on failure), ...].
    """
    pending = (
        db.session.query(Order.id, Order.order_number)
        .outerjoin(Sale, Sale.order_number == Order.order_number)
        .filter(Order.status == DELIVERED, Sale.id.is_(None))
        .order_by(Order.id)
        .all()
    )

    results = []
    for order_id, order_number in pending:
        try:
            sale, _ = convert_order_to_sale(order_id)
        except BackofficeError:
            current_app.logger.exception("Failed to convert delivered order %s", order_number)
            results.append((order_number, None))
            continue
        results.append((order_number, sale.receipt_number))
    return results

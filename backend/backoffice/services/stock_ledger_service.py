# Overview: Append-only stock ledger and the single write path for product stock.

"""
Stock Ledger Invariants (authoritative)

- Every change to Product.stock_quantity is paired with exactly one
  StockMovement row written in the same DB transaction.
- new_stock == previous_stock + quantity, and both are >= 0.
- Movements are never updated or deleted (enforced by ORM listeners).
- Reads return movements newest first.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..errors import ConflictError, ValidationError
from ..extensions import db
from ..models import StockMovement, MOVEMENT_TYPES
from ..time_utils import utcnow
from . import audit_service, catalog_service, directory_service
from .concurrency import begin_write, run_with_retry


# Direction applied to the absolute quantity for manually recorded movements.
INBOUND_TYPES = frozenset({"purchase", "return"})
OUTBOUND_TYPES = frozenset({"sale", "damage", "expired", "transfer"})


def append_movement(
    *,
    product_id: int,
    movement_type: str,
    quantity: int,
    previous_stock: int,
    new_stock: int,
    user_id: int,
    unit_cost_cents: int = 0,
    reference: str | None = None,
    notes: str | None = None,
    occurred_at: datetime | None = None,
) -> StockMovement:
    """
    Validate and append one ledger row. Does not touch product stock.

    No commit; the caller's transaction owns the write.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(
            f"Invalid movement type '{movement_type}'. Must be one of: {', '.join(MOVEMENT_TYPES)}"
        )
    if previous_stock < 0 or new_stock < 0:
        raise ValidationError(
            "Stock snapshot cannot be negative",
            details={"previous_stock": previous_stock, "new_stock": new_stock},
        )
    if new_stock != previous_stock + quantity:
        raise ValidationError(
            "Stock snapshot does not balance: new_stock must equal previous_stock + quantity",
            details={"previous_stock": previous_stock, "quantity": quantity, "new_stock": new_stock},
        )
    if unit_cost_cents < 0:
        raise ValidationError("unit_cost_cents must be >= 0")

    movement = StockMovement(
        product_id=product_id,
        movement_type=movement_type,
        quantity=quantity,
        previous_stock=previous_stock,
        new_stock=new_stock,
        unit_cost_cents=unit_cost_cents,
        total_value_cents=abs(quantity) * unit_cost_cents,
        reference=reference,
        notes=notes,
        user_id=user_id,
        created_at=occurred_at or utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def apply_stock_change(
    *,
    product_id: int,
    movement_type: str,
    quantity: int,
    user_id: int,
    unit_cost_cents: int = 0,
    reference: str | None = None,
    notes: str | None = None,
    occurred_at: datetime | None = None,
) -> StockMovement:
    """
    Change a product's on-hand stock by a signed quantity and log it.

    Locks the product row, snapshots previous/new stock, writes the stock
    through the catalog and appends the movement. No commit.
    """
    product = catalog_service.get_product(product_id, lock=True)
    previous_stock = product.stock_quantity
    new_stock = previous_stock + quantity
    if new_stock < 0:
        raise ConflictError(
            "Insufficient stock for this operation",
            details={"product_id": product_id, "on_hand": previous_stock, "requested": -quantity},
        )

    catalog_service.set_stock(product, new_stock)
    return append_movement(
        product_id=product_id,
        movement_type=movement_type,
        quantity=quantity,
        previous_stock=previous_stock,
        new_stock=new_stock,
        user_id=user_id,
        unit_cost_cents=unit_cost_cents,
        reference=reference,
        notes=notes,
        occurred_at=occurred_at,
    )


def signed_quantity(movement_type: str, quantity: int) -> int:
    """Inbound types add |quantity|, outbound types remove it, adjustments keep their sign."""
    if movement_type in INBOUND_TYPES:
        return abs(quantity)
    if movement_type in OUTBOUND_TYPES:
        return -abs(quantity)
    return quantity


def record_manual_movement(
    *,
    product_id: int,
    movement_type: str,
    quantity: int,
    user_id: int,
    unit_cost_cents: int | None = None,
    reference: str | None = None,
    notes: str | None = None,
) -> StockMovement:
    """
    Record a stock movement entered directly by staff (count corrections,
    damage, expiry write-offs, returns to shelf).

    unit_cost_cents defaults to the product's cost price.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(
            f"Invalid movement type '{movement_type}'. Must be one of: {', '.join(MOVEMENT_TYPES)}"
        )
    if quantity == 0:
        raise ValidationError("quantity must be non-zero")
    directory_service.require_user(user_id)

    delta = signed_quantity(movement_type, quantity)

    def _op() -> StockMovement:
        begin_write()
        product = catalog_service.get_product(product_id, lock=True)
        cost = unit_cost_cents if unit_cost_cents is not None else (product.cost_price_cents or 0)
        movement = apply_stock_change(
            product_id=product_id,
            movement_type=movement_type,
            quantity=delta,
            user_id=user_id,
            unit_cost_cents=cost,
            reference=reference,
            notes=notes,
        )
        db.session.commit()
        return movement

    movement = run_with_retry(_op)
    current_app.logger.info(
        "Recorded %s movement %s for product %s: %+d (%d -> %d)",
        movement.movement_type, movement.id, product_id, movement.quantity,
        movement.previous_stock, movement.new_stock,
    )
    audit_service.record_event(
        action="stock.movement_recorded",
        resource="product",
        resource_id=product_id,
        user_id=user_id,
        details={
            "movement_id": movement.id,
            "type": movement.movement_type,
            "quantity": movement.quantity,
            "previous_stock": movement.previous_stock,
            "new_stock": movement.new_stock,
            "reference": movement.reference,
        },
    )
    return movement


def query_movements(product_id: int, reference: str | None = None) -> list[StockMovement]:
    """All movements for a product (optionally one reference), newest first."""
    query = db.session.query(StockMovement).filter(StockMovement.product_id == product_id)
    if reference is not None:
        query = query.filter(StockMovement.reference == reference)
    return query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).all()


def list_movements(
    *,
    product_id: int | None = None,
    reference: str | None = None,
    movement_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[StockMovement], int]:
    """Paginated movement listing for the ledger endpoint. Newest first."""
    query = db.session.query(StockMovement)
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    if reference:
        query = query.filter(StockMovement.reference == reference)
    if movement_type:
        query = query.filter(StockMovement.movement_type == movement_type)

    total = query.count()
    items = (
        query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return items, total

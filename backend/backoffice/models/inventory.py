from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..time_utils import to_utc_z


MOVEMENT_TYPES = ("purchase", "sale", "adjustment", "return", "transfer", "damage", "expired")


class StockMovement(db.Model):
    """
    Immutable inventory ledger entry.

    GUARANTEES:
    - Append-only: the ORM refuses UPDATE and DELETE of a flushed row.
    - new_stock == previous_stock + quantity, both non-negative (checked in
      stock_ledger_service and by table constraints).
    - quantity is signed: positive adds stock, negative removes it.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("previous_stock >= 0", name="ck_stock_movements_previous_non_negative"),
        db.CheckConstraint("new_stock >= 0", name="ck_stock_movements_new_non_negative"),
        db.CheckConstraint("new_stock = previous_stock + quantity", name="ck_stock_movements_balanced"),
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        db.Index("ix_stock_movements_reference", "reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    movement_type = db.Column(db.String(16), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_value_cents = db.Column(db.Integer, nullable=False, default=0)

    # PO number, receipt number, adjustment id, ...
    reference = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.String(500), nullable=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "type": self.movement_type,
            "quantity": self.quantity,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "unit_cost_cents": self.unit_cost_cents,
            "total_value_cents": self.total_value_cents,
            "reference": self.reference,
            "notes": self.notes,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }


class ImmutableRowError(RuntimeError):
    """Raised when code tries to rewrite an append-only ledger row."""


@event.listens_for(StockMovement, "before_update")
def _refuse_stock_movement_update(mapper, connection, target):
    raise ImmutableRowError(f"StockMovement {target.id} is immutable")


@event.listens_for(StockMovement, "before_delete")
def _refuse_stock_movement_delete(mapper, connection, target):
    raise ImmutableRowError(f"StockMovement {target.id} cannot be deleted")

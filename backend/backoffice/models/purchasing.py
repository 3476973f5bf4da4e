from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class PurchaseOrder(db.Model):
    """
    Purchase order placed with a supplier.

    LIFECYCLE:
        draft -> sent -> confirmed -> partial_received -> fully_received
        any non-terminal state -> cancelled

    Items and amounts are editable only in draft. Receiving is the only path
    that moves the order into partial_received / fully_received.
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.CheckConstraint("subtotal_cents >= 0", name="ck_po_subtotal_non_negative"),
        db.CheckConstraint("total_amount_cents >= 0", name="ck_po_total_non_negative"),
        db.Index("ix_purchase_orders_status_order_date", "status", "order_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable number (e.g., "PO-20260301-0001")
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)

    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)

    order_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expected_delivery_date = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_delivery_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # Amounts in cents: total = subtotal + tax + shipping - discount
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    payment_terms = db.Column(db.String(16), nullable=False, default="net_30")

    notes = db.Column(db.Text, nullable=True)
    internal_notes = db.Column(db.Text, nullable=True)
    receiving_notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    received_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    supplier = db.relationship("Supplier", backref=db.backref("purchase_orders", lazy=True))
    items = db.relationship(
        "PurchaseOrderItem",
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        order_by="PurchaseOrderItem.id",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_fully_received(self) -> bool:
        return bool(self.items) and all(i.received_quantity >= i.ordered_quantity for i in self.items)

    @property
    def is_partially_received(self) -> bool:
        return any(i.received_quantity > 0 for i in self.items)

    @property
    def total_items_ordered(self) -> int:
        return sum(i.ordered_quantity for i in self.items)

    @property
    def total_items_received(self) -> int:
        return sum(i.received_quantity for i in self.items)

    def item_for_product(self, product_id: int) -> "PurchaseOrderItem | None":
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "supplier_id": self.supplier_id,
            "status": self.status,
            "order_date": to_utc_z(self.order_date),
            "expected_delivery_date": to_utc_z(self.expected_delivery_date),
            "actual_delivery_date": to_utc_z(self.actual_delivery_date),
            "subtotal_cents": self.subtotal_cents,
            "tax_amount_cents": self.tax_amount_cents,
            "shipping_cost_cents": self.shipping_cost_cents,
            "discount_amount_cents": self.discount_amount_cents,
            "total_amount_cents": self.total_amount_cents,
            "currency": self.currency,
            "payment_terms": self.payment_terms,
            "notes": self.notes,
            "internal_notes": self.internal_notes,
            "receiving_notes": self.receiving_notes,
            "created_by_user_id": self.created_by_user_id,
            "received_by_user_id": self.received_by_user_id,
            "sent_at": to_utc_z(self.sent_at),
            "confirmed_at": to_utc_z(self.confirmed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancellation_reason": self.cancellation_reason,
            "is_fully_received": self.is_fully_received,
            "is_partially_received": self.is_partially_received,
            "total_items_ordered": self.total_items_ordered,
            "total_items_received": self.total_items_received,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class PurchaseOrderItem(db.Model):
    """
    Line on a purchase order.

    INVARIANT: 0 <= received_quantity <= ordered_quantity, enforced both by
    the receiving service and by check constraints.
    """
    __tablename__ = "purchase_order_items"
    __table_args__ = (
        db.UniqueConstraint("purchase_order_id", "product_id", name="uq_po_items_order_product"),
        db.CheckConstraint("ordered_quantity > 0", name="ck_po_items_ordered_positive"),
        db.CheckConstraint("received_quantity >= 0", name="ck_po_items_received_non_negative"),
        db.CheckConstraint("received_quantity <= ordered_quantity", name="ck_po_items_received_le_ordered"),
        db.CheckConstraint("unit_cost_cents >= 0", name="ck_po_items_unit_cost_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    ordered_quantity = db.Column(db.Integer, nullable=False)
    received_quantity = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=False)
    total_cost_cents = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    purchase_order = db.relationship("PurchaseOrder", back_populates="items")
    product = db.relationship("Product")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def outstanding_quantity(self) -> int:
        return max(self.ordered_quantity - self.received_quantity, 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "ordered_quantity": self.ordered_quantity,
            "received_quantity": self.received_quantity,
            "outstanding_quantity": self.outstanding_quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "total_cost_cents": self.total_cost_cents,
            "notes": self.notes,
        }

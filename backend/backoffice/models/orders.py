from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Order(db.Model):
    """
    Customer sales order (e-commerce, phone, email or POS pickup).

    STATE MACHINE (see services/order_service.py):
        pending -> confirmed -> processing -> packed -> shipped
                -> out_for_delivery -> delivered
        side exits: cancelled, refunded

    status_history is append-only and its last entry always mirrors status.
    Orders are never deleted; cancellation is a terminal status.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint("total_amount_cents >= 0", name="ck_orders_total_non_negative"),
        db.Index("ix_orders_status_order_date", "status", "order_date"),
        db.Index("ix_orders_customer_email", "customer_email"),
        db.Index("ix_orders_payment_reference", "payment_reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable number (e.g., "ORD-20260301-0001")
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)

    # Customer reference and snapshot taken at checkout
    customer_id = db.Column(db.Integer, nullable=True, index=True)
    customer_first_name = db.Column(db.String(120), nullable=False)
    customer_last_name = db.Column(db.String(120), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(64), nullable=True)

    # Amounts in cents: total = subtotal + shipping + tax - discount
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)

    # Shipping
    ship_full_name = db.Column(db.String(255), nullable=True)
    ship_address = db.Column(db.String(255), nullable=True)
    ship_city = db.Column(db.String(120), nullable=True)
    ship_state = db.Column(db.String(120), nullable=True)
    ship_zip_code = db.Column(db.String(32), nullable=True)
    ship_country = db.Column(db.String(64), nullable=True, default="US")
    ship_phone = db.Column(db.String(64), nullable=True)
    shipping_method = db.Column(db.String(16), nullable=False, default="standard")
    tracking_number = db.Column(db.String(128), nullable=True)
    estimated_delivery = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_delivery = db.Column(db.DateTime(timezone=True), nullable=True)

    # Payment
    payment_method = db.Column(db.String(16), nullable=False, default="other")
    payment_reference = db.Column(db.String(128), nullable=True)
    payment_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_currency = db.Column(db.String(3), nullable=False, default="USD")
    payment_status = db.Column(db.String(16), nullable=False, default="pending")
    payment_gateway = db.Column(db.String(64), nullable=True)
    payment_transaction_id = db.Column(db.String(128), nullable=True)

    # Management
    priority = db.Column(db.String(8), nullable=False, default="normal")
    source = db.Column(db.String(16), nullable=False, default="ecommerce")
    notes = db.Column(db.Text, nullable=True)
    internal_notes = db.Column(db.Text, nullable=True)

    # Fulfillment actors
    assigned_to_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    packed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    shipped_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    # Milestones (each set once, on entry into the matching status)
    order_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    packed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    items = db.relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
        lazy=True,
    )
    status_history = db.relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.sequence",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def shipping_address_dict(self) -> dict | None:
        if not self.ship_address:
            return None
        return {
            "full_name": self.ship_full_name,
            "address": self.ship_address,
            "city": self.ship_city,
            "state": self.ship_state,
            "zip_code": self.ship_zip_code,
            "country": self.ship_country,
            "phone": self.ship_phone,
        }

    def payment_info_dict(self) -> dict:
        return {
            "method": self.payment_method,
            "reference": self.payment_reference,
            "amount_cents": self.payment_amount_cents,
            "currency": self.payment_currency,
            "status": self.payment_status,
            "gateway": self.payment_gateway,
            "transaction_id": self.payment_transaction_id,
        }

    def to_dict(self, include_history: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "customer_info": {
                "first_name": self.customer_first_name,
                "last_name": self.customer_last_name,
                "email": self.customer_email,
                "phone": self.customer_phone,
            },
            "items": [item.to_dict() for item in self.items],
            "subtotal_cents": self.subtotal_cents,
            "shipping_cost_cents": self.shipping_cost_cents,
            "tax_amount_cents": self.tax_amount_cents,
            "discount_amount_cents": self.discount_amount_cents,
            "total_amount_cents": self.total_amount_cents,
            "status": self.status,
            "shipping_address": self.shipping_address_dict(),
            "shipping_method": self.shipping_method,
            "tracking_number": self.tracking_number,
            "estimated_delivery": to_utc_z(self.estimated_delivery),
            "actual_delivery": to_utc_z(self.actual_delivery),
            "payment_info": self.payment_info_dict(),
            "priority": self.priority,
            "source": self.source,
            "notes": self.notes,
            "internal_notes": self.internal_notes,
            "assigned_to_user_id": self.assigned_to_user_id,
            "packed_by_user_id": self.packed_by_user_id,
            "shipped_by_user_id": self.shipped_by_user_id,
            "order_date": to_utc_z(self.order_date),
            "confirmed_at": to_utc_z(self.confirmed_at),
            "packed_at": to_utc_z(self.packed_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_history:
            data["status_history"] = [entry.to_dict() for entry in self.status_history]
        return data


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_order_items_price_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    # Snapshot at order time
    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_price_cents = db.Column(db.Integer, nullable=False)

    order = db.relationship("Order", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_price_cents": self.total_price_cents,
        }


class OrderStatusHistory(db.Model):
    """Append-only status log; sequence gives a stable order within one order."""
    __tablename__ = "order_status_history"
    __table_args__ = (
        db.UniqueConstraint("order_id", "sequence", name="uq_order_status_history_order_seq"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    order = db.relationship("Order", back_populates="status_history")

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "status": self.status,
            "timestamp": to_utc_z(self.timestamp),
            "notes": self.notes,
            "updated_by_user_id": self.updated_by_user_id,
        }

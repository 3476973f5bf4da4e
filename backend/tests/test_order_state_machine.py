"""
Order creation and fulfillment state machine tests.

Verifies:
- History mirrors status and never shrinks
- Milestones are stamped once, on entry
- Terminal orders reject further changes
- strict vs permissive transition policy
- Ancillary status-update fields
"""

import re
from datetime import datetime

import pytest

from backoffice.errors import ConflictError, NotFoundError, ValidationError
from backoffice.models import AuditEvent, Order, Sale, StockMovement
from backoffice.services import order_service
from backoffice.services.order_service import HAPPY_PATH, TRANSITION_TABLES, can_transition


@pytest.fixture
def strict_policy(app):
    app.config["ORDER_TRANSITION_POLICY"] = "strict"
    yield
    app.config["ORDER_TRANSITION_POLICY"] = "permissive"


class TestCreateOrder:

    def test_new_order_is_pending_with_history(self, db_session, make_order, make_product, user):
        mug = make_product("MUG", price_cents=900)
        order = make_order([(mug, 2)], shipping_cost_cents=500, tax_amount_cents=90)

        assert re.fullmatch(r"ORD-\d{8}-0001", order.order_number)
        assert order.status == "pending"
        assert [h.status for h in order.status_history] == ["pending"]
        assert order.status_history[0].updated_by_user_id == user.id
        assert order.items[0].name == mug.name
        assert order.items[0].sku == "MUG"
        assert order.items[0].total_price_cents == 1800
        assert order.subtotal_cents == 1800
        assert order.total_amount_cents == 1800 + 500 + 90
        assert order.payment_amount_cents == order.total_amount_cents

    def test_explicit_unit_price(self, db_session, user, make_product):
        mug = make_product("MUG", price_cents=900)
        order = order_service.create_order(
            customer_info={"first_name": "A", "last_name": "B", "email": "ab@example.com"},
            items=[{"product_id": mug.id, "quantity": 3, "unit_price_cents": 700}],
            actor_id=user.id,
            shipping_address={"full_name": "A B", "address": "1 Main St", "city": "Springfield"},
            payment_info={"method": "card", "reference": "pi_123", "status": "completed"},
        )
        assert order.subtotal_cents == 2100
        assert order.shipping_address_dict()["city"] == "Springfield"
        assert order.shipping_address_dict()["country"] == "US"
        assert order.payment_info_dict()["reference"] == "pi_123"

    @pytest.mark.parametrize("customer", [
        None,
        {"first_name": "A", "last_name": "B"},
        {"first_name": "A", "last_name": "B", "email": "not-an-email"},
        {"first_name": "", "last_name": "B", "email": "ab@example.com"},
    ])
    def test_rejects_bad_customer(self, db_session, user, product, customer):
        with pytest.raises(ValidationError):
            order_service.create_order(
                customer_info=customer, items=[{"product_id": product.id, "quantity": 1}], actor_id=user.id
            )

    def test_rejects_empty_items_and_unknown_product(self, db_session, make_order, product, user):
        with pytest.raises(ValidationError):
            make_order([])
        with pytest.raises(ValidationError):
            make_order([(product, 0)])
        with pytest.raises(NotFoundError):
            order_service.create_order(
                customer_info={"first_name": "A", "last_name": "B", "email": "ab@example.com"},
                items=[{"product_id": 9999, "quantity": 1}],
                actor_id=user.id,
            )

    def test_update_pending_order(self, db_session, make_order, make_product, user):
        mug, pot = make_product("MUG", price_cents=900), make_product("POT", price_cents=3000)
        order = make_order([(mug, 1)])

        order = order_service.update_pending_order(
            order.id, actor_id=user.id,
            changes={"items": [{"product_id": pot.id, "quantity": 2}], "priority": "urgent"},
        )
        assert order.subtotal_cents == 6000
        assert order.priority == "urgent"

        order_service.transition(order.id, "confirmed", actor_id=user.id)
        with pytest.raises(ConflictError):
            order_service.update_pending_order(order.id, actor_id=user.id, changes={"notes": "gift wrap"})


class TestTransitions:

    def test_confirm_sets_milestone_and_history(self, db_session, make_order, product, user):
        order = make_order([(product, 1)])
        order = order_service.transition(order.id, "confirmed", actor_id=user.id, notes="Payment cleared")

        assert order.status == "confirmed"
        assert order.confirmed_at is not None
        assert [h.status for h in order.status_history] == ["pending", "confirmed"]
        assert order.status_history[-1].notes == "Payment cleared"
        assert [h.sequence for h in order.status_history] == [1, 2]

    def test_history_mirrors_status_along_happy_path(self, db_session, make_order, product, user, other_user):
        order = make_order([(product, 1)])
        lengths = [len(order.status_history)]

        for status in HAPPY_PATH[1:]:
            actor = other_user if status in ("packed", "shipped") else user
            order = order_service.transition(order.id, status, actor_id=actor.id)
            assert order.status_history[-1].status == order.status
            lengths.append(len(order.status_history))

        assert lengths == sorted(lengths)
        assert lengths[-1] == len(HAPPY_PATH)
        assert order.packed_by_user_id == other_user.id
        assert order.shipped_by_user_id == other_user.id
        assert order.packed_at and order.shipped_at and order.delivered_at
        assert order.actual_delivery is not None

    def test_milestone_is_stamped_once(self, db_session, make_order, product, user):
        order = make_order([(product, 1)])
        order = order_service.transition(order.id, "confirmed", actor_id=user.id)
        first_confirmed = order.confirmed_at

        order_service.transition(order.id, "processing", actor_id=user.id)
        order = order_service.transition(order.id, "confirmed", actor_id=user.id)
        assert order.confirmed_at == first_confirmed

    def test_same_status_adds_no_history(self, db_session, make_order, product, user):
        order = make_order([(product, 1)])
        order = order_service.update_order_status(
            order.id, actor_id=user.id, status="pending", notes="Customer called", tracking_number="TRK-1"
        )
        assert len(order.status_history) == 1
        assert order.tracking_number == "TRK-1"
        assert "Customer called" in order.internal_notes

    def test_notes_without_status_go_to_internal_notes(self, db_session, make_order, product, user):
        order = make_order([(product, 1)])
        order_service.update_order_status(order.id, actor_id=user.id, notes="first")
        order = order_service.update_order_status(order.id, actor_id=user.id, notes="second")

        lines = order.internal_notes.splitlines()
        assert len(lines) == 2
        assert lines[0].startswith("[") and lines[0].endswith("] first")
        assert lines[1].endswith("] second")

    def test_ancillary_fields(self, db_session, make_order, product, user, other_user):
        order = make_order([(product, 1)])
        eta = datetime(2026, 11, 2, 12, 0)
        order = order_service.update_order_status(
            order.id, actor_id=user.id, status="confirmed", estimated_delivery=eta, assigned_to=other_user.id
        )
        assert order.estimated_delivery == eta
        assert order.assigned_to_user_id == other_user.id

    def test_unknown_assignee_and_status(self, db_session, make_order, product, user):
        order = make_order([(product, 1)])
        with pytest.raises(NotFoundError):
            order_service.update_order_status(order.id, actor_id=user.id, assigned_to=9999)
        with pytest.raises(ValidationError):
            order_service.transition(order.id, "teleported", actor_id=user.id)
        with pytest.raises(ValidationError):
            order_service.update_order_status(order.id, actor_id=user.id)
        with pytest.raises(NotFoundError):
            order_service.transition(9999, "confirmed", actor_id=user.id)

    @pytest.mark.parametrize("terminal", ["cancelled", "refunded"])
    def test_terminal_orders_accept_no_change(self, db_session, make_order, product, user, terminal):
        order = make_order([(product, 1)])
        order_service.transition(order.id, terminal, actor_id=user.id)

        with pytest.raises(ConflictError):
            order_service.transition(order.id, "confirmed", actor_id=user.id)
        with pytest.raises(ConflictError):
            order_service.cancel_order(order.id, actor_id=user.id)

        order = db_session.get(Order, order.id)
        assert order.status == terminal
        assert order.status_history[-1].status == terminal

    def test_delivered_cannot_be_refunded_or_cancelled(self, db_session, make_order, product, user):
        order = make_order([(product, 1)])
        order_service.transition(order.id, "delivered", actor_id=user.id)

        with pytest.raises(ConflictError):
            order_service.transition(order.id, "refunded", actor_id=user.id)
        with pytest.raises(ConflictError):
            order_service.cancel_order(order.id, actor_id=user.id, reason="Changed mind")


class TestCancel:

    def test_cancel_records_reason(self, db_session, make_order, product, user):
        order = make_order([(product, 1)])
        order = order_service.cancel_order(order.id, actor_id=user.id, reason="Out of stock")
        assert order.status == "cancelled"
        assert order.status_history[-1].notes == "Out of stock"

    def test_default_reason_and_no_stock_movement(self, db_session, make_order, product, user):
        order = make_order([(product, 1)])
        order_service.transition(order.id, "shipped", actor_id=user.id)
        order = order_service.cancel_order(order.id, actor_id=user.id)

        assert order.status_history[-1].notes == "Order cancelled"
        assert db_session.query(StockMovement).count() == 0
        event = db_session.query(AuditEvent).filter_by(action="order.cancelled").one()
        assert event.details["from_status"] == "shipped"


class TestTransitionPolicy:

    def test_permissive_table(self):
        assert can_transition("pending", "delivered", "permissive")
        assert can_transition("shipped", "confirmed", "permissive")
        assert not can_transition("delivered", "refunded", "permissive")
        assert TRANSITION_TABLES["permissive"]["cancelled"] == frozenset()

    def test_strict_table(self):
        assert can_transition("pending", "confirmed", "strict")
        assert can_transition("packed", "refunded", "strict")
        assert not can_transition("pending", "packed", "strict")
        assert not can_transition("shipped", "packed", "strict")

    def test_strict_policy_rejects_skips(self, db_session, make_order, product, user, strict_policy):
        order = make_order([(product, 1)])
        with pytest.raises(ConflictError):
            order_service.transition(order.id, "shipped", actor_id=user.id)

        order = order_service.transition(order.id, "confirmed", actor_id=user.id)
        assert order.status == "confirmed"
        order = order_service.cancel_order(order.id, actor_id=user.id)
        assert order.status == "cancelled"


class TestDeliveredConversion:

    def test_delivered_creates_one_sale(self, db_session, make_order, make_product, user):
        mug = make_product("MUG", price_cents=900)
        order = make_order([(mug, 2)], shipping_cost_cents=300)

        order = order_service.transition(order.id, "confirmed", actor_id=user.id)
        assert order.confirmed_at is not None
        order = order_service.transition(order.id, "delivered", actor_id=user.id)

        assert order.delivered_at is not None
        assert order.actual_delivery is not None
        sales = db_session.query(Sale).filter_by(order_number=order.order_number).all()
        assert len(sales) == 1
        assert sales[0].total_amount_cents == order.total_amount_cents

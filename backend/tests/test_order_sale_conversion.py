"""
Order -> Sale conversion tests.

Verifies:
- One sale per delivered order, however many times conversion runs
- Sale snapshot mirrors the order
- A failed conversion leaves the order delivered and can be retried
- A racing duplicate insert resolves to the existing sale
"""

import re

import pytest
from sqlalchemy.exc import OperationalError

from backoffice.errors import ConflictError, NotFoundError, SaleConversionError
from backoffice.models import Order, Sale
from backoffice.services import order_sale_service, order_service


def _fail_build(order, seller_id):
    raise OperationalError("INSERT INTO sales", {}, Exception("database is locked"))


@pytest.fixture
def delivered_without_sale(db_session, make_order, make_product, user, monkeypatch):
    """A delivered order whose sale could not be written."""
    mug = make_product("MUG", price_cents=900)
    order = make_order([(mug, 2)], shipping_cost_cents=250)
    with monkeypatch.context() as patch:
        patch.setattr(order_sale_service, "_build_sale", _fail_build)
        with pytest.raises(SaleConversionError):
            order_service.transition(order.id, "delivered", actor_id=user.id)
    return db_session.get(Order, order.id)


class TestConvertOrderToSale:

    def test_sale_snapshot(self, db_session, make_order, make_product, user):
        mug = make_product("MUG", price_cents=900)
        order = make_order([(mug, 2)], shipping_cost_cents=250, payment_info={"method": "card", "reference": "pi_9"})
        order = order_service.transition(order.id, "delivered", actor_id=user.id)

        sale = order_sale_service.find_sale_for_order(order.order_number)
        assert re.fullmatch(r"RCP-\d{8}-0001", sale.receipt_number)
        assert sale.status == "completed"
        assert sale.seller_id == user.id
        assert sale.notes == f"Sale from e-commerce order {order.order_number}"
        assert sale.sale_date == order.delivered_at
        assert sale.subtotal_cents == 1800
        assert sale.total_amount_cents == order.total_amount_cents == 2050
        assert sale.amount_paid_cents == 2050
        assert sale.change_amount_cents == 0
        assert [(l.product_id, l.quantity, l.total_price_cents) for l in sale.lines] == [(mug.id, 2, 1800)]
        assert len(sale.payments) == 1
        assert sale.payments[0].method == "card"
        assert sale.payments[0].amount_cents == 2050
        assert sale.payments[0].reference == "pi_9"
        assert sale.payments[0].status == "completed"

    def test_conversion_is_idempotent(self, db_session, make_order, product, user):
        order = make_order([(product, 1)])
        order_service.transition(order.id, "delivered", actor_id=user.id)

        first, created_first = order_sale_service.convert_order_to_sale(order.id, user.id)
        second, created_second = order_sale_service.convert_order_to_sale(order.id, user.id)

        assert not created_first and not created_second
        assert first.id == second.id
        assert db_session.query(Sale).filter_by(order_number=order.order_number).count() == 1

    def test_only_delivered_orders_convert(self, db_session, make_order, product, user):
        order = make_order([(product, 1)])
        with pytest.raises(ConflictError):
            order_sale_service.convert_order_to_sale(order.id, user.id)
        with pytest.raises(NotFoundError):
            order_sale_service.convert_order_to_sale(9999, user.id)


class TestConversionFailure:

    def test_order_stays_delivered(self, db_session, delivered_without_sale):
        order = delivered_without_sale
        assert order.status == "delivered"
        assert order.status_history[-1].status == "delivered"
        assert order_sale_service.find_sale_for_order(order.order_number) is None

    def test_error_carries_order_number(self, db_session, make_order, product, user, monkeypatch):
        order = make_order([(product, 1)])
        monkeypatch.setattr(order_sale_service, "_build_sale", _fail_build)

        with pytest.raises(SaleConversionError) as exc_info:
            order_service.transition(order.id, "delivered", actor_id=user.id)
        assert exc_info.value.status_code == 503
        assert exc_info.value.details == {"order_number": order.order_number, "retryable": True}

    def test_retry_creates_sale(self, db_session, delivered_without_sale, user):
        order = delivered_without_sale
        sale, created = order_sale_service.convert_order_to_sale(order.id, user.id)
        assert created
        assert sale.order_number == order.order_number

    def test_convert_pending_deliveries(self, db_session, delivered_without_sale, make_order, product, user):
        converted = make_order([(product, 1)])
        order_service.transition(converted.id, "delivered", actor_id=user.id)

        results = order_sale_service.convert_pending_deliveries()

        assert len(results) == 1
        order_number, receipt_number = results[0]
        assert order_number == delivered_without_sale.order_number
        assert receipt_number.startswith("RCP-")
        assert order_sale_service.convert_pending_deliveries() == []

    def test_one_failed_order_does_not_stop_the_batch(self, db_session, delivered_without_sale, make_order, product, user, monkeypatch):
        second = make_order([(product, 1)])
        with monkeypatch.context() as patch:
            patch.setattr(order_sale_service, "_build_sale", _fail_build)
            with pytest.raises(SaleConversionError):
                order_service.transition(second.id, "delivered", actor_id=user.id)

        stuck_id = delivered_without_sale.id
        real_convert = order_sale_service.convert_order_to_sale

        def convert_or_conflict(order_id, actor_id=None):
            if order_id == stuck_id:
                raise ConflictError("Order was modified concurrently, please retry")
            return real_convert(order_id, actor_id)

        monkeypatch.setattr(order_sale_service, "convert_order_to_sale", convert_or_conflict)

        results = order_sale_service.convert_pending_deliveries()

        assert results[0] == (delivered_without_sale.order_number, None)
        assert results[1][0] == second.order_number
        assert results[1][1].startswith("RCP-")

    def test_seller_defaults_to_last_status_actor(self, db_session, delivered_without_sale, user):
        sale, _ = order_sale_service.convert_order_to_sale(delivered_without_sale.id)
        assert sale.seller_id == user.id


class TestConversionRace:

    def test_duplicate_insert_returns_winner(self, db_session, delivered_without_sale, user, monkeypatch):
        order = delivered_without_sale
        winner = Sale(
            receipt_number="RCP-WINNER",
            order_number=order.order_number,
            seller_id=user.id,
            source="ecommerce",
            subtotal_cents=order.subtotal_cents,
            total_amount_cents=order.total_amount_cents,
            amount_paid_cents=order.total_amount_cents,
            sale_date=order.delivered_at,
        )
        db_session.add(winner)
        db_session.commit()
        winner_id = winner.id

        # Hide the winner from the pre-insert checks, as if it committed in between
        real_find = order_sale_service.find_sale_for_order
        calls = {"n": 0}

        def racing_find(order_number):
            calls["n"] += 1
            if calls["n"] <= 2:
                return None
            return real_find(order_number)

        monkeypatch.setattr(order_sale_service, "find_sale_for_order", racing_find)

        sale, created = order_sale_service.convert_order_to_sale(order.id, user.id)

        assert not created
        assert sale.id == winner_id
        assert db_session.query(Sale).count() == 1

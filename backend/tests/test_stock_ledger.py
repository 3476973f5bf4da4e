"""
Stock ledger tests.

Verifies:
- Snapshots balance and never go negative
- Movements cannot be rewritten or deleted
- Stock changes and their movements commit together
"""

import pytest

from backoffice.errors import ConflictError, NotFoundError, ValidationError
from backoffice.models import AuditEvent, ImmutableRowError, Product, StockMovement
from backoffice.services import stock_ledger_service
from backoffice.services.stock_ledger_service import signed_quantity


class TestAppendMovement:

    def test_balanced_row_is_written(self, db_session, product, user):
        movement = stock_ledger_service.append_movement(
            product_id=product.id, movement_type="adjustment", quantity=3,
            previous_stock=5, new_stock=8, user_id=user.id, unit_cost_cents=250,
        )
        db_session.commit()
        assert movement.id is not None
        assert movement.total_value_cents == 750

    @pytest.mark.parametrize("previous, quantity, new", [
        (5, 3, 9),
        (5, -6, -1),
        (-1, 1, 0),
    ])
    def test_rejects_bad_snapshot(self, db_session, product, user, previous, quantity, new):
        with pytest.raises(ValidationError):
            stock_ledger_service.append_movement(
                product_id=product.id, movement_type="adjustment", quantity=quantity,
                previous_stock=previous, new_stock=new, user_id=user.id,
            )

    def test_rejects_unknown_type_and_negative_cost(self, db_session, product, user):
        with pytest.raises(ValidationError):
            stock_ledger_service.append_movement(
                product_id=product.id, movement_type="theft", quantity=1,
                previous_stock=0, new_stock=1, user_id=user.id,
            )
        with pytest.raises(ValidationError):
            stock_ledger_service.append_movement(
                product_id=product.id, movement_type="purchase", quantity=1,
                previous_stock=0, new_stock=1, user_id=user.id, unit_cost_cents=-5,
            )


class TestImmutability:

    def test_movement_cannot_be_updated(self, db_session, product, user):
        movement = stock_ledger_service.record_manual_movement(
            product_id=product.id, movement_type="adjustment", quantity=2, user_id=user.id
        )
        movement.notes = "rewritten"
        with pytest.raises(ImmutableRowError):
            db_session.flush()
        db_session.rollback()

    def test_movement_cannot_be_deleted(self, db_session, product, user):
        movement = stock_ledger_service.record_manual_movement(
            product_id=product.id, movement_type="adjustment", quantity=2, user_id=user.id
        )
        db_session.delete(movement)
        with pytest.raises(ImmutableRowError):
            db_session.flush()
        db_session.rollback()
        assert db_session.query(StockMovement).count() == 1


class TestApplyStockChange:

    def test_insufficient_stock(self, db_session, product, user):
        with pytest.raises(ConflictError) as exc_info:
            stock_ledger_service.apply_stock_change(
                product_id=product.id, movement_type="sale", quantity=-6, user_id=user.id
            )
        assert exc_info.value.details["on_hand"] == 5
        db_session.rollback()
        assert db_session.get(Product, product.id).stock_quantity == 5
        assert db_session.query(StockMovement).count() == 0

    def test_stock_and_movement_move_together(self, db_session, product, user):
        movement = stock_ledger_service.apply_stock_change(
            product_id=product.id, movement_type="sale", quantity=-2, user_id=user.id, reference="RCP-1"
        )
        db_session.commit()
        assert (movement.previous_stock, movement.new_stock) == (5, 3)
        assert db_session.get(Product, product.id).stock_quantity == 3


class TestSignedQuantity:

    @pytest.mark.parametrize("movement_type, quantity, expected", [
        ("purchase", 4, 4),
        ("purchase", -4, 4),
        ("return", 2, 2),
        ("sale", 3, -3),
        ("damage", 1, -1),
        ("expired", -1, -1),
        ("transfer", 5, -5),
        ("adjustment", -7, -7),
        ("adjustment", 7, 7),
    ])
    def test_direction(self, movement_type, quantity, expected):
        assert signed_quantity(movement_type, quantity) == expected


class TestManualMovements:

    def test_damage_reduces_stock(self, db_session, product, user):
        movement = stock_ledger_service.record_manual_movement(
            product_id=product.id, movement_type="damage", quantity=2, user_id=user.id, notes="Dropped pallet"
        )
        assert movement.quantity == -2
        assert movement.unit_cost_cents == product.cost_price_cents
        assert db_session.get(Product, product.id).stock_quantity == 3

        event = db_session.query(AuditEvent).filter_by(action="stock.movement_recorded").one()
        assert event.details["new_stock"] == 3
        assert event.resource_id == str(product.id)

    def test_rejections(self, db_session, product, user):
        with pytest.raises(ValidationError):
            stock_ledger_service.record_manual_movement(
                product_id=product.id, movement_type="adjustment", quantity=0, user_id=user.id
            )
        with pytest.raises(ConflictError):
            stock_ledger_service.record_manual_movement(
                product_id=product.id, movement_type="expired", quantity=9, user_id=user.id
            )
        with pytest.raises(NotFoundError):
            stock_ledger_service.record_manual_movement(
                product_id=9999, movement_type="return", quantity=1, user_id=user.id
            )
        with pytest.raises(NotFoundError):
            stock_ledger_service.record_manual_movement(
                product_id=product.id, movement_type="return", quantity=1, user_id=9999
            )
        assert db_session.query(StockMovement).count() == 0
        assert db_session.get(Product, product.id).stock_quantity == 5

    def test_queries_newest_first(self, db_session, product, user):
        first = stock_ledger_service.record_manual_movement(
            product_id=product.id, movement_type="return", quantity=1, user_id=user.id, reference="RMA-1"
        )
        second = stock_ledger_service.record_manual_movement(
            product_id=product.id, movement_type="sale", quantity=1, user_id=user.id, reference="RCP-9"
        )

        assert [m.id for m in stock_ledger_service.query_movements(product.id)] == [second.id, first.id]
        assert [m.id for m in stock_ledger_service.query_movements(product.id, "RMA-1")] == [first.id]

        items, total = stock_ledger_service.list_movements(movement_type="sale")
        assert total == 1
        assert items[0].id == second.id
        items, total = stock_ledger_service.list_movements(product_id=product.id, limit=1, offset=1)
        assert total == 2
        assert [m.id for m in items] == [first.id]

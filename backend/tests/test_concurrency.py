# Overview: Threaded tests for receiving, numbering and conversion races on a file-backed SQLite database.

import os
import tempfile
import threading
import unittest
from unittest import mock

from sqlalchemy.exc import OperationalError

from backoffice import create_app
from backoffice.errors import ConflictError, SaleConversionError
from backoffice.extensions import db
from backoffice.models import Product, PurchaseOrder, Sale, StockMovement, Supplier, User
from backoffice.services import order_sale_service, order_service, purchase_order_service
from backoffice.services.concurrency import begin_write, run_with_retry
from backoffice.services.document_service import SALES_ORDER, next_document_number
from backoffice.services.purchase_order_service import ReceivingLine


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "DB_RETRY_ATTEMPTS": 5,
            "DB_RETRY_BACKOFF": 0.01,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            user = User(username="concurrent_user", email="concurrent@example.com")
            supplier = Supplier(name="Concurrent Supply", code="CONC")
            product = Product(sku="CONCUR-1", name="Concurrent Product", price_cents=1000, cost_price_cents=400)
            db.session.add_all([user, supplier, product])
            db.session.commit()
            self.user_id = user.id
            self.supplier_id = supplier.id
            self.product_id = product.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_threads(self, worker, count):
        errors = []
        results = []
        lock = threading.Lock()

        def _target(index):
            with self.app.app_context():
                try:
                    result = worker(index)
                    with lock:
                        results.append(result)
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=_target, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results, errors

    def test_concurrent_receives_never_over_receive(self):
        with self.app.app_context():
            po = purchase_order_service.create_purchase_order(
                supplier_id=self.supplier_id,
                items=[{"product_id": self.product_id, "quantity": 20, "unit_cost_cents": 400}],
                created_by=self.user_id,
            )
            po = purchase_order_service.send_purchase_order(po.id, actor_id=self.user_id)
            po_id = po.id
            db.session.remove()

        def worker(_):
            purchase_order_service.receive_purchase_order(
                po_id, [ReceivingLine(product_id=self.product_id, quantity=5)], received_by=self.user_id
            )
            return True

        results, errors = self._run_threads(worker, 6)

        self.assertEqual(len(results), 4)
        self.assertEqual(len(errors), 2)
        self.assertTrue(all(isinstance(e, ConflictError) for e in errors), errors)

        with self.app.app_context():
            po = db.session.get(PurchaseOrder, po_id)
            self.assertEqual(po.status, "fully_received")
            self.assertEqual(po.items[0].received_quantity, 20)
            self.assertEqual(db.session.get(Product, self.product_id).stock_quantity, 20)

            movements = (
                db.session.query(StockMovement)
                .filter_by(reference=po.order_number)
                .order_by(StockMovement.id)
                .all()
            )
            self.assertEqual(len(movements), 4)
            self.assertEqual([m.new_stock for m in movements], [5, 10, 15, 20])

    def test_document_numbers_are_unique(self):
        def worker(_):
            def _op():
                begin_write()
                number = next_document_number(document_type=SALES_ORDER[0], prefix=SALES_ORDER[1])
                db.session.commit()
                return number

            return run_with_retry(_op)

        results, errors = self._run_threads(worker, 8)

        self.assertEqual(errors, [])
        self.assertEqual(len(set(results)), 8)
        self.assertEqual(sorted(int(n.rsplit("-", 1)[1]) for n in results), list(range(1, 9)))

    def test_concurrent_conversion_creates_one_sale(self):
        with self.app.app_context():
            order = order_service.create_order(
                customer_info={"first_name": "Race", "last_name": "Condition", "email": "race@example.com"},
                items=[{"product_id": self.product_id, "quantity": 1}],
                actor_id=self.user_id,
            )
            failure = OperationalError("INSERT INTO sales", {}, Exception("database is locked"))
            with mock.patch.object(order_sale_service, "_build_sale", side_effect=failure):
                with self.assertRaises(SaleConversionError):
                    order_service.transition(order.id, "delivered", actor_id=self.user_id)
            order_id = order.id
            order_number = order.order_number
            db.session.remove()

        def worker(_):
            sale, created = order_sale_service.convert_order_to_sale(order_id, self.user_id)
            return sale.id, created

        results, errors = self._run_threads(worker, 4)

        self.assertEqual(errors, [])
        self.assertEqual(len({sale_id for sale_id, _ in results}), 1)
        self.assertEqual(sum(1 for _, created in results if created), 1)

        with self.app.app_context():
            self.assertEqual(db.session.query(Sale).filter_by(order_number=order_number).count(), 1)


if __name__ == "__main__":
    unittest.main()

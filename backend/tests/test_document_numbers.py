import unittest
from datetime import date

from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import DocumentSequence
from backoffice.services.document_service import (
    PURCHASE_ORDER,
    SALE_RECEIPT,
    DocumentSequenceError,
    format_document_number,
    next_document_number,
)


class DocumentNumberTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        })
        cls.ctx = cls.app.app_context()
        cls.ctx.push()
        db.create_all()

    @classmethod
    def tearDownClass(cls):
        db.session.remove()
        db.drop_all()
        cls.ctx.pop()

    def setUp(self):
        db.session.query(DocumentSequence).delete()
        db.session.commit()

    def _next(self, kind, day):
        number = next_document_number(document_type=kind[0], prefix=kind[1], day=day)
        db.session.commit()
        return number

    def test_format(self):
        self.assertEqual(format_document_number("PO", date(2026, 3, 1), 7), "PO-20260301-0007")
        self.assertEqual(format_document_number("ORD", date(2026, 3, 1), 12345), "ORD-20260301-12345")
        self.assertEqual(format_document_number("RCP", date(2026, 3, 1), 3, pad=6), "RCP-20260301-000003")

    def test_numbers_increase_within_a_day(self):
        day = date(2026, 3, 1)
        numbers = [self._next(PURCHASE_ORDER, day) for _ in range(3)]
        self.assertEqual(numbers, ["PO-20260301-0001", "PO-20260301-0002", "PO-20260301-0003"])

    def test_each_day_and_type_has_its_own_counter(self):
        self._next(PURCHASE_ORDER, date(2026, 3, 1))
        self._next(PURCHASE_ORDER, date(2026, 3, 1))

        self.assertEqual(self._next(PURCHASE_ORDER, date(2026, 3, 2)), "PO-20260302-0001")
        self.assertEqual(self._next(SALE_RECEIPT, date(2026, 3, 1)), "RCP-20260301-0001")
        self.assertEqual(db.session.query(DocumentSequence).count(), 3)

    def test_rolled_back_number_is_reissued(self):
        day = date(2026, 3, 1)
        self._next(PURCHASE_ORDER, day)
        next_document_number(document_type=PURCHASE_ORDER[0], prefix=PURCHASE_ORDER[1], day=day)
        db.session.rollback()
        self.assertEqual(self._next(PURCHASE_ORDER, day), "PO-20260301-0002")

    def test_requires_type_and_prefix(self):
        with self.assertRaises(DocumentSequenceError):
            next_document_number(document_type="", prefix="PO")
        with self.assertRaises(DocumentSequenceError):
            next_document_number(document_type="PURCHASE_ORDER", prefix="")


if __name__ == "__main__":
    unittest.main()

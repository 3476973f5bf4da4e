# Overview: Atomic, date-scoped document numbering.

from __future__ import annotations

from datetime import date

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import business_date
from .concurrency import RetryableConflict


PURCHASE_ORDER = ("PURCHASE_ORDER", "PO")
SALES_ORDER = ("SALES_ORDER", "ORD")
SALE_RECEIPT = ("SALE_RECEIPT", "RCP")


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def format_document_number(prefix: str, day: date, number: int, pad: int = 4) -> str:
    return f"{prefix}-{day:%Y%m%d}-{number:0{pad}d}"


def next_document_number(
    *,
    document_type: str,
    prefix: str,
    day: date | None = None,
    pad: int = 4,
) -> str:
    """
    Allocate the next number for (document_type, day), e.g. PO-20260301-0007.

    Must run inside the caller's write transaction (wrapped by
    run_with_retry). The counter row is bumped with a single UPDATE; the first
    document of a day inserts the row, and a concurrent first insert surfaces
    as RetryableConflict so the caller re-runs and takes the UPDATE path.
    """
    if not document_type:
        raise DocumentSequenceError("document_type is required")
    if not prefix:
        raise DocumentSequenceError("prefix is required")

    day = day or business_date()

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.business_date == day,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(document_type=document_type, business_date=day)
            .scalar()
        )
        number = current - 1
    else:
        db.session.add(DocumentSequence(document_type=document_type, business_date=day, next_number=2))
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise RetryableConflict(f"{document_type} sequence for {day} created concurrently") from exc
        number = 1

    return format_document_number(prefix, day, number, pad)

# Overview: Invoice number allocation backed by per-type, per-year sequences.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..models.invoices import (
    INVOICE_PURCHASE,
    INVOICE_RETURN_PURCHASE,
    INVOICE_RETURN_SALES,
    INVOICE_SALES,
)
from ..time_utils import utcnow
from .concurrency import RetryableConflict


INVOICE_PREFIXES = {
    INVOICE_SALES: "SI",
    INVOICE_PURCHASE: "PI",
    INVOICE_RETURN_SALES: "SR",
    INVOICE_RETURN_PURCHASE: "PR",
}


def _current_value(document_type: str, period: int) -> int:
    return (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type, period=period)
        .scalar()
    )


def next_document_number(
    *,
    document_type: str,
    prefix: str,
    period: int,
    pad: int = 6,
) -> str:
    """
    Allocate the next number for a document type within a period (year).

    Runs inside the caller's transaction: the number is only burned if the
    caller commits. A first-of-period race on the insert surfaces as
    RetryableConflict so the whole caller operation is retried.
    """
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.period == period,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _current_value(document_type, period) - 1
    else:
        seq = DocumentSequence(document_type=document_type, period=period, next_number=2)
        db.session.add(seq)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise RetryableConflict(f"sequence {document_type}/{period} created concurrently") from exc
        next_num = 1

    return f"{prefix}{period}{next_num:0{pad}d}"


def next_invoice_number(invoice_type: str, at: datetime | None = None) -> str:
    """SI2026000001 style numbers; the counter restarts every calendar year."""
    at = at or utcnow()
    return next_document_number(
        document_type=invoice_type,
        prefix=INVOICE_PREFIXES[invoice_type],
        period=at.year,
    )

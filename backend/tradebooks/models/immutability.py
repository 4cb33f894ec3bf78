"""
Append-only enforcement at the ORM layer.

Stock movements, ledger postings, ledger entries, and audit events are never
updated or deleted once flushed. Invoice lines freeze once their invoice has
left draft; the check reads the invoice status as it was BEFORE the current
flush so that the confirm transition itself (recompute lines, then flip the
status) is still allowed.

Bulk query.update()/query.delete() bypass mapper events; services never use
them on these tables.
"""

from __future__ import annotations

from sqlalchemy import event, select
from sqlalchemy.orm.attributes import get_history

from ..errors import ImmutableRecordError
from .documents import AuditEvent
from .invoices import STATUS_DRAFT, Invoice, InvoiceLine
from .ledger import LedgerEntry, LedgerPosting
from .stock import StockMovement


def _reject_update(mapper, connection, target):
    raise ImmutableRecordError(type(target).__name__, target.id, "update")


def _reject_delete(mapper, connection, target):
    raise ImmutableRecordError(type(target).__name__, target.id, "delete")


def _status_before_flush(invoice) -> str:
    history = get_history(invoice, "status")
    if history.deleted:
        return history.deleted[0]
    return invoice.status


def _invoice_status(connection, line):
    invoice = line.invoice
    if invoice is not None:
        return _status_before_flush(invoice)
    # Orphaned from the collection; read what is stored
    return connection.execute(
        select(Invoice.status).where(Invoice.id == line.invoice_id)
    ).scalar()


def _check_invoice_line_change(mapper, connection, target):
    if _invoice_status(connection, target) not in (None, STATUS_DRAFT):
        raise ImmutableRecordError("InvoiceLine", target.id, "update")


def _check_invoice_line_delete(mapper, connection, target):
    if _invoice_status(connection, target) not in (None, STATUS_DRAFT):
        raise ImmutableRecordError("InvoiceLine", target.id, "delete")


_LISTENERS = (
    (StockMovement, "before_update", _reject_update),
    (StockMovement, "before_delete", _reject_delete),
    (LedgerPosting, "before_update", _reject_update),
    (LedgerPosting, "before_delete", _reject_delete),
    (LedgerEntry, "before_update", _reject_update),
    (LedgerEntry, "before_delete", _reject_delete),
    (AuditEvent, "before_update", _reject_update),
    (AuditEvent, "before_delete", _reject_delete),
    (InvoiceLine, "before_update", _check_invoice_line_change),
    (InvoiceLine, "before_delete", _check_invoice_line_delete),
)


def register_immutability_listeners() -> None:
    """Idempotent; safe to call once per app created in the same process."""
    for model, identifier, fn in _LISTENERS:
        if not event.contains(model, identifier, fn):
            event.listen(model, identifier, fn)

from .masters import Item, Customer, Supplier, ControlAccount
from .invoices import Invoice, InvoiceLine
from .stock import StockMovement
from .ledger import LedgerPosting, LedgerEntry
from .documents import AuditEvent, DocumentSequence
from .immutability import register_immutability_listeners

register_immutability_listeners()

__all__ = [
    'Item', 'Customer', 'Supplier', 'ControlAccount',
    'Invoice', 'InvoiceLine',
    'StockMovement',
    'LedgerPosting', 'LedgerEntry',
    'AuditEvent', 'DocumentSequence',
    'register_immutability_listeners',
]

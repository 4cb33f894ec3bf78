# Overview: How each invoice type maps onto stock movements and ledger sides.
"""
POSTING RULES (AUTHORITATIVE)

Stock:
    purchase         -> in                    (+qty)
    sales            -> out                   (-qty)
    return_purchase  -> return_to_supplier    (line qty is negative; stock goes down)
    return_sales     -> return_from_customer  (line qty is negative; stock goes up)

Ledger (grand total, one pair per confirmed invoice):
    purchase         Dr INVENTORY   Cr Supplier
    sales            Dr Customer    Cr SALES
    return_purchase  Dr Supplier    Cr INVENTORY
    return_sales     Dr SALES       Cr Customer

Payments (amount received or paid):
    sales            Dr CASH        Cr Customer
    purchase         Dr Supplier    Cr CASH

THIS MODULE DOES NOT write to the database.
"""

from __future__ import annotations

from ..models.invoices import (
    INVOICE_PURCHASE,
    INVOICE_RETURN_PURCHASE,
    INVOICE_RETURN_SALES,
    INVOICE_SALES,
)
from ..models.masters import CONTROL_CASH, CONTROL_INVENTORY, CONTROL_SALES
from ..models.stock import (
    MOVEMENT_IN,
    MOVEMENT_OUT,
    MOVEMENT_RETURN_FROM_CUSTOMER,
    MOVEMENT_RETURN_TO_SUPPLIER,
)
from .accounting_service import AccountRef

MOVEMENT_TYPES = {
    INVOICE_PURCHASE: MOVEMENT_IN,
    INVOICE_SALES: MOVEMENT_OUT,
    INVOICE_RETURN_PURCHASE: MOVEMENT_RETURN_TO_SUPPLIER,
    INVOICE_RETURN_SALES: MOVEMENT_RETURN_FROM_CUSTOMER,
}

# Multiplier from signed line quantity to stock delta
_STOCK_DIRECTION = {
    INVOICE_PURCHASE: 1,
    INVOICE_SALES: -1,
    INVOICE_RETURN_PURCHASE: 1,
    INVOICE_RETURN_SALES: -1,
}


def stock_delta(invoice_type: str, line_quantity: int) -> int:
    return _STOCK_DIRECTION[invoice_type] * line_quantity


def party_account(invoice) -> AccountRef:
    if invoice.party_type == "customer":
        return AccountRef.customer(invoice.customer_id)
    return AccountRef.supplier(invoice.supplier_id)


def invoice_accounts(invoice) -> tuple[AccountRef, AccountRef]:
    """(debit, credit) for the invoice's grand-total posting."""
    party = party_account(invoice)
    if invoice.invoice_type == INVOICE_PURCHASE:
        return AccountRef.control(CONTROL_INVENTORY), party
    if invoice.invoice_type == INVOICE_SALES:
        return party, AccountRef.control(CONTROL_SALES)
    if invoice.invoice_type == INVOICE_RETURN_PURCHASE:
        return party, AccountRef.control(CONTROL_INVENTORY)
    if invoice.invoice_type == INVOICE_RETURN_SALES:
        return AccountRef.control(CONTROL_SALES), party
    raise ValueError(f"Unknown invoice type: {invoice.invoice_type}")


def payment_accounts(invoice) -> tuple[AccountRef, AccountRef]:
    """(debit, credit) for a settlement against the invoice."""
    party = party_account(invoice)
    if invoice.invoice_type == INVOICE_SALES:
        return AccountRef.control(CONTROL_CASH), party
    if invoice.invoice_type == INVOICE_PURCHASE:
        return party, AccountRef.control(CONTROL_CASH)
    raise ValueError(f"Payments are not recorded against {invoice.invoice_type} invoices")


def posting_amount(invoice) -> int:
    """Ledger amounts are positive; return invoices store negative totals."""
    return abs(invoice.grand_total_cents)


def posting_description(invoice) -> str:
    labels = {
        INVOICE_PURCHASE: "Purchase invoice",
        INVOICE_SALES: "Sales invoice",
        INVOICE_RETURN_PURCHASE: "Purchase return",
        INVOICE_RETURN_SALES: "Sales return",
    }
    return f"{labels[invoice.invoice_type]} {invoice.invoice_number}"

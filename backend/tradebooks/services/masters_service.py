# Overview: Item, party, and control-account master data used by the posting services.

from __future__ import annotations

from ..errors import NotFound, ValidationFailed
from ..extensions import db
from ..models import ControlAccount, Customer, Item, Supplier
from ..models.invoices import INVOICE_RETURN_SALES, INVOICE_SALES
from ..models.masters import (
    CONTROL_CASH,
    CONTROL_INVENTORY,
    CONTROL_SALES,
    NATURE_CREDIT,
    NATURE_DEBIT,
)

CONTROL_ACCOUNTS = {
    CONTROL_INVENTORY: ("Inventory", NATURE_DEBIT),
    CONTROL_SALES: ("Sales", NATURE_CREDIT),
    CONTROL_CASH: ("Cash", NATURE_DEBIT),
}

CUSTOMER_PARTY_TYPES = ("customer", INVOICE_SALES, INVOICE_RETURN_SALES)


# =============================================================================
# CONTROL ACCOUNTS
# =============================================================================

def ensure_control_accounts() -> list[ControlAccount]:
    """Create any missing control accounts. Idempotent; flushes but does not commit."""
    existing = {a.code: a for a in db.session.query(ControlAccount).all()}
    accounts = []
    for code, (name, nature) in CONTROL_ACCOUNTS.items():
        account = existing.get(code)
        if account is None:
            account = ControlAccount(code=code, name=name, nature=nature)
            db.session.add(account)
        accounts.append(account)
    db.session.flush()
    return accounts


def get_control_account(code: str) -> ControlAccount:
    account = db.session.query(ControlAccount).filter_by(code=code).first()
    if account is None:
        if code not in CONTROL_ACCOUNTS:
            raise NotFound("ControlAccount", code)
        ensure_control_accounts()
        account = db.session.query(ControlAccount).filter_by(code=code).one()
    return account


# =============================================================================
# ITEMS AND PARTIES
# =============================================================================

def _require_code_and_name(code, name) -> list[str]:
    errors = []
    if not code or not str(code).strip():
        errors.append("code is required")
    if not name or not str(name).strip():
        errors.append("name is required")
    return errors


def _require_unique_code(model, code: str) -> None:
    if db.session.query(model.id).filter(model.code == code).first() is not None:
        raise ValidationFailed(
            f"{model.__name__} code '{code}' already exists",
            errors=[f"code '{code}' already exists"],
        )


def create_item(
    *,
    code: str,
    name: str,
    tax_rate_bps: int = 0,
    sale_price_cents: int | None = None,
    purchase_price_cents: int | None = None,
    min_stock: int = 0,
    max_stock: int | None = None,
    unit: str | None = None,
) -> Item:
    errors = _require_code_and_name(code, name)
    if min_stock < 0:
        errors.append("min_stock cannot be negative")
    if max_stock is not None and max_stock < min_stock:
        errors.append("max_stock cannot be below min_stock")
    if errors:
        raise ValidationFailed("Invalid item", errors=errors)
    _require_unique_code(Item, code)

    item = Item(
        code=code.strip(),
        name=name.strip(),
        unit=unit,
        tax_rate_bps=tax_rate_bps,
        sale_price_cents=sale_price_cents,
        purchase_price_cents=purchase_price_cents,
        min_stock=min_stock,
        max_stock=max_stock,
        current_stock=0,
        is_active=True,
    )
    db.session.add(item)
    db.session.commit()
    return item


def create_customer(
    *,
    code: str,
    name: str,
    credit_limit_cents: int | None = None,
    payment_terms_days: int | None = None,
    phone: str | None = None,
) -> Customer:
    errors = _require_code_and_name(code, name)
    if credit_limit_cents is not None and credit_limit_cents < 0:
        errors.append("credit_limit_cents cannot be negative")
    if errors:
        raise ValidationFailed("Invalid customer", errors=errors)
    _require_unique_code(Customer, code)

    customer = Customer(
        code=code.strip(),
        name=name.strip(),
        phone=phone,
        credit_limit_cents=credit_limit_cents,
        payment_terms_days=payment_terms_days,
        is_active=True,
    )
    db.session.add(customer)
    db.session.commit()
    return customer


def create_supplier(
    *,
    code: str,
    name: str,
    payment_terms_days: int | None = None,
    phone: str | None = None,
) -> Supplier:
    errors = _require_code_and_name(code, name)
    if errors:
        raise ValidationFailed("Invalid supplier", errors=errors)
    _require_unique_code(Supplier, code)

    supplier = Supplier(
        code=code.strip(),
        name=name.strip(),
        phone=phone,
        payment_terms_days=payment_terms_days,
        is_active=True,
    )
    db.session.add(supplier)
    db.session.commit()
    return supplier


def set_active(model, record_id: int, is_active: bool):
    """Deactivate or reactivate an item, customer, or supplier."""
    record = db.session.get(model, record_id)
    if record is None:
        raise NotFound(model.__name__, record_id)
    record.is_active = is_active
    db.session.commit()
    return record


def get_item(item_id: int) -> Item:
    item = db.session.get(Item, item_id)
    if item is None:
        raise NotFound("Item", item_id)
    return item


def get_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFound("Customer", customer_id)
    return customer


def get_supplier(supplier_id: int) -> Supplier:
    supplier = db.session.get(Supplier, supplier_id)
    if supplier is None:
        raise NotFound("Supplier", supplier_id)
    return supplier


def get_party(party_type: str, party_id: int):
    """party_type is "customer", "supplier", or an invoice type (sales-side types resolve to the customer)."""
    if party_type in CUSTOMER_PARTY_TYPES:
        return get_customer(party_id)
    return get_supplier(party_id)

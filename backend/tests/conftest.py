"""
Pytest fixtures for TradeBooks engine tests.

Provides the app (in-memory SQLite), a per-test table wipe, master data, and
helpers that drive invoices through the public services.
"""

from types import SimpleNamespace

import pytest
from tradebooks import create_app
from tradebooks.extensions import db
from tradebooks.services import invoice_service, masters_service


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'RETRY_ATTEMPTS': 3,
    'RETRY_BACKOFF_SECONDS': 0,
    'LOG_LEVEL': 'WARNING',
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema (Core deletes bypass the append-only listeners)
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def masters(db_session):
    """Control accounts, two items, a customer with a credit limit, and a supplier."""
    masters_service.ensure_control_accounts()
    db_session.commit()

    item = masters_service.create_item(
        code="PARA500", name="Paracetamol 500mg", tax_rate_bps=1800,
        sale_price_cents=12000, purchase_price_cents=10000, min_stock=5,
    )
    other = masters_service.create_item(
        code="ORS200", name="ORS Sachet", tax_rate_bps=400,
        sale_price_cents=2500, purchase_price_cents=2000,
    )
    customer = masters_service.create_customer(
        code="C001", name="City Pharmacy", credit_limit_cents=1_000_000, payment_terms_days=15,
    )
    walk_in = masters_service.create_customer(code="C002", name="Walk-in")
    supplier = masters_service.create_supplier(code="S001", name="Acme Labs", payment_terms_days=45)
    return SimpleNamespace(item=item, other=other, customer=customer, walk_in=walk_in, supplier=supplier)


@pytest.fixture(scope='function')
def purchase(masters):
    """Create and confirm a purchase invoice: purchase([(item, qty, price), ...])."""
    def _purchase(lines, supplier=None, confirm=True, **kwargs):
        invoice = invoice_service.create_invoice(
            invoice_type="purchase",
            party_id=(supplier or masters.supplier).id,
            lines=[
                {"item_id": item.id, "quantity": qty, "unit_price_cents": price}
                for item, qty, price in lines
            ],
            actor_id=1,
            **kwargs,
        )
        if confirm:
            invoice = invoice_service.confirm_invoice(invoice.id, actor_id=1)
        return invoice

    return _purchase


@pytest.fixture(scope='function')
def sale(masters):
    """Create (and by default confirm) a sales invoice: sale([(item, qty, price), ...])."""
    def _sale(lines, customer=None, confirm=True, **kwargs):
        invoice = invoice_service.create_invoice(
            invoice_type="sales",
            party_id=(customer or masters.customer).id,
            lines=[
                {"item_id": item.id, "quantity": qty, "unit_price_cents": price}
                for item, qty, price in lines
            ],
            actor_id=2,
            **kwargs,
        )
        if confirm:
            invoice = invoice_service.confirm_invoice(invoice.id, actor_id=2)
        return invoice

    return _sale

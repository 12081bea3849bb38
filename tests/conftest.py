import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import jwt

from config import Config
from consignment_ledger import create_app
from consignment_ledger import database
from consignment_ledger.database import Base, get_session, get_engine
from consignment_ledger.models import (
    Customer, Stock, StockGroup, Product, StockProduct,
    Consignment, ConsignmentMove, MoveType,
)
from consignment_ledger.models.views import create_views

JWT_TEST_SECRET = 'test-jwt-secret'
T0 = datetime(2024, 3, 1, 9, 0, 0)


class TestingConfig(Config):
    """In-memory SQLite, no Redis, sequential overview fetches."""
    TESTING = True
    DEBUG = False
    ENV = 'testing'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ECHO = False
    JWT_SECRET_KEY = JWT_TEST_SECRET
    JWT_ALGORITHM = 'HS256'
    CACHE_ENABLED = False
    CONSIGNMENT_FETCH_WORKERS = 1


@pytest.fixture(scope='function')
def app():
    """Fresh application and empty database for each test."""
    app = create_app(TestingConfig)
    with app.app_context():
        Base.metadata.create_all(get_engine())
        yield app
        database.db_session.remove()
    get_engine().dispose()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Create database session for testing."""
    session = get_session()
    yield session
    session.rollback()


@pytest.fixture(scope='function')
def views(app):
    """Create the precomputed views (before any data is inserted)."""
    get_session().commit()
    with get_engine().begin() as connection:
        create_views(connection)


def make_token(role='ADMIN', sub='user-1', secret=JWT_TEST_SECRET, expires_in=timedelta(hours=1)):
    payload = {'sub': sub, 'role': role, 'exp': datetime.now(timezone.utc) + expires_in}
    return jwt.encode(payload, secret, algorithm='HS256')


@pytest.fixture
def auth_headers():
    """Build Authorization headers for a role."""
    def _headers(role='ADMIN', **kwargs):
        return {'Authorization': f'Bearer {make_token(role=role, **kwargs)}'}
    return _headers


@pytest.fixture
def add_move(session):
    """Append a move to a consignment and commit."""
    def _add(consignment_id, move_type, qty, unit_price_ht='100', vat_rate='0.20', regime='NORMAL',
             created_at=None, invoice_id=None, invoice_item_id=None):
        move = ConsignmentMove(
            consignment_id=consignment_id,
            type=MoveType(move_type),
            qty=Decimal(str(qty)),
            unit_price_ht=Decimal(str(unit_price_ht)),
            vat_rate=Decimal(str(vat_rate)),
            vat_regime=regime,
            invoice_id=invoice_id,
            invoice_item_id=invoice_item_id,
            created_at=created_at or T0,
        )
        session.add(move)
        session.commit()
        return move.id
    return _add


@pytest.fixture
def catalog(session):
    """
    Reference data: two resellers (group member and name prefix), one plain
    stock, one NORMAL and one MARGE product.
    """
    group = StockGroup(name='SOUS-TRAITANT')
    shop = StockGroup(name='MAGASIN')
    dupont = Customer(name='Réparations Dupont')
    zola = Customer(name='Atelier Zola')
    session.add_all([group, shop, dupont, zola])
    session.flush()

    reseller = Stock(name='Dépôt Dupont', group_id=group.id, customer_id=dupont.id)
    prefixed = Stock(name='Sous-traitant: Zola', customer_id=zola.id)
    plain = Stock(name='Boutique centre', group_id=shop.id)
    session.add_all([reseller, prefixed, plain])
    session.flush()

    screen = Product(
        name='Ecran iPhone 12', sku='ECR-IP12', serial_number='SN-0012',
        product_type='piece', pro_price=Decimal('80'), retail_price=Decimal('150'),
        sale_price_ht=Decimal('100'), sale_price_ttc=Decimal('120'),
        tax_rate=Decimal('0.20'), vat_type='normal',
    )
    phone = Product(
        name='iPhone 11 reconditionné', sku='IP11-REC', product_type='telephone',
        pro_price=Decimal('0'), retail_price=Decimal('300'),
        sale_price_ttc=Decimal('240'), tax_rate=Decimal('0.20'), vat_type='marge',
    )
    session.add_all([screen, phone])
    session.commit()

    return SimpleNamespace(
        reseller_id=reseller.id,
        prefixed_id=prefixed.id,
        plain_id=plain.id,
        dupont_id=dupont.id,
        zola_id=zola.id,
        screen_id=screen.id,
        phone_id=phone.id,
    )


@pytest.fixture
def ledger(session, catalog, add_move):
    """
    Reseller 'Dépôt Dupont' holds 2 screens (NORMAL, 100 HT) and 1 phone
    (MARGE, 100 HT): line totals 200 and 120.
    """
    screen_line = Consignment(stock_id=catalog.reseller_id, product_id=catalog.screen_id, customer_id=catalog.dupont_id)
    phone_line = Consignment(stock_id=catalog.reseller_id, product_id=catalog.phone_id, customer_id=catalog.dupont_id)
    session.add_all([screen_line, phone_line])
    session.commit()

    add_move(screen_line.id, 'OUT', 2, regime='NORMAL', created_at=T0)
    add_move(phone_line.id, 'OUT', 1, regime='MARGE', created_at=T0 + timedelta(hours=1))

    return SimpleNamespace(
        catalog=catalog,
        screen_consignment_id=screen_line.id,
        phone_consignment_id=phone_line.id,
    )


@pytest.fixture
def live_stock(session, catalog):
    """On-hand snapshot for the prefixed reseller (no ledger moves there)."""
    session.add_all([
        StockProduct(stock_id=catalog.prefixed_id, product_id=catalog.screen_id, quantite=Decimal('3')),
        StockProduct(stock_id=catalog.prefixed_id, product_id=catalog.phone_id, quantite=Decimal('0')),
    ])
    session.commit()
    return catalog

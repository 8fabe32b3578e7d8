import itertools
from datetime import datetime

import pytest

from config import Config
from stock_auctions import create_app, db
from stock_auctions.clock import FrozenClock
from stock_auctions.models import Order, OrderStatus, Variant
from stock_auctions.notifications import RecordingDispatcher

TEST_API_KEY = 'test-api-key'
ADMIN_ID = 1
START = datetime(2026, 3, 2, 9, 0, 0)

_skus = itertools.count(1)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def app(tmp_path, clock, dispatcher):
    class TestConfig(Config):
        TESTING = True
        API_KEY = TEST_API_KEY
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'auctions.db'}"
        NOTIFICATION_WEBHOOK_URL = ''
        SCHEDULER_ENABLED = False
        DEFAULT_MIN_INCREMENT = 10000
        MIN_PRICE = 1000
        BID_EXTENSION_HOURS = 24
        PAYMENT_WINDOW_HOURS = 48
        OUTBID_THROTTLE_MINUTES = 30
        BAN_THRESHOLD = 3
        BAN_DAYS = 30

    app = create_app(TestConfig, clock=clock, dispatcher=dispatcher)
    with app.app_context():
        yield app
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def services(app):
    return app.extensions['stock_auctions']


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_variant(app):
    def _make(stock=10):
        variant = Variant(sku=f"SKU-{next(_skus)}", stock=stock)
        db.session.add(variant)
        db.session.commit()
        return variant
    return _make


@pytest.fixture
def make_order(app):
    def _make(user_id, status=OrderStatus.PENDING, payment_deadline=None):
        order = Order(user_id=user_id, status=status, payment_deadline=payment_deadline)
        db.session.add(order)
        db.session.commit()
        return order
    return _make


@pytest.fixture
def make_auction(services, make_variant):
    """ACTIVE auction: start 10000, increment 1000, buyout 50000, quantity 2"""
    def _make(variant=None, **overrides):
        variant = variant or make_variant()
        data = {
            'variant_id': variant.id,
            'quantity': 2,
            'start_price': 10000,
            'buy_out_price': 50000,
            'min_increment': 1000,
        }
        data.update(overrides)
        return services.auctions.create(ADMIN_ID, data)
    return _make


@pytest.fixture
def admin_headers():
    return {'X-API-Key': TEST_API_KEY, 'X-User-Id': str(ADMIN_ID)}


@pytest.fixture
def user_headers():
    def _headers(user_id):
        return {'X-User-Id': str(user_id)}
    return _headers

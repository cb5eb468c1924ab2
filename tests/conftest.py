"""Shared fixtures: in-memory SQLite session with working SAVEPOINTs, fake Redis, orders and gateways."""
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.models import audit_log, category, genre, platform  # noqa: F401
from app.models.game import Game
from app.models.game_key import GameKey
from app.models.order import Order, OrderStatus
from app.models.transaction import Transaction, TransactionStatus, TransactionType
from app.models.user import User
from app.services.payments.gateways import PaymentGateway, PaymentGatewayError, RefundResult
from app.services.payments.service import PaymentService


def _sqlite_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN itself
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture
def engine():
    engine = _sqlite_engine()
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def no_sleep():
    """Records requested sleeps instead of sleeping."""
    calls = []
    return calls.append, calls


class FakeRedis:
    """Just enough of redis.Redis for locks, progress and cache invalidation."""

    def __init__(self):
        self.store: dict[str, str] = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def get(self, key):
        return self.store.get(key)

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    def incr(self, key):
        self.store[key] = str(int(self.store.get(key) or 0) + 1)
        return int(self.store[key])

    def expire(self, key, seconds):
        return key in self.store

    def eval(self, script, numkeys, key, token):
        if self.store.get(key) == token:
            return self.delete(key)
        return 0

    def scan_iter(self, match=None, count=None):
        import fnmatch

        return [k for k in list(self.store) if match is None or fnmatch.fnmatchcase(k, match)]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def make_game(db):
    def _make(external_product_id, price="10.00", in_stock=True, name=None, **kwargs):
        g = Game(
            name=name or f"Game {external_product_id}",
            slug=kwargs.pop("slug", f"game-{external_product_id}"),
            external_product_id=external_product_id,
            price=Decimal(price),
            in_stock=in_stock,
            **kwargs,
        )
        db.add(g)
        db.commit()
        return g

    return _make


class StubGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, fail: bool = False, status: str = "succeeded"):
        super().__init__({})
        self.fail = fail
        self.status = status
        self.requests = []

    def is_available(self) -> bool:
        return True

    def refund(self, request):
        self.requests.append(request)
        if self.fail:
            raise PaymentGatewayError("stripe refund rejected (402)")
        return RefundResult(
            refund_id=f"re_{len(self.requests)}",
            status=self.status,
            amount=request.amount,
            currency=request.currency,
        )


@pytest.fixture
def user(db):
    u = User(email="buyer@example.com", balance=Decimal("100.00"))
    db.add(u)
    db.commit()
    return u


@pytest.fixture
def make_order(db, user):
    def _make(status=OrderStatus.PENDING.value, total="50.00", paid_by=None, keys=0):
        o = Order(
            user_id=user.id,
            status=status,
            payment_status=status,
            payment_method=paid_by,
            total=Decimal(total),
            currency="EUR",
        )
        db.add(o)
        db.flush()
        if paid_by:
            purchase = Transaction(
                order_id=o.id,
                user_id=user.id,
                type=TransactionType.PURCHASE.value,
                amount=Decimal(total),
                currency="EUR",
                method=paid_by,
                status=TransactionStatus.COMPLETED.value,
                transaction_hash="pi_123",
            )
            db.add(purchase)
            db.flush()
            o.transaction_id = purchase.id
        for i in range(keys):
            db.add(GameKey(game_id="game-1", order_id=o.id, key=f"KEY-{i}"))
        db.commit()
        return o

    return _make


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def payments(db, gateway):
    return PaymentService(db, gateways={"stripe": gateway})

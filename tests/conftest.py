"""Test configuration."""
import hashlib
import hmac
import os
import time
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from typing import Any
from uuid import uuid4

from alembic import command
from alembic.config import Config
import fakeredis
import pytest
import redis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

# --- Default env, set before the application is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./payledger_test.db")
os.environ.setdefault("API_KEY", "test-secret-key")
os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("SECRET_KEY", "test-hmac-secret")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test-key-secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")

from payledger.main import app  # noqa: E402
from payledger.config import get_settings  # noqa: E402
from payledger.db import build_engine, get_db  # noqa: E402
from payledger.dependencies import get_cache_service, get_ledger_service  # noqa: E402
from payledger.models import ApiKey, ApiScope, User  # noqa: E402
from payledger.services.cache import CacheService, CacheTTLs  # noqa: E402
from payledger.services.gateway import GatewayError  # noqa: E402
from payledger.services.ledger import PaymentLedgerService  # noqa: E402
from payledger.utils.apikey import hash_key  # noqa: E402

DB_PATH = Path("./payledger_test.db")


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Reset the file DB at session start
if DB_PATH.exists():
    DB_PATH.unlink()

engine = build_engine(os.environ["DATABASE_URL"])

# --- (2) Build the schema through Alembic only
_run_migrations()


class FakeGateway:
    """In-process stand-in for the Razorpay client."""

    key_id = "rzp_test_key"

    def __init__(self) -> None:
        self.orders: dict[str, dict[str, Any]] = {}
        self.payments: dict[str, dict[str, Any]] = {}
        self.order_payments: dict[str, list[dict[str, Any]]] = {}
        self.create_calls: list[dict[str, Any]] = []
        self.list_calls: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None
        self.fetch_error: GatewayError | None = None

    def create_order(self, amount_minor, currency, receipt, notes):
        self.create_calls.append(
            {"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": dict(notes)}
        )
        if self.fail_with is not None:
            raise self.fail_with
        order_id = f"order_{uuid4().hex[:14]}"
        order = {
            "id": order_id,
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": {key: str(value) for key, value in notes.items() if value is not None},
            "status": "created",
            "created_at": int(time.time()),
        }
        self.orders[order_id] = order
        return order

    def fetch_payment(self, payment_id):
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.payments.get(payment_id, {"id": payment_id, "method": "upi", "status": "captured"})

    def fetch_order_payments(self, order_id):
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.order_payments.get(order_id, []))

    def list_orders(self, *, from_ts, to_ts=None, count=100, skip=0):
        self.list_calls.append({"from": from_ts, "to": to_ts, "count": count, "skip": skip})
        newest_first = sorted(
            reversed(list(self.orders.values())), key=lambda order: order["created_at"], reverse=True
        )
        window = [
            order
            for order in newest_first
            if order["created_at"] >= from_ts and (to_ts is None or order["created_at"] <= to_ts)
        ]
        return window[skip : skip + count]


class BrokenRedis:
    """Redis client whose every call fails as if the server were down."""

    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise redis.ConnectionError("redis unavailable")

        return _fail


def sign_checkout(order_id: str, payment_id: str, secret: str | None = None) -> str:
    key = (secret or os.environ["RAZORPAY_KEY_SECRET"]).encode()
    return hmac.new(key, f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def sign_webhook(body: bytes, secret: str | None = None) -> str:
    key = (secret or os.environ["RAZORPAY_WEBHOOK_SECRET"]).encode()
    return hmac.new(key, body, hashlib.sha256).hexdigest()


@pytest.fixture
def checkout_signature() -> Callable[..., str]:
    return sign_checkout


@pytest.fixture
def webhook_signature() -> Callable[..., str]:
    return sign_webhook


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def db_session() -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        autoflush=False,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture
def redis_client() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def cache(redis_client) -> CacheService:
    return CacheService(redis_client, CacheTTLs())


@pytest.fixture
def broken_cache() -> CacheService:
    return CacheService(BrokenRedis(), CacheTTLs())


@pytest.fixture
def webhook_state(cache) -> Callable[[str], str | None]:
    """State stored in the dedup cache for a webhook event id."""

    def _state(event_id: str) -> str | None:
        entry = cache.get_json(cache.webhook_event_key(event_id))
        return entry.get("state") if isinstance(entry, dict) else None

    return _state


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def ledger(cache: CacheService, gateway: FakeGateway) -> PaymentLedgerService:
    return PaymentLedgerService(cache=cache, gateway=gateway, settings=get_settings())


@pytest.fixture(autouse=True)
def override_dependencies(db_session: Session, cache: CacheService, ledger: PaymentLedgerService) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_cache_service] = lambda: cache
    app.dependency_overrides[get_ledger_service] = lambda: ledger
    yield
    app.dependency_overrides.clear()


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def make_user(db_session: Session) -> Callable[..., User]:
    def _factory(username: str | None = None) -> User:
        name = username or f"user-{uuid4().hex[:8]}"
        user = User(username=name, email=f"{name}@example.com", full_name=name.title())
        db_session.add(user)
        db_session.commit()
        return user

    return _factory


@pytest.fixture
def make_api_key(db_session: Session) -> Callable[..., str]:
    """Create a key and return the raw token."""

    def _factory(scope: ApiScope = ApiScope.user, user: User | None = None, is_active: bool = True) -> str:
        token = f"{scope.value}-{uuid4().hex}"
        api_key = ApiKey(
            name=f"{scope.value}-{uuid4().hex}",
            prefix="test_" + scope.value,
            key_hash=hash_key(token),
            scope=scope,
            user_id=user.id if user is not None else None,
            is_active=is_active,
        )
        db_session.add(api_key)
        db_session.commit()
        return token

    return _factory


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {os.environ['API_KEY']}"}


@pytest.fixture
def admin_headers(make_api_key) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_api_key(ApiScope.admin)}"}


@pytest.fixture
def support_headers(make_api_key) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_api_key(ApiScope.support)}"}


@pytest.fixture
def customer(make_user) -> User:
    return make_user()


@pytest.fixture
def customer_headers(make_api_key, customer) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_api_key(ApiScope.user, user=customer)}"}


@pytest.fixture
def create_payment(db_session: Session, ledger: PaymentLedgerService, customer: User) -> Callable[..., Any]:
    """Create a payment for ``customer`` through the ledger and return the snapshot."""

    def _factory(amount: str = "500.00", user: User | None = None, **kwargs: Any):
        owner = user or customer
        result = ledger.create_payment(
            db_session,
            amount=amount,
            user_id=owner.id,
            provider_id=kwargs.pop("provider_id", "provider-1"),
            **kwargs,
        )
        assert result.ok, result.error
        return result.value

    return _factory

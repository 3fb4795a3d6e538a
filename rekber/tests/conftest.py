"""Shared test fixtures for the escrow test suite.

Uses an in-memory SQLite database with StaticPool so all sessions share the
same connection (committed data is visible across sessions).
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from rekber.database import Base, get_db
from rekber.main import app
from rekber.models import *  # noqa: ensure all models are loaded for create_all


# ---------------------------------------------------------------------------
# In-memory SQLite test engine (shared via StaticPool)
# ---------------------------------------------------------------------------

test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@event.listens_for(test_engine.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


MERCHANT_CODE = "DS0001"
MERCHANT_SECRET = "test-duitku-secret"


# ---------------------------------------------------------------------------
# Auto-use: create/drop tables for every test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after. Also clear global state."""
    from rekber.core.async_tasks import drain_background_tasks
    from rekber.realtime.connection_manager import chat_manager

    chat_manager._users.clear()
    chat_manager._rooms.clear()
    chat_manager._pending.clear()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await drain_background_tasks()
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def duitku_settings(monkeypatch):
    """Configure the gateway credentials every callback test signs with."""
    from rekber.config import settings

    monkeypatch.setattr(settings, "duitku_merchant_code", MERCHANT_CODE)
    monkeypatch.setattr(settings, "duitku_merchant_secret_key", MERCHANT_SECRET)
    monkeypatch.setattr(settings, "telegram_bot_token", "")
    return settings


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def db():
    """Yield a fresh AsyncSession for direct service-layer tests."""
    async with TestSession() as session:
        yield session


@pytest.fixture
async def client():
    """httpx AsyncClient wired to the FastAPI app with test DB override."""
    import httpx

    async def _override_get_db():
        async with TestSession() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------

def _new_name(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def auth_header():
    """Return a callable that builds an Authorization header for a user."""
    from rekber.core.auth import create_access_token

    def _build(user) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}
    return _build


@pytest.fixture
def make_user(db: AsyncSession):
    """Factory fixture: create a User. Returns the user."""
    from rekber.models.user import User

    async def _make(role: str = "buyer", username: str = None, **kwargs):
        user = User(
            username=username or _new_name(role),
            email=kwargs.pop("email", None),
            role=role,
            **kwargs,
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_merchant(db: AsyncSession, make_user):
    """Factory fixture: create a merchant-role user plus its shop. Returns (merchant, owner)."""
    from rekber.models.user import Merchant

    async def _make(shop_name: str = None, **kwargs):
        owner = await make_user("merchant")
        merchant = Merchant(
            user_id=owner.id,
            shop_name=shop_name or _new_name("shop"),
            **kwargs,
        )
        db.add(merchant)
        await db.commit()
        await db.refresh(merchant)
        return merchant, owner

    return _make


@pytest.fixture
def make_product(db: AsyncSession):
    """Factory fixture: create an active Product for a merchant."""
    from rekber.models.product import Product

    async def _make(merchant_id: int, price: float = 100000, stock: int = 10, **kwargs):
        product = Product(
            merchant_id=merchant_id,
            name=kwargs.pop("name", _new_name("product")),
            price=Decimal(str(price)),
            stock=stock,
            status=kwargs.pop("status", "active"),
            **kwargs,
        )
        db.add(product)
        await db.commit()
        await db.refresh(product)
        return product

    return _make


@pytest.fixture
def make_transaction(db: AsyncSession):
    """Factory fixture: insert a Transaction row directly in any status.

    Money fields come from the fee calculator so they match what
    ``create_transaction`` would have stored. Stock is not touched.
    """
    from rekber.models.transaction import Transaction
    from rekber.services.fee_service import compute_fees
    from rekber.services.transaction_service import generate_invoice

    async def _make(buyer, merchant, product, quantity: int = 1, status: str = "PAID", **kwargs):
        fees = compute_fees(product.price, quantity, kwargs.pop("buyer_tier", buyer.buyer_tier))
        now = datetime.now(timezone.utc)
        tx = Transaction(
            invoice_number=kwargs.pop("invoice_number", generate_invoice()),
            buyer_id=buyer.id,
            merchant_id=merchant.id,
            product_id=product.id,
            quantity=quantity,
            price_per_item=product.price,
            subtotal=fees.subtotal,
            app_fee=fees.platform_fee,
            tier_discount=fees.tier_discount,
            gateway_fee=fees.gateway_fee,
            total_amount=fees.total,
            amount_net=fees.net_to_merchant,
            payment_method=kwargs.pop("payment_method", "duitku_qris"),
            status=status,
            due_date=kwargs.pop("due_date", now + timedelta(hours=24)),
            paid_at=kwargs.pop("paid_at", now if status != "UNPAID" else None),
            **kwargs,
        )
        db.add(tx)
        await db.commit()
        await db.refresh(tx)
        return tx

    return _make


@pytest.fixture
async def escrow_parties(make_user, make_merchant, make_product):
    """A buyer, a merchant with its owner, an arbiter, and one product in stock."""
    buyer = await make_user("buyer")
    merchant, owner = await make_merchant()
    arbiter = await make_user("admin")
    product = await make_product(merchant.id, price=100000, stock=10)
    return {
        "buyer": buyer,
        "merchant": merchant,
        "owner": owner,
        "arbiter": arbiter,
        "product": product,
    }


def sign_callback(invoice: str, amount: str, merchant_code: str = MERCHANT_CODE,
                  secret: str = MERCHANT_SECRET) -> str:
    """Duitku callback signature, as the gateway computes it."""
    import hashlib

    return hashlib.sha256(f"{merchant_code}{invoice}{amount}{secret}".encode()).hexdigest()


def callback_payload(invoice: str, amount: str, result_code: str = "00", **overrides) -> dict:
    payload = {
        "merchantCode": MERCHANT_CODE,
        "amount": amount,
        "merchantOrderId": invoice,
        "productDetail": "Escrow purchase",
        "additionalParam": "",
        "paymentMethod": "SP",
        "resultCode": result_code,
        "merchantUserId": "",
        "reference": f"DK-{invoice[-8:]}",
        "signature": sign_callback(invoice, amount),
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def signed_callback():
    """Return a callable that builds a correctly signed callback payload for a transaction."""
    from rekber.services.duitku_service import format_amount

    def _build(tx, result_code: str = "00", **overrides) -> dict:
        return callback_payload(
            tx.invoice_number, format_amount(tx.total_amount), result_code, **overrides
        )
    return _build


@pytest.fixture
def raw_callback():
    """Return a callable that builds a signed callback for any invoice and amount string."""
    return callback_payload

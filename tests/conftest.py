import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["PUSHIN_PAY_TOKEN"] = "platform-pushin-token"
os.environ["MERCADO_PAGO_ACCESS_TOKEN"] = ""

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from storefront import models  # noqa: F401
from storefront.database import Base, build_engine, build_session_factory
from storefront.models import Coupon, PaymentMethod, Store, Wallet
from storefront.services.gateways import GatewayRegistry, SplitCalculator
from storefront.services.order_service import OrderService
from storefront.services.reconciliation_service import ReconciliationService
from storefront.services.wallet_service import WalletService

from factories import FakePushinPay, RecordingDispatcher, add_product


# ==================== DATABASE ====================

@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ==================== PROVIDERS ====================

@pytest.fixture
def pushin():
    return FakePushinPay()


@pytest.fixture
async def http_client(pushin):
    client = httpx.AsyncClient(transport=httpx.MockTransport(pushin.handler))
    yield client
    await client.aclose()


@pytest.fixture
def gateways(http_client):
    return GatewayRegistry(client=http_client)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def order_service(db, gateways, dispatcher):
    return OrderService(db, gateways=gateways, splitter=SplitCalculator(), dispatcher=dispatcher)


@pytest.fixture
def reconciler(db, gateways, order_service, dispatcher):
    return ReconciliationService(
        db, gateways=gateways, order_service=order_service, dispatcher=dispatcher
    )


@pytest.fixture
def wallet_service(db):
    return WalletService(db)


# ==================== SEED DATA ====================

@pytest.fixture
async def store(db):
    store = Store(name="Loja Gamer", slug=f"loja-{uuid.uuid4().hex[:8]}")
    db.add(store)
    await db.flush()
    db.add(PaymentMethod(store_id=store.id, provider="pushin_pay", token="store-pushin-token"))
    await db.commit()
    return store


@pytest.fixture
async def product(db, store):
    return await add_product(db, store)


@pytest.fixture
async def coupon(db, store):
    coupon = Coupon(
        store_id=store.id,
        code="PROMO10",
        discount_type="percentage",
        value=Decimal("10"),
        min_purchase=Decimal("15.00"),
        valid_from=datetime.now(timezone.utc) - timedelta(days=1),
    )
    db.add(coupon)
    await db.commit()
    return coupon


@pytest.fixture
async def kyc_wallet(db, store):
    wallet = Wallet(
        store_id=store.id,
        available_balance=Decimal("100.00"),
        retained_balance=Decimal("0.00"),
        full_name="Maria Souza",
        cpf="52998224725",
        birth_date=date(1990, 5, 17),
        email="maria@lojagamer.com.br",
    )
    db.add(wallet)
    await db.commit()
    return wallet

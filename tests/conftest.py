"""
Shared fixtures for the NIMEX test suite.

Every test gets its own file-backed SQLite database (aiosqlite) so that
concurrent settlements use separate connections, plus an httpx client bound
to the FastAPI app with the session factory overridden.
"""
import base64
import os

# Settings are cached on first import; configure the environment before nimex loads.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["ESCROW_MAX_ATTEMPTS"] = "10"
os.environ["ESCROW_RETRY_BACKOFF_SECONDS"] = "0.01"
os.environ["FERNET_KEY"] = base64.urlsafe_b64encode(b"nimex-test-fernet-key-0123456789"[:32]).decode()

from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from nimex.auth import create_access_token
from nimex.database import Base, build_engine, build_session_factory, get_session_factory
from nimex.encryption import encrypt_pii
from nimex.main import app
from nimex.models import (
    EscrowStatus,
    EscrowTransaction,
    Order,
    OrderStatus,
    PaymentStatus,
    User,
    UserRole,
    Vendor,
)
from nimex.services.escrow_settlement import EscrowSettlementService


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'nimex-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def service(session_factory):
    return EscrowSettlementService(session_factory, max_attempts=10, retry_backoff=0.01)


@pytest_asyncio.fixture
async def marketplace(session_factory):
    """
    Buyer U9, vendor V1 (owned by UV1, wallet 10000), admin ADM1 and two
    shipped orders with held escrow: O1 (vendor_amount 5000) and O2 (3000).
    """
    async with session_factory() as session:
        async with session.begin():
            session.add_all([
                User(id="U9", full_name="Ada Buyer", email="ada@example.ng", role=UserRole.BUYER),
                User(id="UV1", full_name="Bayo Vendor", email="bayo@example.ng", role=UserRole.VENDOR),
                User(id="ADM1", full_name="Ops Admin", email="ops@nimex.ng", role=UserRole.ADMIN),
            ])
            session.add(
                Vendor(
                    id="V1",
                    user_id="UV1",
                    business_name="Bayo Textiles",
                    bank_name="Guaranty Trust Bank",
                    bank_account_encrypted=encrypt_pii("0123456789"),
                    wallet_balance=Decimal("10000"),
                    total_sales=0,
                )
            )
            for order_id, escrow_id, amount in (("O1", "E1", "5000"), ("O2", "E2", "3000")):
                session.add(
                    Order(
                        id=order_id,
                        order_number=f"NIMEX-TEST-{order_id}",
                        buyer_id="U9",
                        vendor_id="V1",
                        status=OrderStatus.SHIPPED,
                        payment_status=PaymentStatus.PAID,
                        escrow_status=EscrowStatus.HELD,
                        total_amount=Decimal(amount),
                    )
                )
                session.add(
                    EscrowTransaction(
                        id=escrow_id,
                        order_id=order_id,
                        vendor_id="V1",
                        buyer_id="U9",
                        total_amount=Decimal(amount),
                        vendor_amount=Decimal(amount),
                        status=EscrowStatus.HELD,
                    )
                )
    return {"buyer": "U9", "vendor_user": "UV1", "admin": "ADM1", "vendor": "V1"}


@pytest_asyncio.fixture
async def client(session_factory):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def bearer(user_id: str, role: str, name: str = "Test User") -> dict:
    token = create_access_token(user_id=user_id, role=role, full_name=name)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    """Factory: auth_headers("U9", "buyer") → {"Authorization": "Bearer …"}."""
    return bearer

"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- Fake Redis and fake payment rails
- Test data factories and bearer tokens
"""
# JWT_SECRET_KEY must exist before the app is imported: Settings refuses an empty key with DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")

from decimal import Decimal
from typing import AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from splitledger.core.auth import create_access_token
from splitledger.core.config import settings
from splitledger.db.database import Base, get_db
from splitledger.db.models.wallet import Wallet
from splitledger.domain.services.rails import (
    BankConsent,
    BaseBankDebitRail,
    BaseCardRail,
    CardSetup,
    ConsentInfo,
    RailResult,
    RailStatus,
    reset_rails,
    set_rails,
)
from splitledger.domain.services.split_service import ParticipantShare, SplitService
from splitledger.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

_TEST_JWT_SECRET = "test-jwt-secret-key-for-testing-only-do-not-use-in-production"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Auth
# ============================================================================

@pytest.fixture(autouse=True)
def set_jwt_secret():
    with patch.object(settings, "JWT_SECRET_KEY", _TEST_JWT_SECRET), \
         patch.object(settings, "JWT_ALGORITHM", "HS256"), \
         patch.object(settings, "JWT_AUDIENCE", None):
        yield


@pytest.fixture
def auth_headers():
    """auth_headers("alice", name="Alice") -> Authorization header dict"""
    def _headers(user_id: str, name: str | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id, name=name)}"}

    return _headers


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from splitledger.core import circuit_breaker
    circuit_breaker.reset_circuit_breakers()
    yield
    circuit_breaker.reset_circuit_breakers()


# ============================================================================
# Fake Redis
# ============================================================================

class FakeRedis:
    """In-memory Redis stand-in with TTL bookkeeping"""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET with NX (only if absent) and EX (seconds)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def eval(self, script: str, numkeys: int, *args: str) -> int:
        """Only the compare-and-delete release script is supported"""
        key, token = args[0], args[1]
        if self._store.get(key) == token:
            await self.delete(key)
            return 1
        return 0

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Swap get_redis for FakeRedis in every test"""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("splitledger.core.redis_client.get_redis", _get_fake_redis), \
         patch("splitledger.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Fake payment rails
# ============================================================================

class FakeBankRail(BaseBankDebitRail):
    """Scriptable bank rail. Set ``payment_result`` / ``settle_result`` per test."""

    def __init__(self) -> None:
        self.payment_result = RailResult(status=RailStatus.PENDING, id="pay_1", raw_status="Pending")
        self.settle_result: Optional[RailResult] = RailResult(
            status=RailStatus.SUCCEEDED, id="pay_1", raw_status="AcceptedSettlementCompleted"
        )
        self.consent_status = "active"
        self.payments: list[dict] = []
        self.revoked: list[str] = []
        self.raise_on_payment: Optional[Exception] = None
        self.polled: list[str] = []

    async def create_consent(self, redirect_uri: str, max_amount: Decimal) -> BankConsent:
        return BankConsent(consent_id="consent_1", redirect_uri=f"https://bank.test/authorise?next={redirect_uri}")

    async def get_consent(self, consent_id: str) -> ConsentInfo:
        return ConsentInfo(consent_id=consent_id, status=self.consent_status)

    async def create_payment(self, consent_id, amount, particulars, reference, idempotency_key) -> RailResult:
        self.payments.append({
            "consent_id": consent_id,
            "amount": Decimal(amount),
            "particulars": particulars,
            "reference": reference,
            "idempotency_key": idempotency_key,
        })
        if self.raise_on_payment is not None:
            raise self.raise_on_payment
        return self.payment_result

    async def await_successful_payment(self, payment_id: str, max_wait_seconds: float) -> RailResult:
        self.polled.append(payment_id)
        if self.settle_result is None:
            return RailResult(status=RailStatus.PENDING, id=payment_id)
        return self.settle_result

    async def revoke_consent(self, consent_id: str) -> None:
        self.revoked.append(consent_id)


class FakeCardRail(BaseCardRail):

    def __init__(self) -> None:
        self.charge_result = RailResult(status=RailStatus.SUCCEEDED, id="pi_1", raw_status="succeeded")
        self.charges: list[dict] = []
        self.status_result = RailResult(status=RailStatus.SUCCEEDED, id="pi_1", raw_status="succeeded")
        self.lookups: list[str] = []

    async def create_customer(self, user_id: str) -> str:
        return f"cus_{user_id}"

    async def create_setup_intent(self, customer_id: str) -> CardSetup:
        return CardSetup(setup_intent_id="seti_1", client_secret="seti_1_secret")

    async def charge_card(self, customer_id, payment_method_id, amount, idempotency_key) -> RailResult:
        self.charges.append({
            "customer_id": customer_id,
            "payment_method_id": payment_method_id,
            "amount": Decimal(amount),
            "idempotency_key": idempotency_key,
        })
        return self.charge_result

    async def get_charge(self, payment_id: str) -> RailResult:
        self.lookups.append(payment_id)
        return self.status_result


@pytest.fixture
def bank_rail() -> FakeBankRail:
    return FakeBankRail()


@pytest.fixture
def card_rail() -> FakeCardRail:
    return FakeCardRail()


@pytest.fixture(autouse=True)
def install_fake_rails(bank_rail, card_rail):
    """Every rail lookup in the app gets the fakes; no test reaches a real provider"""
    set_rails(bank_debit=bank_rail, card=card_rail)
    yield
    reset_rails()


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def wallet_factory(db_session: AsyncSession):
    """Factory for creating test wallets (balance set directly, no ledger rows)"""
    async def _create_wallet(
        user_id: str,
        balance: str | Decimal = "0.00",
        bank_connected: bool = False,
        card: bool = False,
    ) -> Wallet:
        wallet = Wallet(
            user_id=user_id,
            balance=Decimal(balance),
            bank_connected=bank_connected,
            bank_consent_id="consent_1" if bank_connected else None,
            card_customer_id=f"cus_{user_id}" if card else None,
            card_payment_method_id="pm_card_visa" if card else None,
            card_last4="4242" if card else None,
        )
        db_session.add(wallet)
        await db_session.commit()
        await db_session.refresh(wallet)
        return wallet

    return _create_wallet


@pytest.fixture
def split_factory(db_session: AsyncSession):
    """Factory for creating split events through SplitService"""
    async def _create_split(
        creator_id: str = "alice",
        participants: list[str | tuple[str, str | None]] = ("bob", "carol"),
        total: str = "90.00",
        split_type: str = "equal",
        name: str = "Dinner",
    ):
        shares = []
        for p in participants:
            if isinstance(p, tuple):
                shares.append(ParticipantShare(p[0], Decimal(p[1]) if p[1] is not None else None))
            else:
                shares.append(ParticipantShare(p))
        service = SplitService(db_session)
        return await service.create_split(
            creator_id=creator_id,
            name=name,
            total_amount=Decimal(total),
            split_type=split_type,
            participants=shares,
        )

    return _create_split

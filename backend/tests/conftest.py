"""
Shared fixtures: a fresh on-disk SQLite database per test (separate
connections per session, so concurrent requests really race), an in-memory
Redis double, and helpers to seed users, balances, deployments and traders.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./walletcore-test.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("COPY_TRADE_TICK_ENABLED", "false")

import time
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

import walletcore.models  # noqa: F401
from walletcore.core import redis as redis_module
from walletcore.core.security import create_access_token
from walletcore.database import Base, get_db
from walletcore.main import app
from walletcore.models.balance import Balance
from walletcore.models.copy_trade import Trader, RiskLevel
from walletcore.models.token import TokenDeployment, DepositAddress
from walletcore.models.user import User, UserRole


class FakeRedis:
    """Just the commands the app uses: SET NX EX, INCR, EXPIRE, TTL."""

    def __init__(self):
        self.store = {}
        self.expiry = {}

    def _alive(self, key):
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.store.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.store

    async def set(self, key, value, nx=False, ex=None):
        if nx and self._alive(key):
            return None
        self.store[key] = value
        if ex:
            self.expiry[key] = time.monotonic() + ex
        return True

    async def get(self, key):
        return self.store.get(key) if self._alive(key) else None

    async def incr(self, key):
        value = int(self.store.get(key, 0)) + 1 if self._alive(key) else 1
        self.store[key] = value
        return value

    async def expire(self, key, seconds):
        self.expiry[key] = time.monotonic() + seconds
        return True

    async def ttl(self, key):
        if not self._alive(key):
            return -2
        deadline = self.expiry.get(key)
        return int(deadline - time.monotonic()) if deadline else -1


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def test_db(tmp_path):
    """Create an isolated SQLite DB file for each test and override get_db."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def override_get_db():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield SessionLocal
    app.dependency_overrides.clear()
    await engine.dispose()


@pytest.fixture
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(redis_module, "_redis", fake)
    return fake


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

async def create_user(session, email: str, role: UserRole = UserRole.user) -> int:
    user = User(email=email, role=role)
    session.add(user)
    await session.commit()
    return user.id


def auth_headers(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


async def fund(session, user_id: int, amount: str, asset: str = "USDT", locked: str = "0") -> None:
    session.add(Balance(user_id=user_id, asset=asset, balance=Decimal(amount), locked_balance=Decimal(locked)))
    await session.commit()


async def create_deployment(session, symbol: str = "USDT_TRC20", asset: str = "USDT", **fields) -> int:
    deployment = TokenDeployment(
        symbol=symbol,
        asset=asset,
        network=fields.pop("network", "TRC20"),
        withdrawal_enabled=fields.pop("withdrawal_enabled", True),
        min_withdrawal=fields.pop("min_withdrawal", Decimal("1")),
        withdrawal_fee=fields.pop("withdrawal_fee", Decimal("1")),
        gateway_currency=fields.pop("gateway_currency", "USDT_TRX"),
        is_active=True,
        **fields,
    )
    session.add(deployment)
    await session.commit()
    return deployment.id


async def add_deposit_address(session, user_id: int, deployment_id: int, address: str) -> None:
    session.add(DepositAddress(user_id=user_id, deployment_id=deployment_id, address=address))
    await session.commit()


async def create_trader(session, max_copiers: int = 10, current_copiers: int = 0, **fields) -> int:
    trader = Trader(
        name=fields.pop("name", "Alpha"),
        risk_level=fields.pop("risk_level", RiskLevel.medium),
        historical_roi_min=fields.pop("historical_roi_min", Decimal("5")),
        historical_roi_max=fields.pop("historical_roi_max", Decimal("15")),
        max_drawdown=fields.pop("max_drawdown", Decimal("0.20")),
        max_copiers=max_copiers,
        current_copiers=current_copiers,
        aum_usdt=fields.pop("aum_usdt", Decimal("0")),
        performance_fee_percent=fields.pop("performance_fee_percent", Decimal("0")),
        lifetime_earnings_usdt=Decimal("0"),
        is_active=True,
        **fields,
    )
    session.add(trader)
    await session.commit()
    return trader.id

"""
Shared fixtures: a fresh SQLite database per test, a state machine bound
to it, and a seeder for users, menu items and coupons.
"""

import os

# Must be set before anything imports backend settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./unused-test.db")
os.environ.setdefault("EXPORT_ENABLED", "false")
os.environ.setdefault("LOCK_TIMEOUT_SECONDS", "10")

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backend.core.config import get_settings
from backend.database import build_engine, build_session_maker, init_db, transaction
from backend.models import Coupon, MenuItem, User, UserCoupon
from backend.services.identity import Principal
from backend.services.lifecycle import OrderLifecycleStateMachine

get_settings.cache_clear()


class Seeder:
    """Inserts fixture rows and reads ledger state back."""

    def __init__(self, session_maker):
        self.session_maker = session_maker
        self._codes = 0

    async def user(self, balance="100.00", role="USER", name="Li Wei") -> Principal:
        async with transaction(self.session_maker) as session:
            user = User(name=name, role=role, balance=Decimal(balance))
            session.add(user)
            await session.flush()
        roles = frozenset({role})
        return Principal(user_id=user.user_id, roles=roles)

    async def item(self, stock=10, small_price="5.00", large_price="7.00", store_id=1) -> int:
        async with transaction(self.session_maker) as session:
            item = MenuItem(
                store_id=store_id,
                name="Beef Noodles",
                small_price=Decimal(small_price),
                large_price=Decimal(large_price),
                stock=stock,
            )
            session.add(item)
            await session.flush()
        return item.item_id

    async def coupon(
        self,
        user_id=None,
        discount="3.00",
        min_purchase="0.00",
        expires_in=timedelta(days=7),
        is_active=True,
    ):
        """Create a coupon; when user_id is given also hand it out and return the redemption id."""
        self._codes += 1
        async with transaction(self.session_maker) as session:
            coupon = Coupon(
                code=f"T{self._codes:04d}",
                discount=Decimal(discount),
                min_purchase=Decimal(min_purchase),
                expiration_date=datetime.now(timezone.utc) + expires_in,
                is_active=is_active,
            )
            session.add(coupon)
            await session.flush()
            if user_id is None:
                return coupon.coupon_id

            redemption = UserCoupon(user_id=user_id, coupon_id=coupon.coupon_id, is_used=False)
            session.add(redemption)
            await session.flush()
        return redemption.user_coupon_id

    async def stock(self, item_id: int) -> int:
        async with transaction(self.session_maker) as session:
            return (await session.get(MenuItem, item_id)).stock

    async def balance(self, user_id: int) -> Decimal:
        async with transaction(self.session_maker) as session:
            return (await session.get(User, user_id)).balance

    async def coupon_used(self, user_coupon_id: int) -> bool:
        async with transaction(self.session_maker) as session:
            return (await session.get(UserCoupon, user_coupon_id)).is_used


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ordering.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)


@pytest.fixture
def lifecycle(session_maker):
    return OrderLifecycleStateMachine(session_maker)


@pytest.fixture
def seed(session_maker):
    return Seeder(session_maker)


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point the audit workbook at a temporary directory."""
    directory = tmp_path / "data"
    monkeypatch.setenv("DATA_DIRECTORY", str(directory))
    get_settings.cache_clear()
    yield directory
    get_settings.cache_clear()

"""
Pytest configuration and fixtures for tests.

Runs everything against an in-memory SQLite database (aiosqlite) with the
development-mode mock gateway and mock notifier.
"""

import os

# Settings are read once and cached; configure before anything imports takeaway
os.environ["ENV_MODE"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["PAYMENT_SIGNING_SECRET"] = "test_signing_secret"
os.environ["MOCK_FAILURE_RATE"] = "0"
os.environ["MOCK_MAX_LATENCY"] = "0"

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from takeaway import database
from takeaway.database import Base
from takeaway.enums import CouponType
from takeaway.models import AddOn, Coupon, MenuItem, MenuItemVariant, Restaurant
from takeaway.services.notifications import reset_notification_service
from takeaway.services.payment import reset_payment_service

USER_ID = "user_1"
OTHER_USER_ID = "user_2"
OWNER_ID = "owner_1"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def test_engine():
    """Create test database engine (in-memory SQLite, one shared connection)."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine, monkeypatch):
    """Session factory bound to the test engine; also used by outbox dispatch."""
    factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(database, "async_session_maker", factory)
    return factory


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def fresh_services():
    """Every test gets new mock gateway / notifier instances."""
    reset_payment_service()
    reset_notification_service()
    yield
    reset_payment_service()
    reset_notification_service()


# ============================================================================
# Catalog Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def catalog(session):
    """
    Spice Route Kitchen (min order ₹100, 25 min prep, owned by owner_1):
        Margherita Pizza  base 200, variants Regular 200 / Large 300,
                          add-ons Extra Cheese 50 / Olives 30
        Masala Fries      100
        Tomato Soup       80
    Burger Barn (owner_2):
        Classic Burger    150
    """
    restaurant = Restaurant(
        name="Spice Route Kitchen",
        owner_id=OWNER_ID,
        min_order=Decimal("100.00"),
        preparation_time=25,
        is_active=True,
        is_open=True,
    )
    other = Restaurant(name="Burger Barn", owner_id="owner_2", min_order=Decimal("0.00"), is_active=True, is_open=True)
    session.add_all([restaurant, other])
    await session.flush()

    pizza = MenuItem(restaurant_id=restaurant.id, name="Margherita Pizza", base_price=Decimal("200.00"), is_available=True)
    pizza.variants = [
        MenuItemVariant(name="Regular", price=Decimal("200.00")),
        MenuItemVariant(name="Large", price=Decimal("300.00")),
    ]
    pizza.add_ons = [
        AddOn(restaurant_id=restaurant.id, name="Extra Cheese", price=Decimal("50.00"), is_available=True),
        AddOn(restaurant_id=restaurant.id, name="Olives", price=Decimal("30.00"), is_available=True),
    ]
    fries = MenuItem(restaurant_id=restaurant.id, name="Masala Fries", base_price=Decimal("100.00"), is_available=True)
    soup = MenuItem(restaurant_id=restaurant.id, name="Tomato Soup", base_price=Decimal("80.00"), is_available=True)
    burger = MenuItem(restaurant_id=other.id, name="Classic Burger", base_price=Decimal("150.00"), is_available=True)
    session.add_all([pizza, fries, soup, burger])

    now = datetime.now(timezone.utc)
    session.add_all([
        Coupon(code="WELCOME50", type=CouponType.FLAT, value=Decimal("50.00"), min_order=Decimal("199.00"),
               per_user_limit=1, used_count=0, is_active=True),
        Coupon(code="SAVE10", type=CouponType.PERCENTAGE, value=Decimal("10.00"), min_order=Decimal("300.00"),
               max_discount=Decimal("100.00"), per_user_limit=3, used_count=0, is_active=True),
        Coupon(code="FIRST20", type=CouponType.PERCENTAGE, value=Decimal("20.00"), min_order=Decimal("0.00"),
               max_discount=Decimal("150.00"), usage_limit=500, per_user_limit=1, used_count=0, is_active=True,
               expires_at=now + timedelta(days=30)),
        Coupon(code="OLDNEWS", type=CouponType.FLAT, value=Decimal("40.00"), min_order=Decimal("1000.00"),
               per_user_limit=1, used_count=0, is_active=True, expires_at=now - timedelta(days=1)),
        Coupon(code="SOLDOUT", type=CouponType.FLAT, value=Decimal("40.00"), min_order=Decimal("0.00"),
               usage_limit=2, per_user_limit=1, used_count=2, is_active=True),
        Coupon(code="RETIRED", type=CouponType.FLAT, value=Decimal("40.00"), min_order=Decimal("0.00"),
               per_user_limit=1, used_count=0, is_active=False),
    ])
    await session.commit()

    ids = SimpleNamespace(
        restaurant_id=restaurant.id,
        other_restaurant_id=other.id,
        pizza_id=pizza.id,
        regular_id=pizza.variants[0].id,
        large_id=pizza.variants[1].id,
        cheese_id=pizza.add_ons[0].id,
        olives_id=pizza.add_ons[1].id,
        fries_id=fries.id,
        soup_id=soup.id,
        burger_id=burger.id,
    )
    # later loads must come from the database, not these half-initialised instances
    session.expunge_all()
    return ids

"""
Pytest configuration and fixtures for coupon API tests.
"""

import itertools
import os
from datetime import timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, Optional

# Set test environment before importing app modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["COGNITO_USER_POOL_ID"] = "us-east-1_testpool"
os.environ["COGNITO_CLIENT_ID"] = "test-client-id"
os.environ["APP_ENV"] = "test"

import pytest
from fastapi import Header, HTTPException, status
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import coupon_api.models  # noqa: F401
from coupon_api.db.database import Base, get_db
from coupon_api.dependencies import get_current_user
from coupon_api.models.coupon import Coupon, utcnow
from coupon_api.models.product import Category, Product
from coupon_api.models.user import User
from coupon_api.services.coupon_service import coupon_service

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Bearer tokens accepted by the fake authenticator in the HTTP tests
TOKENS: Dict[str, Dict[str, Any]] = {
    "admin-token": {"sub": "admin-sub", "email": "admin@example.com", "groups": ["admin"]},
    "customer-token": {"sub": "customer-sub", "email": "customer@example.com", "groups": []},
}

_codes = itertools.count(1)


async def create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture
async def admin_user(db: AsyncSession) -> User:
    user = User(cognito_id="admin-sub", email="admin@example.com", role="admin")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def customer(db: AsyncSession) -> User:
    user = User(cognito_id="customer-sub", email="customer@example.com", role="customer")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
def make_coupon(db: AsyncSession, admin_user: User):
    """
    Insert a coupon directly, bypassing field validation.

    Lets tests start from states the API would never create, such as
    exhausted counters or past expiration dates.
    """

    async def _make(**overrides: Any) -> Coupon:
        values: Dict[str, Any] = {
            "code": f"TEST{next(_codes):03d}",
            "name": "Test coupon",
            "discount_type": "percentage",
            "discount_value": Decimal("10"),
            "minimum_order_amount": Decimal("0"),
            "expiration_date": utcnow() + timedelta(days=30),
            "user_usage_limit": 1,
            "created_by": admin_user.id,
        }
        values.update(overrides)
        coupon = Coupon(**values)
        db.add(coupon)
        await db.commit()
        return await coupon_service.get_coupon(db, coupon.id)

    return _make


@pytest.fixture
async def catalog(db: AsyncSession) -> Dict[str, Any]:
    """Two categories and four products, one of them uncategorised."""
    electronics = Category(name="Electronics")
    books = Category(name="Books")
    db.add_all([electronics, books])
    await db.flush()

    laptop = Product(name="Laptop", price=Decimal("1000.00"), category_id=electronics.id)
    phone = Product(name="Phone", price=Decimal("500.00"), category_id=electronics.id)
    novel = Product(name="Novel", price=Decimal("200.00"), category_id=books.id)
    gift_card = Product(name="Gift card", price=Decimal("100.00"), category_id=None)
    db.add_all([laptop, phone, novel, gift_card])
    await db.commit()

    return {
        "electronics": electronics,
        "books": books,
        "laptop": laptop,
        "phone": phone,
        "novel": novel,
        "gift_card": gift_card,
    }


async def fake_current_user(
    authorization: Optional[str] = Header(None),
) -> Dict[str, Any]:
    token = (authorization or "").removeprefix("Bearer ")
    if token not in TOKENS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token validation failed",
        )
    return TOKENS[token]


@pytest.fixture
async def client(session_maker) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the test database and fake auth."""
    from coupon_api.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = fake_current_user

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"Authorization": "Bearer admin-token"}


@pytest.fixture
def customer_headers() -> Dict[str, str]:
    return {"Authorization": "Bearer customer-token"}

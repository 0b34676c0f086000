"""Shared fixtures: an in-memory SQLite database per test and row factories."""

import os
import sys

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["EMAIL_TEST_MODE"] = "true"
os.environ["JWT_SECRET"] = "test-secret-key-with-enough-length-for-hs256"
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers every table on Base.metadata
from db.database import Base, utcnow
from models.enums import EventStatus, SubscriptionStatus, UserRole
from models.event import Event, RegularGroup
from models.order import Product
from models.subscription import Subscription, SubscriptionType
from models.user import User
from services.gateway import TinkoffGateway
from services.notifier import Notifier


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return Notifier(api_url=None, test_mode=True, business_name="Studio")


@pytest.fixture
def gateway():
    return TinkoffGateway(
        terminal_key="TestTerminal",
        password="secret",
        api_url="https://gateway.test/v2",
        notification_url="https://studio.test/api/payments/tinkoff/notification",
        success_url="https://studio.test/ok",
        fail_url="https://studio.test/fail",
    )


# ── Factories ──────────────────────────────────────────────

@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    async def _make(role: UserRole = UserRole.USER, **kwargs) -> User:
        counter["n"] += 1
        user = User(
            email=kwargs.pop("email", f"user{counter['n']}@example.com"),
            first_name=kwargs.pop("first_name", "Анна"),
            last_name=kwargs.pop("last_name", "Иванова"),
            phone=kwargs.pop("phone", "+79990000000"),
            role=role,
            **kwargs,
        )
        db.add(user)
        await db.commit()
        return user

    return _make


@pytest.fixture
def make_subscription(db):
    async def _make(user: User, balance: Decimal | str | int = "1000", **kwargs) -> Subscription:
        balance = Decimal(str(balance))
        subscription = Subscription(
            user_id=user.id,
            name=kwargs.pop("name", "Абонемент"),
            total_balance=kwargs.pop("total_balance", balance),
            remaining_balance=balance,
            price=kwargs.pop("price", balance),
            status=kwargs.pop("status", SubscriptionStatus.ACTIVE),
            **kwargs,
        )
        db.add(subscription)
        await db.commit()
        return subscription

    return _make


@pytest.fixture
def make_subscription_type(db):
    async def _make(amount="1000", price="900", duration_days=30, is_active=True, name="Абонемент 1000") -> SubscriptionType:
        sub_type = SubscriptionType(
            name=name,
            amount=Decimal(str(amount)),
            price=Decimal(str(price)),
            duration_days=duration_days,
            is_active=is_active,
        )
        db.add(sub_type)
        await db.commit()
        return sub_type

    return _make


@pytest.fixture
def make_event(db):
    async def _make(
        price="100",
        max_participants=10,
        current_participants=0,
        starts_in: timedelta = timedelta(days=3),
        status: EventStatus = EventStatus.PUBLISHED,
        title="Мастер-класс по керамике",
    ) -> Event:
        start = utcnow() + starts_in
        event = Event(
            title=title,
            status=status,
            start_date=start,
            end_date=start + timedelta(hours=2),
            max_participants=max_participants,
            current_participants=current_participants,
            price=Decimal(str(price)),
        )
        db.add(event)
        await db.commit()
        return event

    return _make


@pytest.fixture
def make_group(db):
    """Inserts a group row directly; no sessions are generated."""

    async def _make(
        price="100",
        max_participants=10,
        days_of_week=(1, 3, 5),
        time="18:30",
        duration=90,
        is_active=True,
        name="Акварель",
    ) -> RegularGroup:
        group = RegularGroup(
            name=name,
            schedule={"daysOfWeek": list(days_of_week), "time": time, "duration": duration},
            price=Decimal(str(price)),
            max_participants=max_participants,
            is_active=is_active,
        )
        db.add(group)
        await db.commit()
        return group

    return _make


@pytest.fixture
def make_product(db):
    async def _make(price="250", stock_quantity=5, is_available=True, name="Глина 1 кг") -> Product:
        product = Product(
            name=name,
            price=Decimal(str(price)),
            stock_quantity=stock_quantity,
            is_available=is_available,
        )
        db.add(product)
        await db.commit()
        return product

    return _make


def participants(n: int) -> list[dict]:
    return [{"full_name": f"Участник {i + 1}", "phone": "+79990000000"} for i in range(n)]

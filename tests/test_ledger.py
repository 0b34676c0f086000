"""Tests for the subscription ledger (debit/credit guards, purchase, rollback, top-up)."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from db.database import atomic
from models.enums import SubscriptionStatus
from models.subscription import Subscription
from services import ledger
from services.errors import Conflict, InsufficientBalance, InvalidRequest, NotFound


@pytest.mark.asyncio
async def test_debit_to_zero_depletes(db, make_user, make_subscription):
    user = await make_user()
    sub = await make_subscription(user, "90")

    async with atomic(db):
        updated = await ledger.debit(db, sub.id, Decimal("90"))

    assert updated.remaining_balance == Decimal("0.00")
    assert updated.status == SubscriptionStatus.DEPLETED


@pytest.mark.asyncio
async def test_debit_never_goes_negative(db, make_user, make_subscription):
    user = await make_user()
    sub = await make_subscription(user, "50")

    with pytest.raises(InsufficientBalance):
        async with atomic(db):
            await ledger.debit(db, sub.id, Decimal("90"))

    await db.refresh(sub)
    assert sub.remaining_balance == Decimal("50.00")
    assert sub.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_credit_revives_depleted(db, make_user, make_subscription):
    user = await make_user()
    sub = await make_subscription(user, "0", total_balance=Decimal("100"), status=SubscriptionStatus.DEPLETED)

    async with atomic(db):
        updated = await ledger.credit(db, sub.id, Decimal("90"))

    assert updated.remaining_balance == Decimal("90.00")
    assert updated.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_credit_to_missing_subscription_is_skipped(db):
    async with atomic(db):
        assert await ledger.credit(db, uuid.uuid4(), Decimal("10")) is None


@pytest.mark.asyncio
async def test_selection_prefers_largest_balance(db, make_user, make_subscription):
    user = await make_user()
    await make_subscription(user, "100")
    rich = await make_subscription(user, "500")

    chosen = await ledger.select_subscription_for_payment(db, user.id, Decimal("90"))
    assert chosen.id == rich.id


@pytest.mark.asyncio
async def test_selection_reports_shortfall(db, make_user, make_subscription):
    user = await make_user()
    await make_subscription(user, "50")

    with pytest.raises(InsufficientBalance) as exc:
        await ledger.select_subscription_for_payment(db, user.id, Decimal("90"))

    assert "Требуется: 90.00₽ (со скидкой 10%)" in exc.value.message
    assert "У вас есть: 50.00₽ на 1 абонементе(ах)" in exc.value.message
    assert exc.value.details["subscriptions_count"] == 1


@pytest.mark.asyncio
async def test_selection_without_any_balance(db, make_user):
    user = await make_user()
    with pytest.raises(InsufficientBalance, match="пополните баланс"):
        await ledger.select_subscription_for_payment(db, user.id, Decimal("90"))


@pytest.mark.asyncio
async def test_explicit_subscription_must_cover(db, make_user, make_subscription):
    user = await make_user()
    poor = await make_subscription(user, "50")
    await make_subscription(user, "500")

    with pytest.raises(InsufficientBalance):
        await ledger.select_subscription_for_payment(db, user.id, Decimal("90"), poor.id)


@pytest.mark.asyncio
async def test_purchase_opens_new_subscription(db, make_user, make_subscription_type):
    user = await make_user()
    sub_type = await make_subscription_type(amount="1000", price="900", duration_days=30)

    async with atomic(db):
        sub = await ledger.purchase(db, user.id, sub_type.id)

    assert sub.remaining_balance == Decimal("1000.00")
    assert sub.total_balance == Decimal("1000.00")
    assert sub.price == Decimal("900.00")
    assert sub.expires_at is not None


@pytest.mark.asyncio
async def test_purchase_merges_into_active(db, make_user, make_subscription, make_subscription_type):
    user = await make_user()
    existing = await make_subscription(user, "200")
    sub_type = await make_subscription_type(amount="1000")

    async with atomic(db):
        merged = await ledger.purchase(db, user.id, sub_type.id)

    assert merged.id == existing.id
    assert merged.remaining_balance == Decimal("1200.00")
    assert merged.name == "Объединённый абонемент"
    count = len((await db.execute(select(Subscription).where(Subscription.user_id == user.id))).scalars().all())
    assert count == 1


@pytest.mark.asyncio
async def test_purchase_of_inactive_type_conflicts(db, make_user, make_subscription_type):
    user = await make_user()
    sub_type = await make_subscription_type(is_active=False)
    with pytest.raises(Conflict):
        await ledger.purchase(db, user.id, sub_type.id)


@pytest.mark.asyncio
async def test_direct_purchase_refused_when_gateway_configured(db, make_user, make_subscription_type):
    user = await make_user()
    sub_type = await make_subscription_type()
    with pytest.raises(InvalidRequest, match="только онлайн"):
        await ledger.purchase(db, user.id, sub_type.id, gateway_configured=True)


@pytest.mark.asyncio
async def test_rollback_deletes_unreferenced_subscription(db, make_user, make_subscription_type):
    user = await make_user()
    sub_type = await make_subscription_type(amount="1000")
    async with atomic(db):
        sub = await ledger.purchase(db, user.id, sub_type.id)
    sub_id = sub.id

    async with atomic(db):
        result = await ledger.apply_rollback(db, user.id, sub_id, Decimal("1000"))

    assert result is None
    assert (await db.execute(select(Subscription).where(Subscription.id == sub_id))).scalar_one_or_none() is None


@pytest.mark.asyncio
async def test_partial_rollback_keeps_rest(db, make_user, make_subscription):
    user = await make_user()
    sub = await make_subscription(user, "1200", total_balance=Decimal("1200"))

    async with atomic(db):
        result = await ledger.apply_rollback(db, user.id, sub.id, Decimal("1000"))

    assert result.remaining_balance == Decimal("200.00")
    assert result.total_balance == Decimal("200.00")
    assert result.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_rollback_validates_input(db, make_user):
    user = await make_user()
    with pytest.raises(InvalidRequest):
        await ledger.apply_rollback(db, user.id, None, Decimal("0"))
    with pytest.raises(NotFound):
        await ledger.apply_rollback(db, user.id, None, Decimal("10"))


@pytest.mark.asyncio
async def test_top_up_into_active_subscription(db, make_user, make_subscription):
    user = await make_user()
    sub = await make_subscription(user, "100")

    async with atomic(db):
        _, updated, previous = await ledger.top_up(db, user.id, Decimal("500"))

    assert updated.id == sub.id
    assert previous == Decimal("100.00")
    assert updated.remaining_balance == Decimal("600.00")


@pytest.mark.asyncio
async def test_top_up_without_subscription_opens_one(db, make_user):
    user = await make_user()

    async with atomic(db):
        _, created, previous = await ledger.top_up(db, user.id, Decimal("300"))

    assert previous == Decimal("0")
    assert created.remaining_balance == Decimal("300.00")
    assert created.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_balance_summary(db, make_user, make_subscription):
    user = await make_user()
    await make_subscription(user, "100")
    await make_subscription(user, "250.50")
    await make_subscription(user, "0", status=SubscriptionStatus.DEPLETED)

    summary = await ledger.balance_summary(db, user.id)
    assert summary["total_balance"] == Decimal("350.50")
    assert summary["subscriptions_count"] == 2

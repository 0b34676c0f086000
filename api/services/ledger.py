"""
Subscription Ledger — the only code that moves subscription balances.

Rules:
  1. debit/credit touch remaining_balance only, through guarded UPDATEs
  2. ACTIVE → DEPLETED when remaining drops to 0; DEPLETED → ACTIVE when it rises again
  3. purchase / top-up / rollback move total_balance and remaining_balance together
  4. Nothing here commits: callers wrap a whole operation in db.database.atomic()
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import utcnow
from models.booking import Booking
from models.enums import SubscriptionStatus
from models.event import GroupEnrollment
from models.subscription import Subscription, SubscriptionType
from models.user import User
from services.errors import InsufficientBalance, InvalidRequest, NotFound, Conflict
from services.pricing import money, discount_percent

logger = logging.getLogger(__name__)

MERGED_SUBSCRIPTION_NAME = "Объединённый абонемент"


async def fetch_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription | None:
    """Load a subscription, overwriting any stale copy held by the session."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _active_subscriptions(db: AsyncSession, user_id: uuid.UUID) -> list[Subscription]:
    result = await db.execute(
        select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
    )
    return list(result.scalars().all())


# ── Debit / credit ────────────────────────────────────────


async def debit(db: AsyncSession, subscription_id: uuid.UUID, amount: Decimal) -> Subscription:
    """
    Take `amount` off an ACTIVE subscription.

    The balance check and the decrement are one statement, so two concurrent
    debits can never drive the balance below zero.
    """
    amount = money(amount)
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.remaining_balance >= amount,
        )
        .values(
            remaining_balance=Subscription.remaining_balance - amount,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientBalance(
            f"Недостаточно средств на абонементе. Требуется: {amount:.2f}₽",
            required=str(amount),
        )

    await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.remaining_balance <= 0,
        )
        .values(status=SubscriptionStatus.DEPLETED)
        .execution_options(synchronize_session=False)
    )

    subscription = await fetch_subscription(db, subscription_id)
    logger.info(
        "Debited %s from subscription %s (remaining=%s, status=%s)",
        amount, subscription_id, subscription.remaining_balance, subscription.status.value,
    )
    return subscription


async def credit(db: AsyncSession, subscription_id: uuid.UUID, amount: Decimal) -> Subscription | None:
    """Return `amount` to a subscription's remaining balance and revive it if depleted."""
    amount = money(amount)
    result = await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(
            remaining_balance=Subscription.remaining_balance + amount,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Subscription was rolled back and deleted; nothing to refund into.
        logger.warning("Credit of %s skipped: subscription %s not found", amount, subscription_id)
        return None

    await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.status == SubscriptionStatus.DEPLETED,
            Subscription.remaining_balance > 0,
        )
        .values(status=SubscriptionStatus.ACTIVE)
        .execution_options(synchronize_session=False)
    )

    subscription = await fetch_subscription(db, subscription_id)
    logger.info(
        "Credited %s to subscription %s (remaining=%s, status=%s)",
        amount, subscription_id, subscription.remaining_balance, subscription.status.value,
    )
    return subscription


async def select_subscription_for_payment(
    db: AsyncSession,
    user_id: uuid.UUID,
    required: Decimal,
    subscription_id: uuid.UUID | None = None,
) -> Subscription:
    """
    Pick the subscription a discounted booking will be paid from.

    An explicit subscription must belong to the user, be ACTIVE and cover
    `required`; otherwise the user's ACTIVE subscription with the largest
    balance that covers it is used.
    """
    required = money(required)
    query = select(Subscription).where(
        Subscription.user_id == user_id,
        Subscription.status == SubscriptionStatus.ACTIVE,
        Subscription.remaining_balance >= required,
    )
    if subscription_id:
        query = query.where(Subscription.id == subscription_id)
    else:
        query = query.order_by(Subscription.remaining_balance.desc())

    chosen = (await db.execute(query.limit(1))).scalar_one_or_none()
    if chosen:
        return chosen

    active = await _active_subscriptions(db, user_id)
    total = money(sum((s.remaining_balance for s in active), Decimal("0")))
    pct = discount_percent()
    if total > 0:
        raise InsufficientBalance(
            f"Недостаточно средств на выбранном абонементе. "
            f"Требуется: {required:.2f}₽ (со скидкой {pct}%). "
            f"У вас есть: {total:.2f}₽ на {len(active)} абонементе(ах). "
            f"Попробуйте выбрать другой абонемент или пополнить баланс.",
            required=str(required),
            available=str(total),
            subscriptions_count=len(active),
        )
    raise InsufficientBalance(
        f"Недостаточно средств на абонементе. "
        f"Требуется: {required:.2f}₽ (со скидкой {pct}%). "
        f"Пожалуйста, пополните баланс абонемента.",
        required=str(required),
        available=str(total),
        subscriptions_count=len(active),
    )


# ── Balance-changing operations ───────────────────────────


def _extend_expiry(current: datetime | None, duration_days: int | None, now: datetime) -> datetime | None:
    if not duration_days:
        return current
    base = max(current, now) if current else now
    return base + timedelta(days=duration_days)


async def apply_purchase(db: AsyncSession, user_id: uuid.UUID, sub_type: SubscriptionType) -> Subscription:
    """
    Grant a subscription type's balance to a user.

    Merges into the user's richest ACTIVE subscription when there is one,
    otherwise opens a new subscription.
    """
    now = utcnow()
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
        .order_by(Subscription.remaining_balance.desc())
        .limit(1)
    )
    existing = result.scalar_one_or_none()
    amount = money(sub_type.amount)

    if existing:
        name = existing.name if "Объединённый" in existing.name else MERGED_SUBSCRIPTION_NAME
        await db.execute(
            update(Subscription)
            .where(Subscription.id == existing.id)
            .values(
                total_balance=Subscription.total_balance + amount,
                remaining_balance=Subscription.remaining_balance + amount,
                name=name,
                expires_at=_extend_expiry(existing.expires_at, sub_type.duration_days, now),
                status=SubscriptionStatus.ACTIVE,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        subscription = await fetch_subscription(db, existing.id)
        logger.info(
            "Purchase of type %s merged into subscription %s (+%s, remaining=%s)",
            sub_type.id, subscription.id, amount, subscription.remaining_balance,
        )
        return subscription

    subscription = Subscription(
        user_id=user_id,
        type_id=sub_type.id,
        name=sub_type.name,
        total_balance=amount,
        remaining_balance=amount,
        price=money(sub_type.price),
        status=SubscriptionStatus.ACTIVE,
        purchased_at=now,
        expires_at=_extend_expiry(None, sub_type.duration_days, now),
    )
    db.add(subscription)
    await db.flush()
    logger.info(
        "Purchase of type %s opened subscription %s for user %s (balance=%s)",
        sub_type.id, subscription.id, user_id, amount,
    )
    return subscription


async def apply_rollback(
    db: AsyncSession,
    user_id: uuid.UUID,
    subscription_id: uuid.UUID | None,
    amount: Decimal,
) -> Subscription | None:
    """
    Reverse a purchase of `amount`.

    Both balances drop (floored at 0). A subscription emptied this way is
    deleted when nothing references it, otherwise cancelled.

    Returns:
        The updated subscription, or None if it was deleted.
    """
    amount = money(amount)
    if amount <= 0:
        raise InvalidRequest("Сумма отката должна быть больше 0")

    if subscription_id:
        query = select(Subscription).where(
            Subscription.id == subscription_id, Subscription.user_id == user_id,
        )
    else:
        query = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.DEPLETED]),
            )
            .order_by(Subscription.updated_at.desc())
            .limit(1)
        )
    subscription = (
        await db.execute(query.execution_options(populate_existing=True))
    ).scalar_one_or_none()
    if not subscription:
        raise NotFound("Абонемент для отката не найден")

    next_total = max(Decimal("0"), money(subscription.total_balance) - amount)
    next_remaining = max(Decimal("0"), money(subscription.remaining_balance) - amount)

    if next_total <= 0 and next_remaining <= 0:
        bookings = (await db.execute(
            select(func.count(Booking.id)).where(Booking.subscription_id == subscription.id)
        )).scalar() or 0
        enrollments = (await db.execute(
            select(func.count(GroupEnrollment.id)).where(GroupEnrollment.subscription_id == subscription.id)
        )).scalar() or 0

        if bookings == 0 and enrollments == 0:
            await db.delete(subscription)
            await db.flush()
            logger.info("Rolled back %s: subscription %s deleted", amount, subscription.id)
            return None

        subscription.total_balance = Decimal("0")
        subscription.remaining_balance = Decimal("0")
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.expires_at = utcnow()
        await db.flush()
        logger.info("Rolled back %s: subscription %s cancelled", amount, subscription.id)
        return subscription

    subscription.total_balance = next_total
    subscription.remaining_balance = next_remaining
    subscription.status = (
        SubscriptionStatus.DEPLETED if next_remaining <= 0 else SubscriptionStatus.ACTIVE
    )
    await db.flush()
    logger.info(
        "Rolled back %s on subscription %s (remaining=%s, status=%s)",
        amount, subscription.id, next_remaining, subscription.status.value,
    )
    return subscription


async def get_subscription_type(db: AsyncSession, type_id: uuid.UUID) -> SubscriptionType:
    sub_type = (await db.execute(
        select(SubscriptionType).where(SubscriptionType.id == type_id)
    )).scalar_one_or_none()
    if not sub_type:
        raise NotFound("Тип абонемента не найден")
    return sub_type


async def get_purchasable_type(db: AsyncSession, type_id: uuid.UUID) -> SubscriptionType:
    sub_type = await get_subscription_type(db, type_id)
    if not sub_type.is_active:
        raise Conflict("Этот тип абонемента недоступен для покупки")
    return sub_type


async def purchase(
    db: AsyncSession,
    user_id: uuid.UUID,
    type_id: uuid.UUID,
    gateway_configured: bool = False,
) -> Subscription:
    """Direct (offline) purchase; online payment goes through the reconciler instead."""
    if gateway_configured:
        raise InvalidRequest("Оплата абонемента доступна только онлайн")
    sub_type = await get_purchasable_type(db, type_id)
    return await apply_purchase(db, user_id, sub_type)


async def top_up(db: AsyncSession, user_id: uuid.UUID, amount: Decimal) -> tuple[User, Subscription, Decimal]:
    """
    Admin top-up of a user's balance.

    Returns:
        (user, subscription, previous_balance) so the caller can notify after commit.
    """
    amount = money(amount)
    if amount <= 0:
        raise InvalidRequest("Сумма пополнения должна быть больше 0")

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise NotFound("Пользователь не найден")

    active = (await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
        .order_by(Subscription.updated_at.desc())
        .limit(1)
    )).scalar_one_or_none()

    if active:
        previous = money(active.remaining_balance)
        await db.execute(
            update(Subscription)
            .where(Subscription.id == active.id)
            .values(
                total_balance=Subscription.total_balance + amount,
                remaining_balance=Subscription.remaining_balance + amount,
                status=SubscriptionStatus.ACTIVE,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        subscription = await fetch_subscription(db, active.id)
        logger.info(
            "Admin top-up of %s for user %s into subscription %s (%s → %s)",
            amount, user_id, subscription.id, previous, subscription.remaining_balance,
        )
        return user, subscription, previous

    default_type = (await db.execute(
        select(SubscriptionType)
        .where(SubscriptionType.is_active.is_(True))
        .order_by(SubscriptionType.created_at.asc())
        .limit(1)
    )).scalar_one_or_none()

    subscription = Subscription(
        user_id=user_id,
        type_id=default_type.id if default_type else None,
        name=f"Пополнение администратором на {amount}₽",
        total_balance=amount,
        remaining_balance=amount,
        price=Decimal("0"),
        status=SubscriptionStatus.ACTIVE,
        expires_at=None,
    )
    db.add(subscription)
    await db.flush()
    logger.info("Admin top-up of %s for user %s opened subscription %s", amount, user_id, subscription.id)
    return user, subscription, Decimal("0")


# ── Queries ───────────────────────────────────────────────


async def list_subscriptions(db: AsyncSession, user_id: uuid.UUID) -> list[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status.in_([
                SubscriptionStatus.ACTIVE,
                SubscriptionStatus.DEPLETED,
                SubscriptionStatus.EXPIRED,
            ]),
        )
        .order_by(Subscription.purchased_at.desc())
    )
    return list(result.scalars().all())


async def balance_summary(db: AsyncSession, user_id: uuid.UUID) -> dict:
    """Total usable balance across ACTIVE subscriptions with money left."""
    result = await db.execute(
        select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.remaining_balance > 0,
        )
    )
    subscriptions = result.scalars().all()
    return {
        "total_balance": money(sum((s.remaining_balance for s in subscriptions), Decimal("0"))),
        "subscriptions_count": len(subscriptions),
        "subscriptions": [
            {
                "id": s.id,
                "name": s.name,
                "remaining_balance": money(s.remaining_balance),
                "expires_at": s.expires_at,
            }
            for s in subscriptions
        ],
    }

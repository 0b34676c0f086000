"""Tests for the booking engine: capacity, balance, cancellation and status rules."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from conftest import participants
from db.database import utcnow
from models.booking import Booking, BookingTarget
from models.enums import BookingStatus, EventStatus, PaymentMethod, SessionStatus, SubscriptionStatus
from models.event import GroupSession
from services import bookings
from services.errors import (
    CancellationWindowExpired, CapacityExceeded, Forbidden, InsufficientBalance, InvalidRequest, Unauthenticated,
)


async def _book_event(db, notifier, event, count=1, method=PaymentMethod.SUBSCRIPTION, user=None, **kwargs):
    return await bookings.create_booking(
        db,
        notifier,
        target=BookingTarget.event(event.id),
        participants=participants(count),
        contact_email="guest@example.com",
        payment_method=method,
        user_id=user.id if user else None,
        **kwargs,
    )


# ── Create ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_subscription_booking_debits_discounted_price(db, notifier, make_user, make_subscription, make_event):
    user = await make_user()
    sub = await make_subscription(user, "1000")
    event = await make_event(price="100")

    booking = await _book_event(db, notifier, event, count=2, user=user)

    assert booking.status == BookingStatus.PENDING
    assert booking.total_price == Decimal("180.00")
    assert booking.subscription_id == sub.id
    await db.refresh(sub)
    await db.refresh(event)
    assert sub.remaining_balance == Decimal("820.00")
    assert event.current_participants == 2
    assert len(notifier.sent) == 1
    assert "Итого: 180.00₽" in notifier.sent[0]["text"]


@pytest.mark.asyncio
async def test_on_site_booking_charges_nothing_upfront(db, notifier, make_event):
    event = await make_event(price="100")

    booking = await _book_event(db, notifier, event, count=3, method=PaymentMethod.ON_SITE)

    assert booking.total_price == Decimal("300.00")
    assert booking.subscription_id is None
    assert booking.user_id is None


@pytest.mark.asyncio
async def test_over_capacity_rejected(db, notifier, make_event):
    event = await make_event(max_participants=10, current_participants=9)

    with pytest.raises(CapacityExceeded) as exc:
        await _book_event(db, notifier, event, count=2, method=PaymentMethod.ON_SITE)

    assert "Доступно: 1" in exc.value.message
    assert exc.value.details["available"] == 1
    await db.refresh(event)
    assert event.current_participants == 9
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_insufficient_balance_leaves_everything_untouched(db, notifier, make_user, make_subscription, make_event):
    user = await make_user()
    sub = await make_subscription(user, "50")
    event = await make_event(price="100")

    with pytest.raises(InsufficientBalance) as exc:
        await _book_event(db, notifier, event, user=user)

    assert exc.value.details["required"] == "90.00"
    await db.refresh(sub)
    await db.refresh(event)
    assert sub.remaining_balance == Decimal("50.00")
    assert event.current_participants == 0
    assert (await db.execute(select(func.count(Booking.id)))).scalar() == 0


@pytest.mark.asyncio
async def test_subscription_payment_needs_a_user(db, notifier, make_event):
    event = await make_event()
    with pytest.raises(Unauthenticated):
        await _book_event(db, notifier, event)


@pytest.mark.asyncio
async def test_unpublished_event_not_bookable(db, notifier, make_event):
    event = await make_event(status=EventStatus.DRAFT)
    with pytest.raises(InvalidRequest, match="недоступно"):
        await _book_event(db, notifier, event, method=PaymentMethod.ON_SITE)


def test_target_must_be_exactly_one():
    with pytest.raises(InvalidRequest):
        bookings.resolve_target(None, None)
    with pytest.raises(InvalidRequest):
        bookings.resolve_target(uuid.uuid4(), uuid.uuid4())


@pytest.mark.asyncio
async def test_group_session_requires_subscription(db, notifier, make_group):
    group = await make_group()
    session = GroupSession(group_id=group.id, date=utcnow() + timedelta(days=2), duration=90)
    db.add(session)
    await db.commit()

    with pytest.raises(InvalidRequest, match="абонемент"):
        await bookings.create_booking(
            db,
            notifier,
            target=BookingTarget.group_session(session.id),
            participants=participants(1),
            contact_email="guest@example.com",
            payment_method=PaymentMethod.ON_SITE,
        )


@pytest.mark.asyncio
async def test_cancelled_group_session_not_bookable(db, notifier, make_user, make_subscription, make_group):
    user = await make_user()
    await make_subscription(user, "1000")
    group = await make_group()
    session = GroupSession(
        group_id=group.id, date=utcnow() + timedelta(days=2), duration=90, status=SessionStatus.CANCELLED,
    )
    db.add(session)
    await db.commit()

    with pytest.raises(InvalidRequest, match="Запись недоступна"):
        await bookings.create_booking(
            db,
            notifier,
            target=BookingTarget.group_session(session.id),
            participants=participants(1),
            contact_email="guest@example.com",
            payment_method=PaymentMethod.SUBSCRIPTION,
            user_id=user.id,
        )


# ── Cancel ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_restores_seats_and_balance(db, notifier, make_user, make_subscription, make_event):
    user = await make_user()
    sub = await make_subscription(user, "90")
    event = await make_event(price="100")

    booking = await _book_event(db, notifier, event, user=user)
    await db.refresh(sub)
    assert sub.status == SubscriptionStatus.DEPLETED

    cancelled = await bookings.cancel_booking(db, booking.id, user_id=user.id)

    assert cancelled.status == BookingStatus.CANCELLED
    await db.refresh(sub)
    await db.refresh(event)
    assert sub.remaining_balance == Decimal("90.00")
    assert sub.status == SubscriptionStatus.ACTIVE
    assert event.current_participants == 0


@pytest.mark.asyncio
async def test_cancel_is_idempotent(db, notifier, make_user, make_subscription, make_event):
    user = await make_user()
    sub = await make_subscription(user, "1000")
    event = await make_event(price="100")
    booking = await _book_event(db, notifier, event, user=user)

    await bookings.cancel_booking(db, booking.id, user_id=user.id)
    again = await bookings.cancel_booking(db, booking.id, user_id=user.id)

    assert again.status == BookingStatus.CANCELLED
    await db.refresh(sub)
    await db.refresh(event)
    assert sub.remaining_balance == Decimal("1000.00")
    assert event.current_participants == 0


@pytest.mark.asyncio
async def test_late_cancel_refused_for_user_allowed_for_admin(db, notifier, make_user, make_subscription, make_event):
    user = await make_user()
    await make_subscription(user, "1000")
    event = await make_event(starts_in=timedelta(hours=10))
    booking = await _book_event(db, notifier, event, user=user)
    booking_id = booking.id

    with pytest.raises(CancellationWindowExpired) as exc:
        await bookings.cancel_booking(db, booking_id, user_id=user.id)
    assert exc.value.details["hours_left"] in (9, 10)
    assert "за 24 часов" in exc.value.message

    cancelled = await bookings.cancel_booking(db, booking_id, enforce_time_window=False)
    assert cancelled.status == BookingStatus.CANCELLED


@pytest.mark.asyncio
async def test_cannot_cancel_someone_elses_booking(db, notifier, make_user, make_subscription, make_event):
    owner = await make_user()
    other = await make_user()
    await make_subscription(owner, "1000")
    event = await make_event()
    booking = await _book_event(db, notifier, event, user=owner)

    with pytest.raises(Forbidden):
        await bookings.cancel_booking(db, booking.id, user_id=other.id)


@pytest.mark.asyncio
async def test_seat_counter_equals_live_bookings(db, notifier, make_user, make_subscription, make_event):
    user = await make_user()
    await make_subscription(user, "5000")
    event = await make_event(max_participants=10)

    first = await _book_event(db, notifier, event, count=3, user=user)
    await _book_event(db, notifier, event, count=2, method=PaymentMethod.ON_SITE)
    await _book_event(db, notifier, event, count=4, user=user)
    await bookings.cancel_booking(db, first.id, enforce_time_window=False)

    live = (await db.execute(
        select(func.sum(Booking.participants_count)).where(
            Booking.event_id == event.id, Booking.status != BookingStatus.CANCELLED,
        )
    )).scalar()
    await db.refresh(event)
    assert event.current_participants == live == 6


# ── Status ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_status_update_and_no_revival(db, notifier, make_event):
    event = await make_event()
    booking = await _book_event(db, notifier, event, method=PaymentMethod.ON_SITE)

    confirmed = await bookings.update_booking_status(db, booking.id, BookingStatus.CONFIRMED)
    assert confirmed.status == BookingStatus.CONFIRMED

    await bookings.update_booking_status(db, booking.id, BookingStatus.CANCELLED, enforce_time_window=False)
    with pytest.raises(InvalidRequest):
        await bookings.update_booking_status(db, booking.id, BookingStatus.CONFIRMED)


@pytest.mark.asyncio
async def test_list_bookings_paginates(db, notifier, make_event):
    event = await make_event(max_participants=50)
    for _ in range(5):
        await _book_event(db, notifier, event, method=PaymentMethod.ON_SITE)

    page = await bookings.list_bookings(db, page=2, limit=2)
    assert page["total"] == 5
    assert page["total_pages"] == 3
    assert len(page["data"]) == 2


@pytest.mark.asyncio
async def test_failed_confirmation_email_keeps_booking(db, notifier, make_user, make_subscription, make_event):
    user = await make_user()
    sub = await make_subscription(user, "1000")
    event = await make_event(price="100")

    with patch.object(notifier, "send_email", AsyncMock(side_effect=RuntimeError("mail API down"))) as send_email:
        booking = await _book_event(db, notifier, event, user=user)

    send_email.assert_awaited_once()
    stored = await bookings.get_booking(db, booking.id)
    assert stored.status == BookingStatus.PENDING
    await db.refresh(sub)
    await db.refresh(event)
    assert sub.remaining_balance == Decimal("910.00")
    assert event.current_participants == 1


# ── Seats ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_seat_guard_refuses_after_concurrent_writer(db, make_event):
    event = await make_event(max_participants=10, current_participants=7)
    target = BookingTarget.event(event.id)

    # Another writer takes two seats after our capacity read of 7.
    assert await bookings.try_reserve_seats(db, target, 2, 10)
    assert not await bookings.try_reserve_seats(db, target, 2, 10)
    with pytest.raises(CapacityExceeded) as exc:
        await bookings.reserve_seats(db, target, 2, 10)
    await db.commit()

    assert exc.value.details["available"] == 1
    await db.refresh(event)
    assert event.current_participants == 9


# ── Queries ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_upcoming_for_user_lists_live_future_event_bookings(
    db, notifier, make_user, make_subscription, make_event, make_group,
):
    user = await make_user()
    other = await make_user()
    await make_subscription(user, "5000")
    later = await make_event(starts_in=timedelta(days=5), title="Позже")
    sooner = await make_event(starts_in=timedelta(days=2), title="Раньше")
    cancelled_event = await make_event(starts_in=timedelta(days=3))
    past = await make_event(starts_in=timedelta(days=3))

    later_booking = await _book_event(db, notifier, later, user=user)
    sooner_booking = await _book_event(db, notifier, sooner, user=user)
    dropped = await _book_event(db, notifier, cancelled_event, user=user)
    await bookings.cancel_booking(db, dropped.id, user_id=user.id)
    await _book_event(db, notifier, past, user=user)
    past.start_date = utcnow() - timedelta(days=1)
    await _book_event(db, notifier, sooner, method=PaymentMethod.ON_SITE, user=other)

    group = await make_group()
    session = GroupSession(group_id=group.id, date=utcnow() + timedelta(days=1), duration=90)
    db.add(session)
    await db.commit()
    await bookings.create_booking(
        db,
        notifier,
        target=BookingTarget.group_session(session.id),
        participants=participants(1),
        contact_email="guest@example.com",
        payment_method=PaymentMethod.SUBSCRIPTION,
        user_id=user.id,
    )

    upcoming = await bookings.upcoming_for_user(db, user.id)

    assert [b.id for b in upcoming] == [sooner_booking.id, later_booking.id]

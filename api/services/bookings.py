"""
Booking Engine — seat reservations against events and group sessions.

A booking moves up to three things together: the booking row, the target's
seat counter and (for subscription payments) the subscription balance.
All three change inside one transaction, and every counter is moved by a
guarded UPDATE whose rowcount tells us whether the guard held.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db.database import atomic, utcnow
from models.booking import Booking, BookingTarget, TargetKind
from models.enums import BookingStatus, EventStatus, PaymentMethod, SessionStatus
from models.event import Event, GroupSession, RegularGroup
from services import ledger
from services.business_time import hours_until
from services.errors import (
    CapacityExceeded, CancellationWindowExpired, Forbidden, InvalidRequest, NotFound, Unauthenticated,
)
from services.notifier import Notifier
from services.pricing import calculate_booking_price

logger = logging.getLogger(__name__)


@dataclass
class TargetInfo:
    """Everything about a booking target the engine needs, for either kind."""

    target: BookingTarget
    title: str
    start: datetime
    end: datetime
    unit_price: Decimal
    max_participants: int
    current_participants: int
    bookable: bool


def resolve_target(event_id: uuid.UUID | None, group_session_id: uuid.UUID | None) -> BookingTarget:
    if not event_id and not group_session_id:
        raise InvalidRequest("Необходимо указать либо eventId, либо groupSessionId")
    if event_id and group_session_id:
        raise InvalidRequest("Нельзя указывать одновременно eventId и groupSessionId")
    if event_id:
        return BookingTarget.event(event_id)
    return BookingTarget.group_session(group_session_id)


async def load_target(db: AsyncSession, target: BookingTarget) -> TargetInfo:
    if target.kind == TargetKind.EVENT:
        event = (await db.execute(
            select(Event).where(Event.id == target.id).execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if not event:
            raise NotFound("Событие не найдено")
        return TargetInfo(
            target=target,
            title=event.title,
            start=event.start_date,
            end=event.end_date,
            unit_price=event.price,
            max_participants=event.max_participants,
            current_participants=event.current_participants,
            bookable=event.status == EventStatus.PUBLISHED,
        )

    row = (await db.execute(
        select(GroupSession, RegularGroup)
        .join(RegularGroup, RegularGroup.id == GroupSession.group_id)
        .where(GroupSession.id == target.id)
        .execution_options(populate_existing=True)
    )).first()
    if not row:
        raise NotFound("Занятие не найдено")
    session, group = row
    return TargetInfo(
        target=target,
        title=group.name,
        start=session.date,
        end=session.date + timedelta(minutes=session.duration),
        unit_price=group.price,
        max_participants=group.max_participants,
        current_participants=session.current_participants,
        bookable=session.status != SessionStatus.CANCELLED and group.is_active,
    )


# ── Seat counters ─────────────────────────────────────────


def _seat_model(target: BookingTarget):
    return Event if target.kind == TargetKind.EVENT else GroupSession


async def try_reserve_seats(db: AsyncSession, target: BookingTarget, count: int, max_participants: int) -> bool:
    """Increment the seat counter only if `count` seats remain. Returns whether it did."""
    model = _seat_model(target)
    result = await db.execute(
        update(model)
        .where(model.id == target.id, model.current_participants + count <= max_participants)
        .values(current_participants=model.current_participants + count)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def reserve_seats(db: AsyncSession, target: BookingTarget, count: int, max_participants: int) -> None:
    if await try_reserve_seats(db, target, count, max_participants):
        return
    model = _seat_model(target)
    current = (await db.execute(
        select(model.current_participants).where(model.id == target.id)
    )).scalar() or 0
    available = max(max_participants - current, 0)
    raise CapacityExceeded(f"Недостаточно мест. Доступно: {available}", available=available)


async def release_seats(db: AsyncSession, target: BookingTarget, count: int) -> bool:
    """Decrement the seat counter, never below zero."""
    model = _seat_model(target)
    result = await db.execute(
        update(model)
        .where(model.id == target.id, model.current_participants >= count)
        .values(current_participants=model.current_participants - count)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Seat release skipped for %s %s: counter below %s", target.kind.value, target.id, count)
        return False
    return True


# ── Create ────────────────────────────────────────────────


async def create_booking(
    db: AsyncSession,
    notifier: Notifier | None,
    *,
    target: BookingTarget,
    participants: list[dict],
    contact_email: str,
    payment_method: PaymentMethod,
    user_id: uuid.UUID | None = None,
    subscription_id: uuid.UUID | None = None,
    notes: str | None = None,
) -> Booking:
    """
    Book `participants` into an event or a group session.

    Seats, balance and the booking row are committed together; the
    confirmation e-mail goes out after the commit.
    """
    participants_count = len(participants)
    if participants_count == 0:
        raise InvalidRequest("Необходимо указать хотя бы одного участника")

    async with atomic(db):
        info = await load_target(db, target)

        if target.kind == TargetKind.EVENT and not info.bookable:
            raise InvalidRequest("Событие недоступно для записи")
        if target.kind == TargetKind.GROUP_SESSION:
            if payment_method != PaymentMethod.SUBSCRIPTION:
                raise InvalidRequest("Для занятий направлений требуется оплата через абонемент")
            if not info.bookable:
                raise InvalidRequest("Запись недоступна")

        available = info.max_participants - info.current_participants
        if available < participants_count:
            raise CapacityExceeded(f"Недостаточно мест. Доступно: {max(available, 0)}", available=max(available, 0))

        price = calculate_booking_price(info.unit_price, participants_count, payment_method)
        paid_from = None

        if payment_method == PaymentMethod.SUBSCRIPTION:
            if not user_id:
                raise Unauthenticated("Для оплаты через абонемент необходимо войти в аккаунт")
            subscription = await ledger.select_subscription_for_payment(
                db, user_id, price.total_price, subscription_id,
            )
            await ledger.debit(db, subscription.id, price.total_price)
            paid_from = subscription.id

        booking = Booking(
            user_id=user_id,
            event_id=target.id if target.kind == TargetKind.EVENT else None,
            group_session_id=target.id if target.kind == TargetKind.GROUP_SESSION else None,
            subscription_id=paid_from,
            status=BookingStatus.PENDING,
            participants_count=participants_count,
            total_price=price.total_price,
            payment_method=payment_method,
            participants=participants,
            contact_email=contact_email,
            notes=notes,
        )
        db.add(booking)
        await db.flush()

        # Guard re-checks capacity inside the UPDATE; a concurrent booking may have taken the seats.
        await reserve_seats(db, target, participants_count, info.max_participants)

    logger.info(
        "Booking %s created: %s %s, %d participant(s), %s, total=%s",
        booking.id, target.kind.value, target.id, participants_count,
        payment_method.value, price.total_price,
    )

    if notifier:
        await notifier.send_booking_confirmation(
            contact_email,
            kind=target.kind.value,
            title=info.title,
            start=info.start,
            end=info.end,
            price=info.unit_price,
            participants=participants,
            total_price=price.total_price,
            payment_method=payment_method.value,
            notes=notes,
        )
    return booking


# ── Cancel ────────────────────────────────────────────────


async def reverse_booking(db: AsyncSession, booking: Booking) -> bool:
    """
    Cancel a booking and undo exactly what it did: free its seats and
    refund its subscription debit.

    The status flip is a conditional UPDATE, so when two callers race only
    one of them reverses anything. Returns whether this call did.
    """
    result = await db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status != BookingStatus.CANCELLED)
        .values(status=BookingStatus.CANCELLED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    await release_seats(db, booking.target, booking.participants_count)
    if booking.payment_method == PaymentMethod.SUBSCRIPTION and booking.subscription_id:
        await ledger.credit(db, booking.subscription_id, booking.total_price)

    logger.info("Booking %s cancelled and reversed", booking.id)
    return True


async def _fetch_booking(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    booking = (await db.execute(
        select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not booking:
        raise NotFound("Запись не найдена")
    return booking


async def cancel_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    enforce_time_window: bool = True,
    user_id: uuid.UUID | None = None,
) -> Booking:
    """
    Cancel a booking. Cancelling twice is a no-op.

    `user_id` is the acting user on the self-service path; the booking must be theirs.
    """
    async with atomic(db):
        booking = await _fetch_booking(db, booking_id)
        if user_id is not None and booking.user_id != user_id:
            raise Forbidden("Вы не можете отменить чужую запись")
        if booking.status == BookingStatus.CANCELLED:
            return booking

        if enforce_time_window:
            info = await load_target(db, booking.target)
            now = utcnow()
            window = settings.CANCELLATION_WINDOW_HOURS
            if info.start - now < timedelta(hours=window):
                hours_left = hours_until(info.start, now)
                raise CancellationWindowExpired(
                    f"Отменить запись можно только за {window} часов до начала занятия. "
                    f"До занятия осталось {hours_left} часов.",
                    hours_left=hours_left,
                )

        await reverse_booking(db, booking)
        return await _fetch_booking(db, booking_id)


async def update_booking_status(
    db: AsyncSession,
    booking_id: uuid.UUID,
    status: BookingStatus,
    enforce_time_window: bool = True,
    user_id: uuid.UUID | None = None,
) -> Booking:
    if status == BookingStatus.CANCELLED:
        return await cancel_booking(db, booking_id, enforce_time_window, user_id)

    async with atomic(db):
        booking = await _fetch_booking(db, booking_id)
        if booking.status == BookingStatus.CANCELLED:
            # Reviving would need seats and balance back; book again instead.
            raise InvalidRequest("Нельзя изменить статус отменённой записи")
        booking.status = status
        await db.flush()
    logger.info("Booking %s status → %s", booking_id, status.value)
    return booking


# ── Queries ───────────────────────────────────────────────


async def get_booking(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    return await _fetch_booking(db, booking_id)


async def list_bookings(
    db: AsyncSession,
    page: int = 1,
    limit: int = 20,
    status: BookingStatus | None = None,
    events_only: bool = False,
) -> dict:
    """Admin listing, newest first."""
    page = max(page, 1)
    limit = max(min(limit, 100), 1)

    filters = []
    if status:
        filters.append(Booking.status == status)
    if events_only:
        filters.append(Booking.event_id.is_not(None))

    total = (await db.execute(select(func.count(Booking.id)).where(*filters))).scalar() or 0
    result = await db.execute(
        select(Booking)
        .where(*filters)
        .order_by(Booking.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "data": list(result.scalars().all()),
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


async def upcoming_for_user(db: AsyncSession, user_id: uuid.UUID) -> list[Booking]:
    """The user's live event bookings that haven't started yet, soonest first."""
    result = await db.execute(
        select(Booking)
        .join(Event, Event.id == Booking.event_id)
        .where(
            Booking.user_id == user_id,
            Booking.status.in_([BookingStatus.PENDING, BookingStatus.CONFIRMED]),
            Event.start_date >= utcnow(),
        )
        .order_by(Event.start_date.asc())
    )
    return list(result.scalars().all())


async def list_by_event(db: AsyncSession, event_id: uuid.UUID) -> list[Booking]:
    result = await db.execute(
        select(Booking).where(Booking.event_id == event_id).order_by(Booking.created_at.asc())
    )
    return list(result.scalars().all())

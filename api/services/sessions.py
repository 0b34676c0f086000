"""
Session Generator — turns a group's weekly schedule into dated sessions.

Rules:
  1. One session per (group, studio day) matching schedule.daysOfWeek; re-running is a no-op
  2. Every new session fans out a CONFIRMED booking to each ACTIVE enrollment, debited up front
  3. A schedule change tears down future sessions (refunding their bookings) and regenerates
  4. Past sessions are never touched
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db.database import atomic, utcnow
from models.booking import Booking, BookingTarget
from models.enums import (
    BookingStatus, EnrollmentStatus, LIVE_BOOKING_STATUSES, PaymentMethod, SessionStatus,
)
from models.event import GroupEnrollment, GroupSession, RegularGroup
from models.subscription import Subscription
from models.user import User
from services import ledger
from services.bookings import reverse_booking, try_reserve_seats, release_seats
from services.business_time import iter_business_days, parse_hhmm, schedule_weekday, session_instant
from services.errors import Conflict, InsufficientBalance, InvalidRequest, NotFound
from services.notifier import Notifier
from services.pricing import calculate_booking_price, money

logger = logging.getLogger(__name__)


def validate_schedule(schedule: dict | None) -> tuple[list[int], str, int]:
    """Returns (days_of_week, "HH:MM", duration_minutes) or raises InvalidRequest."""
    try:
        days = [int(d) for d in schedule["daysOfWeek"]]
        hhmm = str(schedule["time"])
        parse_hhmm(hhmm)
        duration = int(schedule["duration"])
    except (KeyError, TypeError, ValueError):
        raise InvalidRequest("Некорректное расписание направления")
    if not days or any(d < 0 or d > 6 for d in days) or duration <= 0:
        raise InvalidRequest("Некорректное расписание направления")
    return sorted(set(days)), hhmm, duration


def schedule_changed(old: dict | None, new: dict | None) -> bool:
    """True only when `new` is a valid schedule that differs from `old`."""
    try:
        target = validate_schedule(new)
    except InvalidRequest:
        return False
    try:
        return validate_schedule(old) != target
    except InvalidRequest:
        return True


async def get_group(db: AsyncSession, group_id: uuid.UUID) -> RegularGroup:
    group = (await db.execute(
        select(RegularGroup).where(RegularGroup.id == group_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not group:
        raise NotFound("Направление не найдено")
    return group


# ── Fan-out ───────────────────────────────────────────────


async def book_enrollment_into_session(
    db: AsyncSession,
    enrollment: GroupEnrollment,
    session: GroupSession,
    group: RegularGroup,
) -> Booking | None:
    """
    Create the enrollment's booking for one session, debiting its subscription.

    Returns None (and changes nothing) when the user already has a booking
    there, the session is full, or the subscription can't cover it.
    """
    existing = (await db.execute(
        select(Booking.id).where(
            Booking.group_session_id == session.id,
            Booking.user_id == enrollment.user_id,
        ).limit(1)
    )).scalar_one_or_none()
    if existing:
        return None

    count = enrollment.participants_count
    price = calculate_booking_price(group.price, count, PaymentMethod.SUBSCRIPTION)
    target = BookingTarget.group_session(session.id)

    if not await try_reserve_seats(db, target, count, group.max_participants):
        logger.warning(
            "Fan-out skipped: session %s full for enrollment %s (%d seat(s))",
            session.id, enrollment.id, count,
        )
        return None

    try:
        await ledger.debit(db, enrollment.subscription_id, price.total_price)
    except InsufficientBalance:
        await release_seats(db, target, count)
        logger.warning(
            "Fan-out skipped: subscription %s cannot cover %s for session %s (enrollment %s)",
            enrollment.subscription_id, price.total_price, session.id, enrollment.id,
        )
        return None

    booking = Booking(
        user_id=enrollment.user_id,
        group_session_id=session.id,
        group_enrollment_id=enrollment.id,
        subscription_id=enrollment.subscription_id,
        status=BookingStatus.CONFIRMED,
        participants_count=count,
        total_price=price.total_price,
        payment_method=PaymentMethod.SUBSCRIPTION,
        participants=enrollment.participants or [],
        contact_email=enrollment.contact_email,
    )
    db.add(booking)
    await db.flush()
    return booking


async def fan_out_session(db: AsyncSession, session: GroupSession, group: RegularGroup) -> int:
    """Book every ACTIVE enrollment of the group into a session. Returns bookings created."""
    enrollments = (await db.execute(
        select(GroupEnrollment)
        .where(
            GroupEnrollment.group_id == group.id,
            GroupEnrollment.status == EnrollmentStatus.ACTIVE,
        )
        .order_by(GroupEnrollment.created_at.asc())
    )).scalars().all()

    created = 0
    for enrollment in enrollments:
        if await book_enrollment_into_session(db, enrollment, session, group):
            created += 1
    return created


# ── Generation ────────────────────────────────────────────


async def _generate(
    db: AsyncSession,
    group: RegularGroup,
    start: datetime,
    end: datetime,
    not_before: datetime | None = None,
) -> list[GroupSession]:
    if start > end:
        raise InvalidRequest("Дата начала должна быть не позже даты окончания")
    if end - start > timedelta(days=settings.SESSION_MAX_HORIZON_DAYS):
        raise InvalidRequest(
            f"Период генерации не может превышать {settings.SESSION_MAX_HORIZON_DAYS} дней"
        )
    days, hhmm, duration = validate_schedule(group.schedule)

    candidates = [
        session_instant(day, hhmm)
        for day in iter_business_days(start, end)
        if schedule_weekday(day) in days
    ]
    if not_before is not None:
        candidates = [c for c in candidates if c >= not_before]
    if not candidates:
        return []

    existing = set((await db.execute(
        select(GroupSession.date).where(
            GroupSession.group_id == group.id,
            GroupSession.date >= candidates[0],
            GroupSession.date <= candidates[-1],
        )
    )).scalars().all())

    now = utcnow()
    created: list[GroupSession] = []
    for instant in candidates:
        if instant in existing:
            continue
        session = GroupSession(
            group_id=group.id,
            date=instant,
            duration=duration,
            status=SessionStatus.SCHEDULED,
            current_participants=0,
        )
        db.add(session)
        await db.flush()
        if instant > now:
            await fan_out_session(db, session, group)
        created.append(session)

    if created:
        # Seat counters were moved by UPDATEs; reload so callers see them.
        result = await db.execute(
            select(GroupSession)
            .where(GroupSession.id.in_([s.id for s in created]))
            .order_by(GroupSession.date.asc())
            .execution_options(populate_existing=True)
        )
        created = list(result.scalars().all())

    logger.info(
        "Generated %d session(s) for group %s between %s and %s",
        len(created), group.id, start.date(), end.date(),
    )
    return created


async def generate_sessions(
    db: AsyncSession,
    group_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> list[GroupSession]:
    """Create the missing sessions of a group in [start, end]. Returns only the new ones."""
    try:
        async with atomic(db):
            group = await get_group(db, group_id)
            return await _generate(db, group, start, end)
    except IntegrityError as e:
        # Unique (group_id, date): another request generated the same sessions first.
        raise Conflict("Занятия уже создаются другим запросом, повторите попытку") from e


async def _default_horizon(db: AsyncSession, group: RegularGroup) -> list[GroupSession]:
    now = utcnow()
    return await _generate(
        db, group, now, now + timedelta(days=settings.SESSION_GENERATION_DAYS), not_before=now,
    )


# ── Group administration ──────────────────────────────────


async def create_group(
    db: AsyncSession,
    name: str,
    schedule: dict,
    price: Decimal,
    max_participants: int,
    is_active: bool = True,
) -> RegularGroup:
    validate_schedule(schedule)
    if max_participants <= 0:
        raise InvalidRequest("Количество мест должно быть больше 0")

    async with atomic(db):
        group = RegularGroup(
            name=name,
            schedule=schedule,
            price=money(price),
            max_participants=max_participants,
            is_active=is_active,
        )
        db.add(group)
        await db.flush()
        if is_active:
            await _default_horizon(db, group)

    logger.info("Group %s created (%s)", group.id, name)
    return group


async def _teardown_future_sessions(db: AsyncSession, group_id: uuid.UUID) -> int:
    """Refund and delete every session of the group that hasn't started yet."""
    session_ids = list((await db.execute(
        select(GroupSession.id).where(
            GroupSession.group_id == group_id,
            GroupSession.date > utcnow(),
        )
    )).scalars().all())
    if not session_ids:
        return 0

    live = (await db.execute(
        select(Booking).where(
            Booking.group_session_id.in_(session_ids),
            Booking.status.in_(LIVE_BOOKING_STATUSES),
        )
    )).scalars().all()
    for booking in live:
        await reverse_booking(db, booking)

    await db.execute(
        delete(Booking)
        .where(Booking.group_session_id.in_(session_ids))
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(GroupSession)
        .where(GroupSession.id.in_(session_ids))
        .execution_options(synchronize_session=False)
    )
    logger.info(
        "Tore down %d future session(s) of group %s (%d booking(s) refunded)",
        len(session_ids), group_id, len(live),
    )
    return len(session_ids)


async def update_group(db: AsyncSession, group_id: uuid.UUID, changes: dict) -> RegularGroup:
    """
    Apply admin edits to a group.

    When days, time or duration change on an active group, future sessions
    are rebuilt from the new schedule.
    """
    if "schedule" in changes and changes["schedule"] is not None:
        validate_schedule(changes["schedule"])

    async with atomic(db):
        group = await get_group(db, group_id)
        rebuild = changes.get("schedule") is not None and schedule_changed(group.schedule, changes["schedule"])

        for field in ("name", "schedule", "price", "max_participants", "is_active"):
            if field in changes and changes[field] is not None:
                setattr(group, field, money(changes[field]) if field == "price" else changes[field])
        await db.flush()

        if rebuild and group.is_active:
            await _teardown_future_sessions(db, group.id)
            await _default_horizon(db, group)

    logger.info("Group %s updated%s", group_id, " (schedule rebuilt)" if rebuild else "")
    return group


async def list_groups(db: AsyncSession, include_inactive: bool = False) -> list[RegularGroup]:
    query = select(RegularGroup)
    if not include_inactive:
        query = query.where(RegularGroup.is_active.is_(True))
    result = await db.execute(query.order_by(RegularGroup.name.asc()))
    return list(result.scalars().all())


async def upcoming_sessions(db: AsyncSession, group_id: uuid.UUID) -> list[GroupSession]:
    await get_group(db, group_id)
    result = await db.execute(
        select(GroupSession)
        .where(
            GroupSession.group_id == group_id,
            GroupSession.date >= utcnow(),
            GroupSession.status != SessionStatus.CANCELLED,
        )
        .order_by(GroupSession.date.asc())
    )
    return list(result.scalars().all())


# ── Session administration ────────────────────────────────


async def _get_session(db: AsyncSession, session_id: uuid.UUID) -> GroupSession:
    session = (await db.execute(
        select(GroupSession).where(GroupSession.id == session_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not session:
        raise NotFound("Занятие не найдено")
    return session


async def cancel_session(
    db: AsyncSession,
    notifier: Notifier | None,
    session_id: uuid.UUID,
    notes: str | None = None,
) -> GroupSession:
    """
    Cancel a session: its live bookings are reversed (seats and balances
    restored) and every ACTIVE enrollment is told by e-mail.
    """
    async with atomic(db):
        session = await _get_session(db, session_id)
        if session.status == SessionStatus.COMPLETED:
            raise InvalidRequest("Нельзя отменить завершённое занятие")
        if session.status == SessionStatus.CANCELLED:
            return session
        group = await get_group(db, session.group_id)

        session.status = SessionStatus.CANCELLED
        session.notes = notes
        await db.flush()

        live = (await db.execute(
            select(Booking).where(
                Booking.group_session_id == session.id,
                Booking.status.in_(LIVE_BOOKING_STATUSES),
            )
        )).scalars().all()
        for booking in live:
            await reverse_booking(db, booking)

        recipients = (await db.execute(
            select(User)
            .join(GroupEnrollment, GroupEnrollment.user_id == User.id)
            .where(
                GroupEnrollment.group_id == session.group_id,
                GroupEnrollment.status == EnrollmentStatus.ACTIVE,
            )
        )).scalars().all()

    session = await _get_session(db, session_id)
    logger.info("Session %s cancelled (%d booking(s) reversed)", session_id, len(live))

    if notifier:
        for user in recipients:
            await notifier.send_session_cancellation(
                user.email, user.full_name, group.name, session.date, notes,
            )
    return session


async def session_participants(db: AsyncSession, session_id: uuid.UUID) -> dict:
    """ACTIVE enrollments of the session's group, with user and subscription summary."""
    session = await _get_session(db, session_id)
    rows = (await db.execute(
        select(GroupEnrollment, User, Subscription)
        .join(User, User.id == GroupEnrollment.user_id)
        .outerjoin(Subscription, Subscription.id == GroupEnrollment.subscription_id)
        .where(
            GroupEnrollment.group_id == session.group_id,
            GroupEnrollment.status == EnrollmentStatus.ACTIVE,
        )
        .order_by(GroupEnrollment.created_at.desc())
    )).all()

    participants = [
        {
            "enrollment_id": enrollment.id,
            "participants": enrollment.participants or [],
            "contact_email": enrollment.contact_email,
            "user": {
                "id": user.id,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "email": user.email,
                "phone": user.phone,
            },
            "subscription": {
                "id": subscription.id,
                "remaining_balance": money(subscription.remaining_balance),
                "status": subscription.status,
            } if subscription else None,
        }
        for enrollment, user, subscription in rows
    ]
    return {"session": session, "participants": participants, "total_participants": len(participants)}


async def delete_session(db: AsyncSession, session_id: uuid.UUID) -> None:
    async with atomic(db):
        session = await _get_session(db, session_id)
        bookings = (await db.execute(
            select(func.count(Booking.id)).where(Booking.group_session_id == session.id)
        )).scalar() or 0
        if bookings:
            raise Conflict(
                "Нельзя удалить занятие с существующими записями. Отмените занятие вместо удаления."
            )
        await db.delete(session)
    logger.info("Session %s deleted", session_id)

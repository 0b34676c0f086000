"""Enrollment Engine — standing membership of a user in a recurring group."""

import logging
import uuid
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db.database import atomic, utcnow
from models.booking import Booking
from models.enums import EnrollmentStatus, PaymentMethod, SessionStatus, SubscriptionStatus
from models.event import GroupEnrollment, GroupSession, RegularGroup
from models.subscription import Subscription
from services.errors import Conflict, Forbidden, InsufficientBalance, InvalidRequest, NotFound
from services.notifier import Notifier
from services.pricing import calculate_booking_price
from services.sessions import book_enrollment_into_session

logger = logging.getLogger(__name__)


async def _active_enrollment_exists(db: AsyncSession, user_id: uuid.UUID, group_id: uuid.UUID) -> bool:
    found = (await db.execute(
        select(GroupEnrollment.id).where(
            GroupEnrollment.user_id == user_id,
            GroupEnrollment.group_id == group_id,
            GroupEnrollment.status == EnrollmentStatus.ACTIVE,
        ).limit(1)
    )).scalar_one_or_none()
    return found is not None


async def enroll(
    db: AsyncSession,
    notifier: Notifier | None,
    user_id: uuid.UUID,
    group_id: uuid.UUID,
    participants: list[dict],
    contact_email: str,
    notes: str | None = None,
) -> GroupEnrollment:
    """
    Enroll a user into a group and book them into every future session.

    Each fan-out booking is debited from the subscription the enrollment
    is bound to; sessions that are full or unaffordable are skipped.
    """
    try:
        async with atomic(db):
            group = (await db.execute(
                select(RegularGroup).where(RegularGroup.id == group_id)
            )).scalar_one_or_none()
            if not group:
                raise NotFound("Направление не найдено")
            if not group.is_active:
                raise InvalidRequest("Направление неактивно")

            if await _active_enrollment_exists(db, user_id, group_id):
                raise Conflict("Вы уже записаны в это направление")

            subscription = (await db.execute(
                select(Subscription)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.remaining_balance > 0,
                )
                .order_by(Subscription.remaining_balance.desc())
                .limit(1)
            )).scalar_one_or_none()
            if not subscription:
                raise InsufficientBalance(
                    "Для записи на направление требуется активный абонемент с положительным балансом"
                )

            enrollment = GroupEnrollment(
                user_id=user_id,
                group_id=group_id,
                subscription_id=subscription.id,
                status=EnrollmentStatus.ACTIVE,
                participants=participants,
                contact_email=contact_email,
                notes=notes,
            )
            db.add(enrollment)
            await db.flush()

            sessions = (await db.execute(
                select(GroupSession)
                .where(
                    GroupSession.group_id == group_id,
                    GroupSession.date > utcnow(),
                    GroupSession.status == SessionStatus.SCHEDULED,
                )
                .order_by(GroupSession.date.asc())
            )).scalars().all()

            booked = 0
            for session in sessions:
                if await book_enrollment_into_session(db, enrollment, session, group):
                    booked += 1
    except IntegrityError as e:
        # Partial unique index on ACTIVE (user, group): a parallel enroll won.
        raise Conflict("Вы уже записаны в это направление") from e

    logger.info(
        "User %s enrolled in group %s (enrollment %s, %d/%d session(s) booked)",
        user_id, group_id, enrollment.id, booked, len(sessions),
    )

    if notifier and sessions:
        nearest = sessions[0]
        count = enrollment.participants_count
        price = calculate_booking_price(group.price, count, PaymentMethod.SUBSCRIPTION)
        await notifier.send_booking_confirmation(
            contact_email,
            kind="group-session",
            title=group.name,
            start=nearest.date,
            end=nearest.date + timedelta(minutes=nearest.duration),
            price=group.price,
            participants=participants,
            total_price=price.total_price,
            payment_method=PaymentMethod.SUBSCRIPTION.value,
            notes=notes,
        )
    return enrollment


async def _owned_enrollment(
    db: AsyncSession, enrollment_id: uuid.UUID, user_id: uuid.UUID, denied: str,
) -> GroupEnrollment:
    enrollment = (await db.execute(
        select(GroupEnrollment)
        .where(GroupEnrollment.id == enrollment_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not enrollment:
        raise NotFound("Запись не найдена")
    if enrollment.user_id != user_id:
        raise Forbidden(denied)
    return enrollment


async def cancel_enrollment(db: AsyncSession, enrollment_id: uuid.UUID, user_id: uuid.UUID) -> GroupEnrollment:
    async with atomic(db):
        enrollment = await _owned_enrollment(db, enrollment_id, user_id, "Вы не можете отменить чужую запись")
        if enrollment.status == EnrollmentStatus.CANCELLED:
            raise InvalidRequest("Запись уже отменена")
        enrollment.status = EnrollmentStatus.CANCELLED
        await db.flush()
    logger.info("Enrollment %s cancelled", enrollment_id)
    return enrollment


async def pause_enrollment(db: AsyncSession, enrollment_id: uuid.UUID, user_id: uuid.UUID) -> GroupEnrollment:
    async with atomic(db):
        enrollment = await _owned_enrollment(db, enrollment_id, user_id, "Вы не можете приостановить чужую запись")
        if enrollment.status != EnrollmentStatus.ACTIVE:
            raise InvalidRequest("Можно приостановить только активную запись")
        enrollment.status = EnrollmentStatus.PAUSED
        await db.flush()
    logger.info("Enrollment %s paused", enrollment_id)
    return enrollment


async def resume_enrollment(db: AsyncSession, enrollment_id: uuid.UUID, user_id: uuid.UUID) -> GroupEnrollment:
    try:
        async with atomic(db):
            enrollment = await _owned_enrollment(db, enrollment_id, user_id, "Вы не можете возобновить чужую запись")
            if enrollment.status != EnrollmentStatus.PAUSED:
                raise InvalidRequest("Можно возобновить только приостановленную запись")
            if await _active_enrollment_exists(db, user_id, enrollment.group_id):
                raise Conflict("Вы уже записаны в это направление")
            enrollment.status = EnrollmentStatus.ACTIVE
            await db.flush()
    except IntegrityError as e:
        raise Conflict("Вы уже записаны в это направление") from e
    logger.info("Enrollment %s resumed", enrollment_id)
    return enrollment


async def upcoming_sessions(db: AsyncSession, enrollment_id: uuid.UUID, user_id: uuid.UUID) -> list[dict]:
    """Future SCHEDULED sessions of the enrollment's group with this user's booking (or None)."""
    enrollment = await _owned_enrollment(
        db, enrollment_id, user_id, "Вы не можете просматривать чужие записи",
    )
    group = (await db.execute(
        select(RegularGroup).where(RegularGroup.id == enrollment.group_id)
    )).scalar_one()

    sessions = (await db.execute(
        select(GroupSession)
        .where(
            GroupSession.group_id == enrollment.group_id,
            GroupSession.date >= utcnow(),
            GroupSession.status == SessionStatus.SCHEDULED,
        )
        .order_by(GroupSession.date.asc())
        .limit(settings.UPCOMING_SESSIONS_LIMIT)
    )).scalars().all()

    bookings: dict[uuid.UUID, Booking] = {}
    if sessions:
        rows = (await db.execute(
            select(Booking)
            .where(
                Booking.user_id == user_id,
                Booking.group_session_id.in_([s.id for s in sessions]),
            )
            .order_by(Booking.created_at.asc())
        )).scalars().all()
        for booking in rows:
            bookings.setdefault(booking.group_session_id, booking)

    return [
        {
            "id": session.id,
            "date": session.date,
            "duration": session.duration,
            "status": session.status,
            "current_participants": session.current_participants,
            "max_participants": group.max_participants,
            "booking": bookings.get(session.id),
        }
        for session in sessions
    ]


async def list_for_user(db: AsyncSession, user_id: uuid.UUID) -> list[GroupEnrollment]:
    result = await db.execute(
        select(GroupEnrollment)
        .where(GroupEnrollment.user_id == user_id)
        .order_by(GroupEnrollment.created_at.desc())
    )
    return list(result.scalars().all())

"""Booking API endpoints — events and single group sessions."""

import uuid
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from dependencies import CurrentUser, get_current_user, get_notifier, require_admin, require_user
from models.enums import BookingStatus
from schemas import BookingCreate, BookingPage, BookingResponse, BookingStatusUpdate
from services import bookings
from services.errors import Forbidden
from services.notifier import Notifier

router = APIRouter()


@router.post("", response_model=BookingResponse, status_code=201)
async def create_booking(
    data: BookingCreate,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    user: CurrentUser | None = Depends(get_current_user),
):
    """Book an event or a single group session. Anonymous users may book events on site."""
    target = bookings.resolve_target(data.event_id, data.group_session_id)
    return await bookings.create_booking(
        db,
        notifier,
        target=target,
        participants=[p.model_dump() for p in data.participants],
        contact_email=data.contact_email,
        payment_method=data.payment_method,
        user_id=user.id if user else None,
        subscription_id=data.subscription_id,
        notes=data.notes,
    )


@router.get("", response_model=BookingPage)
async def list_bookings(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: BookingStatus | None = None,
    events_only: bool = False,
    db: AsyncSession = Depends(get_db),
    _: CurrentUser = Depends(require_admin),
):
    return await bookings.list_bookings(db, page=page, limit=limit, status=status, events_only=events_only)


@router.get("/upcoming", response_model=list[BookingResponse])
async def my_upcoming_bookings(
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_user),
):
    return await bookings.upcoming_for_user(db, user.id)


@router.get("/event/{event_id}", response_model=list[BookingResponse])
async def bookings_for_event(
    event_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _: CurrentUser = Depends(require_admin),
):
    return await bookings.list_by_event(db, event_id)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_user),
):
    booking = await bookings.get_booking(db, booking_id)
    if not user.is_admin and booking.user_id != user.id:
        raise Forbidden("Вы не можете просматривать чужую запись")
    return booking


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_user),
):
    """Self-service cancellation, allowed only outside the cancellation window."""
    return await bookings.cancel_booking(db, booking_id, enforce_time_window=True, user_id=user.id)


@router.patch("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: uuid.UUID,
    data: BookingStatusUpdate,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_user),
):
    """
    Admins may set any status and cancel at any time.
    Everyone else may only cancel their own booking.
    """
    if user.is_admin:
        return await bookings.update_booking_status(db, booking_id, data.status, enforce_time_window=False)
    if data.status != BookingStatus.CANCELLED:
        raise Forbidden("Доступ только для администратора")
    return await bookings.update_booking_status(
        db, booking_id, data.status, enforce_time_window=True, user_id=user.id,
    )


@router.post("/{booking_id}/admin-cancel", response_model=BookingResponse)
async def admin_cancel_booking(
    booking_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _: CurrentUser = Depends(require_admin),
):
    """Cancel regardless of the cancellation window."""
    return await bookings.cancel_booking(db, booking_id, enforce_time_window=False)

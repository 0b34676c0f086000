"""Group enrollment API endpoints."""

import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from dependencies import CurrentUser, get_notifier, require_user
from schemas import EnrollmentCreate, EnrollmentResponse, EnrollmentSession
from services import enrollments
from services.notifier import Notifier

router = APIRouter()


@router.post("", response_model=EnrollmentResponse, status_code=201)
async def enroll(
    data: EnrollmentCreate,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    user: CurrentUser = Depends(require_user),
):
    """Join a group; every future session is booked and paid from the user's subscription."""
    return await enrollments.enroll(
        db,
        notifier,
        user_id=user.id,
        group_id=data.group_id,
        participants=[p.model_dump() for p in data.participants],
        contact_email=data.contact_email,
        notes=data.notes,
    )


@router.get("/my", response_model=list[EnrollmentResponse])
async def my_enrollments(db: AsyncSession = Depends(get_db), user: CurrentUser = Depends(require_user)):
    return await enrollments.list_for_user(db, user.id)


@router.get("/{enrollment_id}/sessions", response_model=list[EnrollmentSession])
async def enrollment_sessions(
    enrollment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_user),
):
    return await enrollments.upcoming_sessions(db, enrollment_id, user.id)


@router.post("/{enrollment_id}/cancel", response_model=EnrollmentResponse)
async def cancel_enrollment(
    enrollment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_user),
):
    return await enrollments.cancel_enrollment(db, enrollment_id, user.id)


@router.post("/{enrollment_id}/pause", response_model=EnrollmentResponse)
async def pause_enrollment(
    enrollment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_user),
):
    return await enrollments.pause_enrollment(db, enrollment_id, user.id)


@router.post("/{enrollment_id}/resume", response_model=EnrollmentResponse)
async def resume_enrollment(
    enrollment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_user),
):
    return await enrollments.resume_enrollment(db, enrollment_id, user.id)

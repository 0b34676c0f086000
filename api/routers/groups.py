"""Regular group and group session API endpoints."""

import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from dependencies import CurrentUser, get_current_user, get_notifier, require_admin
from schemas import (
    GenerateSessionsRequest, GroupCreate, GroupResponse, GroupUpdate,
    SessionCancel, SessionParticipants, SessionResponse,
)
from services import sessions
from services.business_time import parse_business_datetime
from services.notifier import Notifier

router = APIRouter()
sessions_router = APIRouter()


# ── Groups ─────────────────────────────────────────────────

@router.get("", response_model=list[GroupResponse])
async def list_groups(
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser | None = Depends(get_current_user),
):
    """Active groups; admins may ask for inactive ones too."""
    return await sessions.list_groups(db, include_inactive=include_inactive and bool(user and user.is_admin))


@router.post("", response_model=GroupResponse, status_code=201)
async def create_group(
    data: GroupCreate,
    db: AsyncSession = Depends(get_db),
    _: CurrentUser = Depends(require_admin),
):
    return await sessions.create_group(
        db,
        name=data.name,
        schedule=data.schedule,
        price=data.price,
        max_participants=data.max_participants,
        is_active=data.is_active,
    )


@router.get("/{group_id}", response_model=GroupResponse)
async def get_group(group_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    return await sessions.get_group(db, group_id)


@router.patch("/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: uuid.UUID,
    data: GroupUpdate,
    db: AsyncSession = Depends(get_db),
    _: CurrentUser = Depends(require_admin),
):
    return await sessions.update_group(db, group_id, data.model_dump(exclude_unset=True))


@router.get("/{group_id}/sessions", response_model=list[SessionResponse])
async def upcoming_sessions(group_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    return await sessions.upcoming_sessions(db, group_id)


@router.post("/{group_id}/sessions/generate", response_model=list[SessionResponse], status_code=201)
async def generate_sessions(
    group_id: uuid.UUID,
    data: GenerateSessionsRequest,
    db: AsyncSession = Depends(get_db),
    _: CurrentUser = Depends(require_admin),
):
    """Create the missing sessions in a date range. Returns only the newly created ones."""
    return await sessions.generate_sessions(
        db,
        group_id,
        parse_business_datetime(data.start_date),
        parse_business_datetime(data.end_date),
    )


# ── Sessions ───────────────────────────────────────────────

@sessions_router.post("/{session_id}/cancel", response_model=SessionResponse)
async def cancel_session(
    session_id: uuid.UUID,
    data: SessionCancel,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    _: CurrentUser = Depends(require_admin),
):
    return await sessions.cancel_session(db, notifier, session_id, data.notes)


@sessions_router.get("/{session_id}/participants", response_model=SessionParticipants)
async def session_participants(
    session_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _: CurrentUser = Depends(require_admin),
):
    return await sessions.session_participants(db, session_id)


@sessions_router.delete("/{session_id}", status_code=204)
async def delete_session(
    session_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _: CurrentUser = Depends(require_admin),
):
    await sessions.delete_session(db, session_id)

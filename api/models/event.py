"""Bookable activity models — one-off events and recurring groups with their sessions."""

import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    String, Integer, Numeric, Boolean, ForeignKey, Text, JSON,
    CheckConstraint, UniqueConstraint, Index, Enum as PgEnum, text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from db.database import Base, AwareDateTime, utcnow
from models.enums import EventStatus, SessionStatus, EnrollmentStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint(
            "current_participants >= 0 AND current_participants <= max_participants",
            name="ck_events_participants_range",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[EventStatus] = mapped_column(
        PgEnum(EventStatus, name="event_status"), default=EventStatus.DRAFT,
    )
    start_date: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False)
    end_date: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    current_participants: Mapped[int] = mapped_column(Integer, default=0)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), default=utcnow)


class RegularGroup(Base):
    __tablename__ = "regular_groups"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # {"daysOfWeek": [1, 3], "time": "18:30", "duration": 90}; 0 = Sunday
    schedule: Mapped[dict] = mapped_column(JSONType, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(AwareDateTime(), default=utcnow, onupdate=utcnow)


class GroupSession(Base):
    __tablename__ = "group_sessions"
    __table_args__ = (
        UniqueConstraint("group_id", "date", name="uq_group_sessions_group_date"),
        CheckConstraint("current_participants >= 0", name="ck_group_sessions_participants"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    group_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("regular_groups.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    date: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    status: Mapped[SessionStatus] = mapped_column(
        PgEnum(SessionStatus, name="session_status"), default=SessionStatus.SCHEDULED,
    )
    current_participants: Mapped[int] = mapped_column(Integer, default=0)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), default=utcnow)


class GroupEnrollment(Base):
    __tablename__ = "group_enrollments"
    __table_args__ = (
        # At most one ACTIVE enrollment per (user, group)
        Index(
            "uq_group_enrollments_active",
            "user_id", "group_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    group_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("regular_groups.id"), nullable=False, index=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("subscriptions.id"), nullable=False)
    status: Mapped[EnrollmentStatus] = mapped_column(
        PgEnum(EnrollmentStatus, name="enrollment_status"), default=EnrollmentStatus.ACTIVE,
    )
    participants: Mapped[list] = mapped_column(JSONType, default=list)
    contact_email: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(AwareDateTime(), default=utcnow, onupdate=utcnow)

    @property
    def participants_count(self) -> int:
        return len(self.participants or []) or 1

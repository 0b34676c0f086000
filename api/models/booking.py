"""Booking ORM model — a seat reservation against an event or a group session."""

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from sqlalchemy import (
    String, Integer, Numeric, ForeignKey, Text, CheckConstraint, Enum as PgEnum,
)
from sqlalchemy.orm import Mapped, mapped_column
from db.database import Base, AwareDateTime, utcnow
from models.enums import BookingStatus, PaymentMethod
from models.event import JSONType


class TargetKind(str, Enum):
    EVENT = "event"
    GROUP_SESSION = "group-session"


@dataclass(frozen=True)
class BookingTarget:
    """What a booking reserves seats in: Event(id) or GroupSession(id)."""

    kind: TargetKind
    id: uuid.UUID

    @classmethod
    def event(cls, event_id: uuid.UUID) -> "BookingTarget":
        return cls(TargetKind.EVENT, event_id)

    @classmethod
    def group_session(cls, session_id: uuid.UUID) -> "BookingTarget":
        return cls(TargetKind.GROUP_SESSION, session_id)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint(
            "(event_id IS NULL) <> (group_session_id IS NULL)",
            name="ck_bookings_single_target",
        ),
        CheckConstraint("participants_count > 0", name="ck_bookings_participants_count"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), index=True)

    # Target: exactly one is set
    event_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("events.id"), index=True)
    group_session_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("group_sessions.id", ondelete="CASCADE"), index=True,
    )

    group_enrollment_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("group_enrollments.id"))
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("subscriptions.id"))

    status: Mapped[BookingStatus] = mapped_column(
        PgEnum(BookingStatus, name="booking_status"), default=BookingStatus.PENDING,
    )
    participants_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        PgEnum(PaymentMethod, name="payment_method"), nullable=False,
    )
    participants: Mapped[list] = mapped_column(JSONType, default=list)
    contact_email: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(AwareDateTime(), default=utcnow, onupdate=utcnow)

    @property
    def target(self) -> BookingTarget:
        if self.event_id is not None:
            return BookingTarget.event(self.event_id)
        return BookingTarget.group_session(self.group_session_id)

"""Pydantic schemas for API request/response models."""

from __future__ import annotations
import uuid
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, EmailStr, Field

from models.enums import (
    BookingStatus, EnrollmentStatus, OrderStatus, PaymentMethod, SessionStatus, SubscriptionStatus,
)


# ── Shared ─────────────────────────────────────────────────

class Participant(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone: str
    age: int | None = Field(None, ge=0, le=120)


# ── Subscription Schemas ───────────────────────────────────

class SubscriptionResponse(BaseModel):
    id: uuid.UUID
    type_id: uuid.UUID | None
    name: str
    total_balance: Decimal
    remaining_balance: Decimal
    price: Decimal
    status: SubscriptionStatus
    purchased_at: datetime
    expires_at: datetime | None

    class Config:
        from_attributes = True


class BalanceItem(BaseModel):
    id: uuid.UUID
    name: str
    remaining_balance: Decimal
    expires_at: datetime | None


class BalanceSummary(BaseModel):
    total_balance: Decimal
    subscriptions_count: int
    subscriptions: list[BalanceItem]


class SubscriptionPurchase(BaseModel):
    type_id: uuid.UUID


class BalanceTopUp(BaseModel):
    amount: Decimal = Field(..., gt=0)


class PaymentInitRequest(BaseModel):
    type_id: uuid.UUID


class PaymentInitResponse(BaseModel):
    payment_url: str


# ── Booking Schemas ────────────────────────────────────────

class BookingCreate(BaseModel):
    event_id: uuid.UUID | None = None
    group_session_id: uuid.UUID | None = None
    participants: list[Participant]
    contact_email: EmailStr
    payment_method: PaymentMethod
    subscription_id: uuid.UUID | None = None
    notes: str | None = None


class BookingResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID | None
    event_id: uuid.UUID | None
    group_session_id: uuid.UUID | None
    group_enrollment_id: uuid.UUID | None
    subscription_id: uuid.UUID | None
    status: BookingStatus
    participants_count: int
    total_price: Decimal
    payment_method: PaymentMethod
    participants: list[dict]
    contact_email: str
    notes: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class BookingPage(BaseModel):
    data: list[BookingResponse]
    total: int
    page: int
    limit: int
    total_pages: int


# ── Group & Session Schemas ────────────────────────────────

class GroupCreate(BaseModel):
    name: str
    # {"daysOfWeek": [1, 3], "time": "18:30", "duration": 90}; 0 = Sunday
    schedule: dict
    price: Decimal = Field(..., ge=0)
    max_participants: int = Field(..., gt=0)
    is_active: bool = True


class GroupUpdate(BaseModel):
    name: str | None = None
    schedule: dict | None = None
    price: Decimal | None = Field(None, ge=0)
    max_participants: int | None = Field(None, gt=0)
    is_active: bool | None = None


class GroupResponse(BaseModel):
    id: uuid.UUID
    name: str
    schedule: dict
    price: Decimal
    max_participants: int
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class GenerateSessionsRequest(BaseModel):
    # Naive values are studio (UTC+7) wall-clock time
    start_date: datetime
    end_date: datetime


class SessionResponse(BaseModel):
    id: uuid.UUID
    group_id: uuid.UUID
    date: datetime
    duration: int
    status: SessionStatus
    current_participants: int
    notes: str | None

    class Config:
        from_attributes = True


class SessionCancel(BaseModel):
    notes: str | None = None


class ParticipantUser(BaseModel):
    id: uuid.UUID
    first_name: str
    last_name: str
    email: str
    phone: str | None


class ParticipantSubscription(BaseModel):
    id: uuid.UUID
    remaining_balance: Decimal
    status: SubscriptionStatus


class SessionParticipant(BaseModel):
    enrollment_id: uuid.UUID
    participants: list[dict]
    contact_email: str
    user: ParticipantUser
    subscription: ParticipantSubscription | None


class SessionParticipants(BaseModel):
    session: SessionResponse
    participants: list[SessionParticipant]
    total_participants: int


# ── Enrollment Schemas ─────────────────────────────────────

class EnrollmentCreate(BaseModel):
    group_id: uuid.UUID
    participants: list[Participant] = Field(..., min_length=1)
    contact_email: EmailStr
    notes: str | None = None


class EnrollmentResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    group_id: uuid.UUID
    subscription_id: uuid.UUID
    status: EnrollmentStatus
    participants: list[dict]
    contact_email: str
    notes: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class EnrollmentSession(BaseModel):
    id: uuid.UUID
    date: datetime
    duration: int
    status: SessionStatus
    current_participants: int
    max_participants: int
    booking: BookingResponse | None


# ── Order Schemas ──────────────────────────────────────────

class OrderItemCreate(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(..., gt=0)


class OrderCreate(BaseModel):
    items: list[OrderItemCreate] = Field(..., min_length=1)
    payment_method: PaymentMethod = PaymentMethod.ON_SITE


class OrderItemResponse(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID
    quantity: int
    price: Decimal

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    items: list[OrderItemResponse]
    total_amount: Decimal
    status: OrderStatus
    payment_method: PaymentMethod
    subscription_id: uuid.UUID | None
    payment_url: str | None
    payment_status: str | None
    paid_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class OrderCreated(OrderResponse):
    qr_code: str


class OrderStatusUpdate(BaseModel):
    status: OrderStatus

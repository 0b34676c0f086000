"""Shop order API endpoints."""

import uuid
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from dependencies import CurrentUser, get_gateway, require_admin, require_user
from models.enums import OrderStatus
from models.user import User
from schemas import OrderCreate, OrderCreated, OrderResponse, OrderStatusUpdate
from services import orders
from services.errors import Forbidden
from services.gateway import TinkoffGateway

router = APIRouter()


@router.post("", response_model=OrderCreated, status_code=201)
async def create_order(
    data: OrderCreate,
    db: AsyncSession = Depends(get_db),
    gateway: TinkoffGateway = Depends(get_gateway),
    user: CurrentUser = Depends(require_user),
):
    """Check out a cart. The response carries the pickup QR code."""
    email = (await db.execute(select(User.email).where(User.id == user.id))).scalar_one_or_none()
    order, qr_code = await orders.create_order(
        db,
        gateway,
        user_id=user.id,
        items=[item.model_dump() for item in data.items],
        payment_method=data.payment_method,
        customer_key=email,
    )
    response = OrderResponse.model_validate(order)
    return OrderCreated(**response.model_dump(), qr_code=qr_code)


@router.get("/my", response_model=list[OrderResponse])
async def my_orders(db: AsyncSession = Depends(get_db), user: CurrentUser = Depends(require_user)):
    return await orders.list_for_user(db, user.id)


@router.get("", response_model=list[OrderResponse])
async def list_orders(
    status: OrderStatus | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    _: CurrentUser = Depends(require_admin),
):
    return await orders.list_all(db, status=status, skip=skip, limit=limit)


@router.get("/qr/{order_id}", response_model=OrderResponse)
async def scan_order_qr(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _: CurrentUser = Depends(require_admin),
):
    """Pickup desk: the QR code encodes the order id."""
    return await orders.get_order(db, order_id)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(require_user),
):
    order = await orders.get_order(db, order_id)
    if not user.is_admin and order.user_id != user.id:
        raise Forbidden("Вы не можете просматривать чужой заказ")
    return order


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: uuid.UUID,
    data: OrderStatusUpdate,
    db: AsyncSession = Depends(get_db),
    _: CurrentUser = Depends(require_admin),
):
    """Cancelling restores stock and refunds a subscription payment."""
    return await orders.update_order_status(db, order_id, data.status)

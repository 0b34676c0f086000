"""User balance and subscription API endpoints."""

import logging
import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import atomic, get_db
from dependencies import CurrentUser, get_gateway, get_notifier, require_admin, require_user
from schemas import BalanceSummary, BalanceTopUp, SubscriptionPurchase, SubscriptionResponse
from services import ledger
from services.gateway import TinkoffGateway
from services.notifier import Notifier

router = APIRouter()
logger = logging.getLogger(__name__)


# ── Own subscriptions ──────────────────────────────────────

@router.get("/me/subscriptions", response_model=list[SubscriptionResponse])
async def my_subscriptions(db: AsyncSession = Depends(get_db), user: CurrentUser = Depends(require_user)):
    return await ledger.list_subscriptions(db, user.id)


@router.get("/me/balance", response_model=BalanceSummary)
async def my_balance(db: AsyncSession = Depends(get_db), user: CurrentUser = Depends(require_user)):
    return await ledger.balance_summary(db, user.id)


@router.post("/me/subscriptions/purchase", response_model=SubscriptionResponse, status_code=201)
async def purchase_subscription(
    data: SubscriptionPurchase,
    db: AsyncSession = Depends(get_db),
    gateway: TinkoffGateway = Depends(get_gateway),
    user: CurrentUser = Depends(require_user),
):
    """Direct purchase, available only while online payment is not configured."""
    async with atomic(db):
        subscription = await ledger.purchase(db, user.id, data.type_id, gateway_configured=gateway.configured)
    return subscription


# ── Admin ──────────────────────────────────────────────────

@router.post("/{user_id}/balance", response_model=SubscriptionResponse)
async def top_up_balance(
    user_id: uuid.UUID,
    data: BalanceTopUp,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    admin: CurrentUser = Depends(require_admin),
):
    async with atomic(db):
        target, subscription, previous = await ledger.top_up(db, user_id, data.amount)

    logger.info("Admin %s topped up user %s by %s", admin.id, user_id, data.amount)
    await notifier.send_balance_topup(
        target.email,
        first_name=target.first_name,
        last_name=target.last_name,
        amount=data.amount,
        previous_balance=previous,
        new_balance=subscription.remaining_balance,
    )
    return subscription

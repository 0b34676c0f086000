"""
Payment endpoints — online subscription purchase through Tinkoff acquiring.

Flow:
  1. POST /subscriptions/init opens a gateway payment and returns its page URL
  2. The buyer pays on the gateway's hosted page
  3. The gateway calls /tinkoff/notification (possibly several times, in any order)
  4. The reconciler applies each status at most once and we answer "OK"
"""

import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from dependencies import CurrentUser, get_gateway, require_user
from schemas import PaymentInitRequest, PaymentInitResponse
from services import reconciler
from services.errors import InvalidRequest
from services.gateway import TinkoffGateway

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/subscriptions/init", response_model=PaymentInitResponse)
async def init_subscription_payment(
    data: PaymentInitRequest,
    db: AsyncSession = Depends(get_db),
    gateway: TinkoffGateway = Depends(get_gateway),
    user: CurrentUser = Depends(require_user),
):
    payment_url = await reconciler.init_subscription_payment(db, gateway, user.id, data.type_id)
    return PaymentInitResponse(payment_url=payment_url)


@router.post("/tinkoff/notification", response_class=PlainTextResponse)
async def tinkoff_notification(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: TinkoffGateway = Depends(get_gateway),
):
    try:
        payload = await request.json()
    except ValueError as e:
        raise InvalidRequest("Некорректное тело уведомления") from e
    if not isinstance(payload, dict):
        raise InvalidRequest("Некорректное тело уведомления")

    logger.info(
        "Tinkoff notification: order=%s payment=%s status=%s",
        payload.get("OrderId"), payload.get("PaymentId"), payload.get("Status"),
    )
    await reconciler.handle_webhook(db, gateway, payload)
    return PlainTextResponse("OK")

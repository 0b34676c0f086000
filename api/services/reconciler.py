"""
Payment Reconciler — applies gateway notifications to the ledger exactly once.

Notifications can repeat and arrive out of order. Each effect is gated by
a conditional UPDATE on its own timestamp column:
  CONFIRMED        → purchase once    (processed_at IS NULL)
  failure statuses → rollback once    (rolled_back_at IS NULL, subscription attached)
  anything else    → status is recorded, nothing else moves
"""

import logging
import uuid
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import atomic, utcnow
from models.enums import OrderStatus
from models.order import Order
from models.subscription import SubscriptionPayment
from models.user import User
from services import ledger
from services.errors import InvalidRequest, NotFound
from services.gateway import FAILURE_STATUSES, SUCCESS_STATUSES, TinkoffGateway
from services.orders import cancel_order

logger = logging.getLogger(__name__)


async def init_subscription_payment(
    db: AsyncSession,
    gateway: TinkoffGateway,
    user_id: uuid.UUID,
    type_id: uuid.UUID,
) -> str:
    """Open a gateway payment for a subscription type. Returns the payment page URL."""
    async with atomic(db):
        sub_type = await ledger.get_purchasable_type(db, type_id)
        if sub_type.price is None or sub_type.price <= 0:
            raise InvalidRequest("Цена абонемента должна быть больше 0")

        email = (await db.execute(select(User.email).where(User.id == user_id))).scalar_one_or_none()

        payment = SubscriptionPayment(
            user_id=user_id,
            type_id=sub_type.id,
            amount=sub_type.amount,
            price=sub_type.price,
            status="PENDING",
        )
        db.add(payment)
        await db.flush()

        init = await gateway.init_payment(
            order_id=payment.id.hex,
            amount=sub_type.price,
            description=f"Абонемент: {sub_type.name}",
            customer_key=email or str(user_id),
        )
        payment.status = init.status
        payment.payment_id = init.payment_id
        payment.payment_url = init.payment_url
        await db.flush()

    logger.info("Subscription payment %s opened for user %s (type %s)", payment.id, user_id, type_id)
    return payment.payment_url


def _order_uuid(order_id: Any) -> uuid.UUID | None:
    if not order_id:
        return None
    try:
        return uuid.UUID(str(order_id))
    except ValueError:
        return None


async def _resolve(db: AsyncSession, payment_id: str | None, order_id: Any) -> SubscriptionPayment | Order:
    """Find the local record a notification is about: by PaymentId first, then OrderId."""
    if payment_id:
        for model in (SubscriptionPayment, Order):
            found = (await db.execute(
                select(model).where(model.payment_id == payment_id).execution_options(populate_existing=True)
            )).scalars().first()
            if found:
                return found

    local_id = _order_uuid(order_id)
    if local_id:
        for model in (SubscriptionPayment, Order):
            found = (await db.execute(
                select(model).where(model.id == local_id).execution_options(populate_existing=True)
            )).scalar_one_or_none()
            if found:
                return found

    raise NotFound("Платеж не найден")


async def _apply_to_subscription_payment(
    db: AsyncSession,
    payment: SubscriptionPayment,
    status: str | None,
    payment_id: str | None,
) -> None:
    changes: dict[str, Any] = {"status": status or payment.status, "updated_at": utcnow()}
    if payment_id:
        changes["payment_id"] = payment_id
    await db.execute(
        update(SubscriptionPayment)
        .where(SubscriptionPayment.id == payment.id)
        .values(**changes)
        .execution_options(synchronize_session=False)
    )

    if status in SUCCESS_STATUSES:
        gate = await db.execute(
            update(SubscriptionPayment)
            .where(SubscriptionPayment.id == payment.id, SubscriptionPayment.processed_at.is_(None))
            .values(processed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if gate.rowcount == 1:
            sub_type = await ledger.get_subscription_type(db, payment.type_id)
            subscription = await ledger.apply_purchase(db, payment.user_id, sub_type)
            await db.execute(
                update(SubscriptionPayment)
                .where(SubscriptionPayment.id == payment.id)
                .values(subscription_id=subscription.id)
                .execution_options(synchronize_session=False)
            )
            logger.info("Payment %s confirmed: subscription %s credited", payment.id, subscription.id)
        else:
            logger.info("Payment %s already processed, CONFIRMED ignored", payment.id)

    elif status in FAILURE_STATUSES:
        subscription_id = (await db.execute(
            select(SubscriptionPayment.subscription_id).where(SubscriptionPayment.id == payment.id)
        )).scalar_one_or_none()
        if not subscription_id:
            logger.info("Payment %s failed (%s) before any purchase; nothing to roll back", payment.id, status)
            return
        gate = await db.execute(
            update(SubscriptionPayment)
            .where(SubscriptionPayment.id == payment.id, SubscriptionPayment.rolled_back_at.is_(None))
            .values(rolled_back_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if gate.rowcount == 1:
            await ledger.apply_rollback(db, payment.user_id, subscription_id, payment.amount)
            logger.info("Payment %s failed (%s): purchase rolled back", payment.id, status)
        else:
            logger.info("Payment %s already rolled back, %s ignored", payment.id, status)


async def _apply_to_order(db: AsyncSession, order: Order, status: str | None, payment_id: str | None) -> None:
    changes: dict[str, Any] = {"payment_status": status or order.payment_status, "updated_at": utcnow()}
    if payment_id:
        changes["payment_id"] = payment_id
    await db.execute(
        update(Order)
        .where(Order.id == order.id)
        .values(**changes)
        .execution_options(synchronize_session=False)
    )

    if status in SUCCESS_STATUSES:
        gate = await db.execute(
            update(Order)
            .where(Order.id == order.id, Order.paid_at.is_(None))
            .values(paid_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if gate.rowcount == 1:
            await db.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == OrderStatus.PENDING)
                .values(status=OrderStatus.CONFIRMED)
                .execution_options(synchronize_session=False)
            )
            logger.info("Order %s paid", order.id)
    elif status in FAILURE_STATUSES:
        if await cancel_order(db, order):
            logger.info("Order %s cancelled by payment status %s", order.id, status)


async def handle_webhook(db: AsyncSession, gateway: TinkoffGateway, payload: dict[str, Any]) -> None:
    """Verify and apply one gateway notification. Signature is checked before any read or write."""
    gateway.verify(payload)

    payment_id = str(payload["PaymentId"]) if payload.get("PaymentId") is not None else None
    status = payload.get("Status")
    order_id = payload.get("OrderId")

    async with atomic(db):
        record = await _resolve(db, payment_id, order_id)
        if isinstance(record, SubscriptionPayment):
            await _apply_to_subscription_payment(db, record, status, payment_id)
        else:
            await _apply_to_order(db, record, status, payment_id)

    logger.info("Webhook applied: payment=%s order=%s status=%s", payment_id, order_id, status)

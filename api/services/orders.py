"""
Shop order flow — checkout, pickup QR codes and cancellation.

Stock and subscription balance are moved with guarded UPDATEs in the same
transaction as the order row, and a cancellation gives back exactly what
the checkout took.
"""

import base64
import io
import logging
import uuid
from decimal import Decimal

import qrcode
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import atomic, utcnow
from models.enums import OrderStatus, PaymentMethod, SubscriptionStatus
from models.order import Order, OrderItem, Product
from models.subscription import Subscription
from services import ledger
from services.errors import InsufficientBalance, InvalidRequest, NotFound, OutOfStock
from services.gateway import TinkoffGateway
from services.pricing import money

logger = logging.getLogger(__name__)


def generate_qr_code(order_id: uuid.UUID) -> str:
    """PNG data URL encoding the order id, scanned at pickup."""
    img = qrcode.make(str(order_id), error_correction=qrcode.constants.ERROR_CORRECT_H, border=2)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("utf-8")


async def _fetch_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
    order = (await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not order:
        raise NotFound("Заказ не найден")
    return order


async def _subscription_for_order(db: AsyncSession, user_id: uuid.UUID, total: Decimal) -> Subscription:
    """Soonest-expiring ACTIVE subscription that covers the order; no-expiry ones last."""
    subscription = (await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.remaining_balance >= total,
            or_(Subscription.expires_at.is_(None), Subscription.expires_at > utcnow()),
        )
        .order_by(Subscription.expires_at.asc().nulls_last())
        .limit(1)
    )).scalar_one_or_none()
    if not subscription:
        raise InsufficientBalance(
            "У вас нет активного абонемента с достаточным балансом для оплаты этого заказа",
            required=str(total),
        )
    return subscription


async def _take_stock(db: AsyncSession, product: Product, quantity: int) -> None:
    result = await db.execute(
        update(Product)
        .where(Product.id == product.id, Product.stock_quantity >= quantity)
        .values(stock_quantity=Product.stock_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise OutOfStock(
            f"Недостаточно товара «{product.name}» на складе",
            product_id=str(product.id),
        )


async def create_order(
    db: AsyncSession,
    gateway: TinkoffGateway | None,
    user_id: uuid.UUID,
    items: list[dict],
    payment_method: PaymentMethod,
    customer_key: str | None = None,
) -> tuple[Order, str]:
    """
    Check out a cart.

    Returns:
        (order, qr_code_data_url)
    """
    if not items:
        raise InvalidRequest("Заказ должен содержать хотя бы один товар")
    if payment_method == PaymentMethod.ONLINE and (not gateway or not gateway.configured):
        raise InvalidRequest("Онлайн-оплата сейчас недоступна")

    async with atomic(db):
        lines: list[tuple[Product, int]] = []
        for item in items:
            quantity = int(item["quantity"])
            if quantity <= 0:
                raise InvalidRequest("Количество товара должно быть больше 0")
            product = (await db.execute(
                select(Product).where(Product.id == item["product_id"])
            )).scalar_one_or_none()
            if not product:
                raise NotFound("Товар не найден")
            if not product.is_available:
                raise InvalidRequest(f"Товар «{product.name}» недоступен")
            if product.stock_quantity < quantity:
                raise OutOfStock(
                    f"Недостаточно товара «{product.name}» на складе. Доступно: {product.stock_quantity}",
                    product_id=str(product.id),
                    available=product.stock_quantity,
                )
            lines.append((product, quantity))

        total = money(sum((money(p.price) * q for p, q in lines), Decimal("0")))

        paid_from = None
        if payment_method == PaymentMethod.SUBSCRIPTION:
            subscription = await _subscription_for_order(db, user_id, total)
            await ledger.debit(db, subscription.id, total)
            paid_from = subscription.id

        order = Order(
            user_id=user_id,
            total_amount=total,
            status=OrderStatus.PENDING,
            payment_method=payment_method,
            subscription_id=paid_from,
            items=[OrderItem(product_id=p.id, quantity=q, price=money(p.price)) for p, q in lines],
        )
        db.add(order)
        await db.flush()

        for product, quantity in lines:
            await _take_stock(db, product, quantity)

        if payment_method == PaymentMethod.ONLINE:
            init = await gateway.init_payment(
                order_id=order.id.hex,
                amount=total,
                description=f"Заказ №{str(order.id)[:8]}",
                customer_key=customer_key or str(user_id),
            )
            order.payment_id = init.payment_id
            order.payment_url = init.payment_url
            order.payment_status = init.status
            await db.flush()

    logger.info(
        "Order %s created for user %s: %d line(s), total=%s, %s",
        order.id, user_id, len(lines), total, payment_method.value,
    )
    return order, generate_qr_code(order.id)


async def cancel_order(db: AsyncSession, order: Order) -> bool:
    """
    Flip an order to CANCELLED once, restoring stock and refunding a
    subscription payment. Returns whether this call did the reversal.
    """
    result = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status != OrderStatus.CANCELLED)
        .values(status=OrderStatus.CANCELLED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    for item in order.items:
        await db.execute(
            update(Product)
            .where(Product.id == item.product_id)
            .values(stock_quantity=Product.stock_quantity + item.quantity)
            .execution_options(synchronize_session=False)
        )

    if order.payment_method == PaymentMethod.SUBSCRIPTION:
        refund_to = order.subscription_id
        if refund_to is None:
            refund_to = (await db.execute(
                select(Subscription.id)
                .where(
                    Subscription.user_id == order.user_id,
                    Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.DEPLETED]),
                )
                .order_by(Subscription.updated_at.desc())
                .limit(1)
            )).scalar_one_or_none()
        if refund_to:
            await ledger.credit(db, refund_to, order.total_amount)
        else:
            logger.warning("Order %s cancelled without a subscription to refund into", order.id)

    logger.info("Order %s cancelled, stock restored", order.id)
    return True


async def update_order_status(db: AsyncSession, order_id: uuid.UUID, status: OrderStatus) -> Order:
    async with atomic(db):
        order = await _fetch_order(db, order_id)
        if status == OrderStatus.CANCELLED:
            await cancel_order(db, order)
        else:
            if order.status == OrderStatus.CANCELLED:
                raise InvalidRequest("Нельзя изменить статус отменённого заказа")
            order.status = status
            await db.flush()
    logger.info("Order %s status → %s", order_id, status.value)
    return await _fetch_order(db, order_id)


async def get_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
    return await _fetch_order(db, order_id)


async def list_for_user(db: AsyncSession, user_id: uuid.UUID) -> list[Order]:
    result = await db.execute(
        select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc())
    )
    return list(result.scalars().all())


async def list_all(db: AsyncSession, status: OrderStatus | None = None, skip: int = 0, limit: int = 50) -> list[Order]:
    query = select(Order)
    if status:
        query = query.where(Order.status == status)
    query = query.order_by(Order.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())

"""
Notifier — transactional e-mail sent from the booking & ledger core.

All outbound customer messages are routed through one Notifier instance,
built once at startup and handed to the services that need it.
Failures are logged but NEVER raise exceptions (fire-and-forget).
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

from config import Settings
from services.business_time import business_tz

logger = logging.getLogger(__name__)

PAYMENT_METHOD_LABELS = {
    "SUBSCRIPTION": "Абонемент (скидка 10%)",
    "ON_SITE": "Оплата на месте",
    "ONLINE": "Онлайн-оплата",
}


def _fmt_dt(value: datetime) -> str:
    return value.astimezone(business_tz()).strftime("%d.%m.%Y %H:%M")


def _fmt_money(value: Decimal | float) -> str:
    return f"{Decimal(str(value)):.2f}₽"


class Notifier:
    """E-mail sender over an HTTP mail API, with a log-only test mode."""

    def __init__(
        self,
        api_url: str | None,
        api_key: str | None = None,
        sender: str = "",
        test_mode: bool = False,
        business_name: str = "",
        business_phone: str = "",
        timeout: float = 10.0,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.test_mode = test_mode or not api_url
        self.business_name = business_name
        self.business_phone = business_phone
        self.timeout = timeout
        self.sent: list[dict[str, Any]] = []  # messages accepted in test mode

    @classmethod
    def from_settings(cls, settings: Settings) -> "Notifier":
        return cls(
            api_url=settings.EMAIL_API_URL,
            api_key=settings.EMAIL_API_KEY,
            sender=settings.EMAIL_FROM,
            test_mode=settings.EMAIL_TEST_MODE,
            business_name=settings.BUSINESS_NAME,
            business_phone=settings.BUSINESS_PHONE,
        )

    async def send_email(self, to: str, subject: str, text: str) -> bool:
        """
        Deliver one message.

        Returns:
            True if the mail API accepted it (or test mode logged it), False otherwise.
        """
        message = {"from": self.sender, "to": [to], "subject": subject, "text": text}

        if self.test_mode:
            self.sent.append(message)
            logger.info("Email (test mode): to=%s subject='%s'", to, subject)
            return True

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.api_url, json=message, headers=headers)
                if resp.status_code < 300:
                    logger.info("Email sent: to=%s subject='%s'", to, subject)
                    return True
                logger.warning(
                    "Email rejected: to=%s, status=%s, body=%s",
                    to,
                    resp.status_code,
                    resp.text[:200],
                )
                return False
        except Exception as e:
            logger.error("Email error: to=%s, error=%s", to, str(e))
            return False

    def _footer(self) -> str:
        return f"\n\n{self.business_name}\n{self.business_phone}".rstrip()

    # ── Templates ─────────────────────────────────────────

    async def send_booking_confirmation(
        self,
        to: str,
        kind: str,
        title: str,
        start: datetime,
        end: datetime,
        price: Decimal,
        participants: list[dict],
        total_price: Decimal,
        payment_method: str,
        notes: str | None = None,
    ) -> bool:
        """Sent after a booking (event or group-session) is created."""
        try:
            if kind == "event":
                subject = f"Подтверждение записи: {title}"
                heading = f"Вы записаны на мастер-класс «{title}»."
            else:
                subject = f"Подтверждение записи на занятие: {title}"
                heading = f"Вы записаны на занятие направления «{title}»."

            names = "\n".join(
                f"  • {p.get('fullName') or p.get('full_name', '')}" for p in participants
            )
            text = (
                f"{heading}\n\n"
                f"Начало: {_fmt_dt(start)}\n"
                f"Окончание: {_fmt_dt(end)}\n"
                f"Цена за участника: {_fmt_money(price)}\n"
                f"Участники:\n{names}\n"
                f"Итого: {_fmt_money(total_price)}\n"
                f"Оплата: {PAYMENT_METHOD_LABELS.get(str(payment_method), payment_method)}"
            )
            if notes:
                text += f"\nКомментарий: {notes}"
            return await self.send_email(to, subject, text + self._footer())
        except Exception as e:
            logger.warning("Booking confirmation not sent: to=%s, error=%s", to, e)
            return False

    async def send_session_cancellation(
        self,
        to: str,
        user_name: str,
        group_name: str,
        session_date: datetime,
        reason: str | None = None,
    ) -> bool:
        """Sent to every enrolled user when an admin cancels a session."""
        try:
            text = (
                f"Здравствуйте, {user_name}!\n\n"
                f"Занятие «{group_name}» {_fmt_dt(session_date)} отменено."
            )
            if reason:
                text += f"\nПричина: {reason}"
            text += "\nСредства за занятие возвращены на ваш абонемент."
            return await self.send_email(to, f"Отмена занятия: {group_name}", text + self._footer())
        except Exception as e:
            logger.warning("Session cancellation not sent: to=%s, error=%s", to, e)
            return False

    async def send_balance_topup(
        self,
        to: str,
        first_name: str,
        last_name: str,
        amount: Decimal,
        previous_balance: Decimal,
        new_balance: Decimal,
    ) -> bool:
        """Sent after an admin tops up a user's subscription balance."""
        try:
            text = (
                f"Здравствуйте, {first_name} {last_name}!\n\n"
                f"Ваш баланс абонемента пополнен на {_fmt_money(amount)}.\n"
                f"Было: {_fmt_money(previous_balance)}\n"
                f"Стало: {_fmt_money(new_balance)}"
            )
            return await self.send_email(to, "Пополнение баланса абонемента", text + self._footer())
        except Exception as e:
            logger.warning("Top-up notification not sent: to=%s, error=%s", to, e)
            return False


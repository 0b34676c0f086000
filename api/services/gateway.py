"""
Tinkoff acquiring client — payment init and notification signatures.

Token algorithm (both directions):
  1. Take top-level scalar fields, minus Token and the receipt/payment-data blobs
  2. Add Password=<terminal secret>
  3. Sort by key, concatenate the values, SHA-256 → hex
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx

from config import Settings
from services.errors import GatewayError, InvalidSignature
from services.pricing import to_kopecks

logger = logging.getLogger(__name__)

SIGNATURE_EXCLUDED_FIELDS = frozenset({"Token", "Receipt", "DATA", "ReceiptData", "EncryptedPaymentData"})

SUCCESS_STATUSES = frozenset({"CONFIRMED"})
FAILURE_STATUSES = frozenset({
    "REJECTED",
    "CANCELLED",
    "CANCELED",
    "DEADLINE_EXPIRED",
    "REVERSING",
    "REVERSED",
    "REFUNDING",
    "REFUNDED",
    "PARTIAL_REVERSED",
    "PARTIAL_REFUNDED",
})


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def compute_signature(fields: dict[str, Any], secret: str) -> str:
    """Pure token function; nested values and nulls never take part."""
    entries = [
        (key, _stringify(value))
        for key, value in fields.items()
        if key not in SIGNATURE_EXCLUDED_FIELDS
        and value is not None
        and not isinstance(value, (dict, list, tuple))
    ]
    entries.append(("Password", secret))
    entries.sort(key=lambda kv: kv[0])
    data = "".join(value for _, value in entries)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


@dataclass
class PaymentInit:
    payment_id: str
    payment_url: str
    status: str


class TinkoffGateway:
    """Thin async client over the acquiring v2 API."""

    def __init__(
        self,
        terminal_key: str | None,
        password: str | None,
        api_url: str = "https://securepay.tinkoff.ru/v2",
        notification_url: str | None = None,
        success_url: str | None = None,
        fail_url: str | None = None,
        timeout: float = 15.0,
    ):
        self.terminal_key = terminal_key
        self.password = password
        self.api_url = api_url.rstrip("/")
        self.notification_url = notification_url
        self.success_url = success_url
        self.fail_url = fail_url
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "TinkoffGateway":
        frontend = settings.FRONTEND_URL.rstrip("/")
        return cls(
            terminal_key=settings.TINKOFF_TERMINAL_KEY,
            password=settings.TINKOFF_PASSWORD,
            api_url=settings.TINKOFF_API_URL,
            notification_url=settings.TINKOFF_NOTIFICATION_URL,
            success_url=settings.TINKOFF_SUCCESS_URL or f"{frontend}/profile?payment=success",
            fail_url=settings.TINKOFF_FAIL_URL or f"{frontend}/profile?payment=fail",
        )

    @property
    def configured(self) -> bool:
        return bool(self.terminal_key)

    def verify(self, payload: dict[str, Any]) -> None:
        """Raise unless the payload's Token matches our own computation."""
        if not self.password:
            raise GatewayError("Tinkoff password is not configured")
        token = payload.get("Token")
        if not token:
            raise InvalidSignature("Missing token")
        expected = compute_signature(payload, self.password)
        if not hmac.compare_digest(str(token).lower(), expected):
            raise InvalidSignature("Invalid token")

    async def init_payment(
        self,
        order_id: str,
        amount: Decimal,
        description: str,
        customer_key: str,
    ) -> PaymentInit:
        """Create a payment; returns the hosted payment page URL."""
        if not self.terminal_key or not self.password:
            raise GatewayError("Tinkoff terminal key is not configured")
        if not self.notification_url:
            raise GatewayError("Tinkoff notification URL is not configured")

        payload: dict[str, Any] = {
            "TerminalKey": self.terminal_key,
            "Amount": to_kopecks(amount),
            "OrderId": order_id,
            "Description": description,
            "SuccessURL": self.success_url,
            "FailURL": self.fail_url,
            "NotificationURL": self.notification_url,
            "CustomerKey": customer_key,
        }
        payload["Token"] = compute_signature(payload, self.password)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.api_url}/Init", json=payload)
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Tinkoff Init transport error: order=%s, error=%s", order_id, str(e))
            raise GatewayError("Платёжный сервис недоступен") from e

        if not data.get("Success"):
            logger.error("Tinkoff Init failed: order=%s, response=%s", order_id, data)
            details = f": {data['Details']}" if data.get("Details") else ""
            code = f" ({data['ErrorCode']})" if data.get("ErrorCode") else ""
            raise GatewayError(
                f"{data.get('Message') or 'Не удалось создать платеж'}{details}{code}",
                gateway_code=data.get("ErrorCode"),
            )

        logger.info("Tinkoff payment %s initialised for order %s", data.get("PaymentId"), order_id)
        return PaymentInit(
            payment_id=str(data.get("PaymentId")),
            payment_url=data.get("PaymentURL"),
            status=data.get("Status") or "NEW",
        )

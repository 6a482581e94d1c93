"""
Messaging gateway (SMS/WhatsApp) and WhatsApp deep links.
"""
import logging
import re
from typing import TYPE_CHECKING, Protocol
from urllib.parse import quote

import httpx

from flux.config import settings

if TYPE_CHECKING:
    from flux.dispatch import DispatchJob

logger = logging.getLogger(__name__)

COUNTRY_CODE = "55"


def digits_only(phone: str | None) -> str:
    return re.sub(r"\D+", "", phone or "")


def international(phone: str) -> str:
    """Local numbers (DDD + number, up to 11 digits) get the country code prepended."""
    digits = digits_only(phone)
    if len(digits) <= 11:
        return COUNTRY_CODE + digits
    return digits


def whatsapp_url(phone: str, text: str) -> str:
    return f"https://wa.me/{international(phone)}?text={quote(text)}"


def support_whatsapp_url(text: str) -> str:
    return f"https://wa.me/{settings.support_whatsapp_number}?text={quote(text)}"


def delivery_code_message(order_code: str, customer_name: str, code: str) -> str:
    return (
        f"Hello {customer_name}, your FLUX delivery {order_code} is on the way.\n"
        f"Delivery code: {code}\n"
        f"Give this code to the driver only when you receive your package."
    )


def sos_message(driver_name: str, order_code: str, description: str) -> str:
    return (
        f"SOS - delivery problem\n\n"
        f"Driver: {driver_name}\n"
        f"Order: {order_code}\n\n"
        f"Problem:\n{description}\n\n"
        f"---\nSent from the FLUX app"
    )


class MessagingGateway(Protocol):
    async def send_delivery_code(self, job: "DispatchJob") -> None: ...

    async def notify_support(self, text: str, phone: str | None = None) -> None: ...


class LoggingGateway:
    """No provider configured: messages are only logged."""

    async def send_delivery_code(self, job: "DispatchJob") -> None:
        logger.info("Delivery code for delivery_id=%s to %s (no messaging provider configured)",
                    job.delivery_id, international(job.phone))

    async def notify_support(self, text: str, phone: str | None = None) -> None:
        logger.info("Support notification (no messaging provider configured): %s", text)


class WebhookGateway:
    """Posts messages to an SMS/WhatsApp provider webhook. Raises on non-2xx so the worker retries."""

    def __init__(self, url: str, token: str | None = None, timeout: float | None = None,
                 client: httpx.AsyncClient | None = None):
        self.url = url
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = client or httpx.AsyncClient(
            headers=headers,
            timeout=timeout or settings.messaging_timeout_seconds,
        )

    async def _post(self, to: str, text: str, kind: str) -> None:
        resp = await self.client.post(self.url, json={"to": to, "text": text, "kind": kind})
        resp.raise_for_status()

    async def send_delivery_code(self, job: "DispatchJob") -> None:
        text = delivery_code_message(job.order_code, job.customer_name, job.code)
        await self._post(international(job.phone), text, "delivery_code")

    async def notify_support(self, text: str, phone: str | None = None) -> None:
        to = international(phone) if phone else settings.support_whatsapp_number
        await self._post(to, text, "sos")

    async def aclose(self) -> None:
        await self.client.aclose()


def build_gateway() -> MessagingGateway:
    if settings.messaging_webhook_url:
        return WebhookGateway(settings.messaging_webhook_url, settings.messaging_api_token)
    return LoggingGateway()

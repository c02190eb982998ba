"""Channel providers.

Email, SMS and push are simulated the way a sandbox provider behaves:
recipient validation plus fault injection by address prefix
(`force-timeout...`, `force-decline...`). Webhook delivery is a real HTTP
call. Every failure is a `ProviderError` whose `retryable` flag is decided
here, once per attempt.
"""

import re

import httpx

from notifly.common.config import settings
from notifly.common.errors import ProviderError
from notifly.common.events import NotificationMessage
from notifly.common.logging import logger


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_RE = re.compile(r"^\+?[0-9]{7,15}$")


def recipient_field(message: NotificationMessage, field: str) -> str | None:
    recipient = message.payload.get("recipient")
    if not isinstance(recipient, dict):
        return None
    value = recipient.get(field)
    return value.strip() if isinstance(value, str) and value.strip() else None


class SimulatedSender:
    """Sandbox provider for one channel."""

    def __init__(self, channel: str, field: str, pattern: re.Pattern | None = None) -> None:
        self.channel = channel
        self.field = field
        self.pattern = pattern

    async def send(self, message: NotificationMessage) -> None:
        address = recipient_field(message, self.field)
        if address is None:
            raise ProviderError("MISSING_RECIPIENT", f"payload.recipient.{self.field} is required", retryable=False)
        lowered = address.lower()
        if lowered.startswith("force-timeout"):
            raise ProviderError("PROVIDER_TIMEOUT", f"{self.channel} provider timed out", retryable=True)
        if lowered.startswith("force-unavailable"):
            raise ProviderError("PROVIDER_UNAVAILABLE", f"{self.channel} provider unavailable", retryable=True)
        if lowered.startswith("force-decline"):
            raise ProviderError("PROVIDER_REJECTED", f"{self.channel} provider rejected recipient", retryable=False)
        if self.pattern is not None and not self.pattern.match(address):
            raise ProviderError(
                "INVALID_RECIPIENT",
                f"malformed {self.field}",
                retryable=False,
                details={"field": self.field},
            )
        logger.info(
            "provider_send channel=%s request_id=%s event_type=%s",
            self.channel,
            message.request_id,
            message.event_type,
        )


class WebhookSender:
    """POST the message to the tenant's `payload.recipient.webhookUrl`."""

    channel = "WEBHOOK"

    def __init__(self, timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds
        self.transport = transport

    async def send(self, message: NotificationMessage) -> None:
        url = recipient_field(message, "webhookUrl")
        if url is None or not url.startswith(("http://", "https://")):
            raise ProviderError("INVALID_RECIPIENT", "payload.recipient.webhookUrl is missing or malformed", retryable=False)
        body = {
            "requestId": message.request_id,
            "tenantId": message.tenant_id,
            "eventType": message.event_type,
            "payload": message.payload,
            "correlationId": message.correlation_id,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(url, json=body, headers={"x-correlation-id": message.correlation_id})
        except httpx.TimeoutException as exc:
            raise ProviderError("PROVIDER_TIMEOUT", str(exc) or "webhook timed out", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise ProviderError("NETWORK_ERROR", str(exc), retryable=True) from exc
        if resp.status_code < 300:
            return
        details = {"status_code": resp.status_code, "body": resp.text[:500]}
        if resp.status_code >= 500 or resp.status_code in (408, 429):
            raise ProviderError("WEBHOOK_UNAVAILABLE", f"webhook returned {resp.status_code}", True, details)
        raise ProviderError("WEBHOOK_REJECTED", f"webhook returned {resp.status_code}", False, details)


def build_senders() -> dict:
    """Channel name -> provider used by the worker."""

    return {
        "EMAIL": SimulatedSender("EMAIL", "email", EMAIL_RE),
        "SMS": SimulatedSender("SMS", "phone", PHONE_RE),
        "PUSH": SimulatedSender("PUSH", "deviceToken"),
        "WEBHOOK": WebhookSender(),
    }

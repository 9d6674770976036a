"""
Webhook Service

Signed delivery of message events (sent, delivered, failed) to the client's
own callback URL. Retries are driven by the webhook job; this module performs
one attempt at a time and records its outcome on the message row. A webhook
failure never changes the message's delivery status.
"""
import json
import hmac
import hashlib
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from notifyhub.config import Settings
from notifyhub.logging_config import get_logger
from notifyhub.metrics import track_webhook_failed, track_webhook_sent
from notifyhub.models.message import Message
from notifyhub.services.message_store import MessageStore, utcnow

logger = get_logger(component="webhooks")

WEBHOOK_EVENTS = ("sent", "delivered", "failed")
SIGNATURE_PREFIX = "sha256="


def canonical_json(payload: dict) -> str:
    """Stable serialization used for signing and as the request body."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def generate_webhook_signature(payload: dict, secret: str) -> str:
    """HMAC-SHA256 over the canonical payload, excluding any signature field."""
    unsigned = {k: v for k, v in payload.items() if k != "signature"}
    digest = hmac.new(
        secret.encode(),
        canonical_json(unsigned).encode(),
        hashlib.sha256
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: dict, signature: str, secret: str) -> bool:
    """Constant-time check of a received signature against the payload."""
    expected = generate_webhook_signature(payload, secret)
    return hmac.compare_digest(expected, signature or "")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = _as_utc(value)
    return value.isoformat() if value else None


def delivery_duration_seconds(message: Message) -> Optional[float]:
    sent_at = _as_utc(message.sent_at)
    delivered_at = _as_utc(message.delivered_at)
    if sent_at is None or delivered_at is None:
        return None
    return round((delivered_at - sent_at).total_seconds(), 3)


def build_payload(message: Message, event: str, data: Optional[dict] = None, secret: str = "") -> dict:
    """
    Build the signed webhook payload for one event.

    Args:
        message: Message the event is about
        event: One of sent, delivered, failed
        data: Event-specific extras supplied by the job that emitted it
        secret: Signing secret

    Returns:
        Payload dict including its `signature`
    """
    data = dict(data or {})
    payload: dict[str, Any] = {
        "event": event,
        "message_id": message.id,
        "external_id": message.external_id,
        "channel": getattr(message.channel, "value", message.channel),
        "recipient": message.recipient,
        "status": getattr(message.status, "value", message.status),
        "provider": message.provider,
        "created_at": _iso(message.created_at),
        "sent_at": _iso(message.sent_at),
        "delivered_at": _iso(message.delivered_at),
        "failed_at": _iso(message.failed_at),
        "metadata": message.metadata_json or {},
        "timestamp": utcnow().isoformat(),
    }

    if event == "failed":
        payload["error"] = data.pop("error", None) or message.error_message
        payload["retry_count"] = data.pop("retry_count", message.retry_count)
    elif event == "delivered":
        duration = data.pop("delivery_duration_seconds", None)
        payload["delivery_duration_seconds"] = duration if duration is not None else delivery_duration_seconds(message)

    if data:
        payload["data"] = data

    payload["signature"] = generate_webhook_signature(payload, secret)
    return payload


class WebhookDeliverer:
    """Performs single webhook delivery attempts over a shared httpx client."""

    def __init__(self, client: httpx.AsyncClient, settings: Settings, store: MessageStore):
        self.client = client
        self.settings = settings
        self.store = store

    def headers(self, payload: dict, attempt: int) -> dict:
        return {
            "Content-Type": "application/json",
            "X-Webhook-Event": payload["event"],
            "X-Message-ID": payload["message_id"],
            "X-Delivery-Attempt": str(attempt),
            "X-Webhook-Signature": payload["signature"],
            "X-Timestamp": str(int(datetime.now(timezone.utc).timestamp())),
            "User-Agent": self.settings.WEBHOOK_USER_AGENT,
        }

    async def deliver(self, message_id: str, event: str, data: Optional[dict] = None, attempt: int = 1) -> bool:
        """
        Make one delivery attempt.

        Returns True when the endpoint answered 2xx, or when there is
        nothing to deliver (unknown message, no webhook_url). Returns False
        on a non-2xx answer or a transport error so the caller can retry.
        """
        log = logger.bind(message_id=message_id, webhook_event=event, attempt=attempt)

        message = await self.store.find(message_id)
        if message is None:
            log.warning("webhook_message_missing")
            return True
        if not message.webhook_url:
            log.debug("webhook_not_configured")
            return True

        payload = build_payload(message, event, data, self.settings.WEBHOOK_SECRET)
        await self.store.update(message_id, webhook_attempts=attempt)

        try:
            response = await self.client.post(
                message.webhook_url,
                content=canonical_json(payload),
                headers=self.headers(payload, attempt),
                timeout=self.settings.WEBHOOK_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}: {e}"
            log.warning("webhook_attempt_failed", error=error)
            track_webhook_sent(event, "error")
            await self.store.update(message_id, webhook_error=error[:1000])
            return False

        if 200 <= response.status_code < 300:
            log.info("webhook_delivered", status_code=response.status_code)
            track_webhook_sent(event, "delivered")
            await self.store.update(message_id, webhook_delivered=True, webhook_error=None)
            return True

        error = f"HTTP {response.status_code}: {response.text[:500]}"
        log.warning("webhook_attempt_failed", status_code=response.status_code, error=error)
        track_webhook_sent(event, str(response.status_code))
        await self.store.update(message_id, webhook_error=error)
        return False

    async def mark_exhausted(self, message_id: str, event: str, error: Optional[str] = None) -> None:
        """Stamp a message whose webhook retries are used up."""
        track_webhook_failed(event)
        logger.error("webhook_exhausted", message_id=message_id, webhook_event=event, error=error)
        fields = {"webhook_failed_at": utcnow()}
        if error:
            fields["webhook_error"] = error
        await self.store.update(message_id, **fields)

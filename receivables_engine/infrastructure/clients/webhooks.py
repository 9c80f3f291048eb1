"""Outbound webhook clients with exponential backoff retry logic"""

import asyncio
import logging
import httpx
from typing import Any, Dict
from receivables_engine.config import settings
from receivables_engine.infrastructure.observability.metrics import webhook_latency_histogram, webhook_failure_counter

logger = logging.getLogger("receivables_engine.webhooks")


class WebhookClient:
    """Posts JSON events to a single target URL"""

    def __init__(self, webhook_url: str, target: str, max_retries: int | None = None):
        self.webhook_url = webhook_url
        self.target = target
        self.max_retries = max_retries or settings.webhook_max_retries
        self.backoff_base = settings.webhook_backoff_base

    async def send(self, payload: Dict[str, Any]) -> None:
        """
        Deliver a payload with retry logic.

        Retry strategy:
        - Exponential backoff: 1s, 2s, 4s, 8s, 16s (base * 2^attempt)
        - Retries on HTTP errors and network failures
        - Raises the last error once retries are exhausted
        """
        attempt = 0
        async with httpx.AsyncClient() as client:
            while attempt < self.max_retries:
                try:
                    with webhook_latency_histogram.time():
                        response = await client.post(
                            self.webhook_url,
                            json=payload,
                            timeout=settings.http_timeout_seconds,
                        )
                        response.raise_for_status()
                        return

                except (httpx.HTTPStatusError, httpx.RequestError):
                    attempt += 1
                    webhook_failure_counter.labels(target=self.target).inc()

                    if attempt >= self.max_retries:
                        raise

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)


class InvoicingPublisher:
    """Status-sync events for the Invoicing context; failures propagate so the outbox retries"""

    def __init__(self, webhook_url: str | None = None):
        self.client = WebhookClient(webhook_url or settings.invoicing_webhook_url, target="invoicing")

    async def publish(self, event_type: str, event_id: str, payload: Dict[str, Any]) -> None:
        await self.client.send({"event": event_type, "event_id": event_id, "data": payload})


class NotificationClient:
    """Fire-and-forget triggers for the notification collaborator"""

    def __init__(self, webhook_url: str | None = None):
        self.client = WebhookClient(
            webhook_url or settings.notification_webhook_url,
            target="notifications",
            max_retries=1,
        )

    async def approval_needed(self, invoice_id: str, slot_index: int, approvers: list[str]) -> None:
        await self._fire(
            {
                "trigger": "approval_needed",
                "invoice_id": invoice_id,
                "slot_index": slot_index,
                "recipients": approvers,
            }
        )

    async def payment_returned(self, payment_id: str, invoice_id: str, reason_code: str) -> None:
        await self._fire(
            {
                "trigger": "payment_returned",
                "payment_id": payment_id,
                "invoice_id": invoice_id,
                "reason_code": reason_code,
            }
        )

    async def _fire(self, payload: Dict[str, Any]) -> None:
        # Delivery failure never blocks or rolls back the state change that triggered it
        try:
            await self.client.send(payload)
        except (httpx.HTTPStatusError, httpx.RequestError) as e:
            logger.warning(
                "Notification delivery failed",
                extra={"trigger": payload["trigger"], "invoice_id": payload.get("invoice_id"), "error": str(e)},
            )

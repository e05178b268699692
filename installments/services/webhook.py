"""
Outbound delivery of negotiation events.

Each event is stored as an OutboundWebhook row before it is posted, so an
event whose delivery failed can be picked up by `retry_pending_webhooks`.
A row stays "pending" until it is delivered or has used MAX_ATTEMPTS, then
becomes "delivered" or "failed".
"""
import time
from datetime import datetime, timezone
from typing import Optional

import httpx
import structlog
from sqlalchemy.orm import Session

from installments import metrics
from installments.config import settings
from installments.models import OutboundWebhook
from installments.services.negotiation import InstallmentEvent

logger = structlog.get_logger()


class WebhookService:
    """Posts negotiation events to the notification service."""

    MAX_ATTEMPTS = 3
    TIMEOUT_SECONDS = 10.0

    def __init__(self, db: Session, target_url: Optional[str] = None):
        self.db = db
        self.target_url = target_url or settings.notification_webhook_url

    async def send_event(self, event: InstallmentEvent) -> bool:
        """
        Persist one negotiation event and attempt its first delivery.

        Returns:
            True if the notification service accepted the event
        """
        webhook = OutboundWebhook(
            event_type=event.event_type,
            payload=event.to_payload(),
            target_url=self.target_url,
            status="pending",
        )
        self.db.add(webhook)
        self.db.commit()

        return await self._deliver_webhook(webhook)

    async def retry_pending_webhooks(self) -> int:
        """
        Redeliver pending events, oldest first.

        Returns:
            Number of events delivered on this pass
        """
        pending = (
            self.db.query(OutboundWebhook)
            .filter(OutboundWebhook.status == "pending")
            .filter(OutboundWebhook.attempts < self.MAX_ATTEMPTS)
            .order_by(OutboundWebhook.created_at)
            .all()
        )

        delivered = 0
        for webhook in pending:
            if await self._deliver_webhook(webhook, is_retry=True):
                delivered += 1

        logger.info("pending_webhooks_retried", total=len(pending), delivered=delivered)
        return delivered

    async def _deliver_webhook(self, webhook: OutboundWebhook, is_retry: bool = False) -> bool:
        log = logger.bind(
            webhook_id=webhook.id,
            event_type=webhook.event_type,
            target_url=webhook.target_url,
        )
        log.info("delivering_webhook", is_retry=is_retry)

        started = time.perf_counter()
        status_code = None
        error = None

        async with httpx.AsyncClient(timeout=self.TIMEOUT_SECONDS) as client:
            try:
                response = await client.post(
                    webhook.target_url,
                    json=webhook.payload,
                    headers={"Content-Type": "application/json", "X-Event-Type": webhook.event_type},
                )
                status_code = response.status_code
            except httpx.RequestError as e:
                error = str(e)

        delivered = status_code is not None and status_code < 400
        self._record_attempt(webhook, delivered)
        metrics.record_webhook_delivery(delivered, time.perf_counter() - started, is_retry)

        if delivered:
            log.info("webhook_delivered", status_code=status_code)
        elif error is not None:
            log.error("webhook_request_error", error=error, attempts=webhook.attempts)
        else:
            log.warning("webhook_delivery_failed", status_code=status_code, attempts=webhook.attempts)

        return delivered

    def _record_attempt(self, webhook: OutboundWebhook, delivered: bool) -> None:
        webhook.attempts += 1
        webhook.last_attempt_at = datetime.now(timezone.utc)
        if delivered:
            webhook.status = "delivered"
        elif webhook.attempts >= self.MAX_ATTEMPTS:
            webhook.status = "failed"
        self.db.commit()

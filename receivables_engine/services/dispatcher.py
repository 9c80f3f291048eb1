"""At-least-once delivery of outbox events to their handlers.

Each event is delivered in its own session, separately from the transaction
that raised it. A handler can therefore see the same event more than once
(crash between handling and marking delivered, retries after a failure), and
every handler registered here is idempotent.
"""

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy.orm import Session, sessionmaker

from receivables_engine.config import settings
from receivables_engine.domain import events as domain_events
from receivables_engine.infrastructure.clients.processor import PaymentProcessorClient
from receivables_engine.infrastructure.clients.webhooks import InvoicingPublisher, NotificationClient
from receivables_engine.infrastructure.database.repositories import EventOutbox
from receivables_engine.infrastructure.observability.metrics import event_delivery_counter, operational_alert_counter
from receivables_engine.services.origination_service import OriginationService
from receivables_engine.utils.date_utils import utcnow

logger = logging.getLogger("receivables_engine.dispatcher")


@dataclass(frozen=True)
class OutboxEvent:
    """Detached copy of an outbox row handed to handlers"""

    event_id: str
    event_type: str
    aggregate_id: str
    payload: Dict[str, Any]


Handler = Callable[[OutboxEvent], Union[None, Awaitable[None]]]


class EventDispatcher:
    """Delivers pending outbox events in creation order"""

    def __init__(
        self,
        session_factory: sessionmaker,
        max_attempts: Optional[int] = None,
        batch_size: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.event_max_attempts
        self.batch_size = batch_size or settings.event_dispatch_batch_size
        self.clock = clock
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def register(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: str) -> List[Handler]:
        return list(self._handlers.get(event_type, []))

    async def dispatch_pending(self, limit: Optional[int] = None) -> int:
        """Deliver up to `limit` pending events; returns how many were delivered"""
        with self.session_factory() as db:
            pending = [
                OutboxEvent(
                    event_id=record.event_id,
                    event_type=record.event_type,
                    aggregate_id=record.aggregate_id,
                    payload=dict(record.payload),
                )
                for record in EventOutbox(db).pending(limit or self.batch_size)
            ]

        delivered = 0
        for event in pending:
            if await self._deliver(event):
                delivered += 1
        return delivered

    async def drain(self, max_rounds: int = 10) -> int:
        """Dispatch until nothing is delivered; events raised by handlers are picked up too"""
        total = 0
        for _ in range(max_rounds):
            delivered = await self.dispatch_pending()
            if delivered == 0:
                break
            total += delivered
        return total

    async def _deliver(self, event: OutboxEvent) -> bool:
        error: Optional[Exception] = None
        for handler in self.handlers_for(event.event_type):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                error = e
                break

        with self.session_factory() as db:
            record = EventOutbox(db).get(event.event_id)
            if record is None:
                return False
            record.attempts += 1
            record.last_attempt_at = self.clock()

            if error is None:
                record.status = EventOutbox.DELIVERED
                record.last_error = None
                outcome = "delivered"
            elif record.attempts >= self.max_attempts:
                record.status = EventOutbox.FAILED
                record.last_error = str(error)
                outcome = "failed"
            else:
                record.last_error = str(error)
                outcome = "retry"
            db.commit()

        event_delivery_counter.labels(event_type=event.event_type, outcome=outcome).inc()
        if outcome == "failed":
            operational_alert_counter.labels(alert="event_delivery_failed").inc()
            logger.error(
                "Event delivery abandoned",
                extra={"event_id": event.event_id, "event_type": event.event_type, "aggregate_id": event.aggregate_id, "error": str(error)},
            )
        elif outcome == "retry":
            logger.warning(
                "Event delivery failed; will retry",
                extra={"event_id": event.event_id, "event_type": event.event_type, "aggregate_id": event.aggregate_id, "error": str(error)},
            )
        return error is None


def build_dispatcher(
    session_factory: sessionmaker,
    processor: Optional[PaymentProcessorClient] = None,
    invoicing: Optional[InvoicingPublisher] = None,
    notifications: Optional[NotificationClient] = None,
) -> EventDispatcher:
    """Dispatcher wired with the engine's cross-aggregate reactions and outbound integrations"""
    dispatcher = EventDispatcher(session_factory)
    invoicing = invoicing or InvoicingPublisher()
    notifications = notifications or NotificationClient()

    def origination(db: Session) -> OriginationService:
        return OriginationService(db, processor=processor)

    def originate_payment(event: OutboxEvent) -> None:
        with session_factory() as db:
            origination(db).originate(event.aggregate_id)

    def batch_payment(event: OutboxEvent) -> None:
        with session_factory() as db:
            origination(db).add_to_open_batch(event.aggregate_id)

    async def publish_to_invoicing(event: OutboxEvent) -> None:
        await invoicing.publish(event.event_type, event.event_id, event.payload)

    async def notify_approvers(event: OutboxEvent) -> None:
        await notifications.approval_needed(
            event.payload["invoice_id"],
            event.payload["slot_index"],
            list(event.payload["eligible_approvers"]),
        )

    async def notify_return(event: OutboxEvent) -> None:
        await notifications.payment_returned(event.aggregate_id, event.payload["invoice_id"], event.payload["reason_code"])

    dispatcher.register(domain_events.ApprovalChainCompleted.event_type, originate_payment)
    dispatcher.register(domain_events.PaymentOriginated.event_type, batch_payment)
    for event_type in sorted(domain_events.INVOICING_EVENT_TYPES):
        dispatcher.register(event_type, publish_to_invoicing)
    dispatcher.register(domain_events.ApproverNotificationRequested.event_type, notify_approvers)
    dispatcher.register(domain_events.PaymentReturned.event_type, notify_return)
    return dispatcher

"""Inbound side of the gateway boundary: processor status and ACH return notifications"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from receivables_engine.domain import lifecycle
from receivables_engine.domain.events import DomainEvent
from receivables_engine.domain.models import BatchStatus, NotificationOutcome, Payment, PaymentStatus
from receivables_engine.infrastructure.database.repositories import BatchRepository, EventOutbox, PaymentRepository
from receivables_engine.infrastructure.observability.alerts import UnknownPaymentMonitor, unknown_payment_monitor
from receivables_engine.infrastructure.observability.logging import log_payment_transition
from receivables_engine.infrastructure.observability.metrics import (
    gateway_notification_counter,
    operational_alert_counter,
    payment_transition_counter,
)
from receivables_engine.services.base import BaseService, Clock

logger = logging.getLogger("receivables_engine.gateway")


class GatewayNotificationService(BaseService):
    """
    Applies processor notifications to payments.

    Notifications are keyed by this engine's payment ids; mapping processor
    codes to return reasons happens before they get here. Nothing in this
    service raises for bad notifications: unknown ids and impossible
    transitions are discarded and reported.
    """

    def __init__(self, db: Session, clock: Optional[Clock] = None, monitor: Optional[UnknownPaymentMonitor] = None):
        super().__init__(db, clock)
        self.monitor = monitor or unknown_payment_monitor
        self.payments = PaymentRepository(db)
        self.batches = BatchRepository(db)
        self.outbox = EventOutbox(db)

    def handle_status_notification(self, payment_id: str, status: PaymentStatus) -> NotificationOutcome:
        """PaymentProcessingStatusReceived: processing or settled"""
        return self._handle(
            "status",
            payment_id,
            lambda payment, at: lifecycle.apply_status(payment, status, at),
            detail=status.value,
        )

    def handle_return_notification(self, payment_id: str, reason_code: str) -> NotificationOutcome:
        """ACHReturnReceived with the engine's return-reason code"""
        return self._handle(
            "return",
            payment_id,
            lambda payment, at: lifecycle.apply_return(payment, reason_code, at),
            detail=reason_code,
        )

    def _handle(self, kind: str, payment_id: str, apply, detail: str) -> NotificationOutcome:
        unrecorded_submission = False
        with self.unit_of_work():
            payment = self.payments.get(payment_id)
            if payment is None:
                outcome = NotificationOutcome.DISCARDED_UNKNOWN
            else:
                previous = payment.status
                outcome, events = apply(payment, self.clock())
                self._persist(payment, outcome, events)
                if outcome == NotificationOutcome.DISCARDED_INVALID:
                    unrecorded_submission = self._in_closed_batch(payment)

        gateway_notification_counter.labels(kind=kind, outcome=outcome.value).inc()

        if outcome == NotificationOutcome.DISCARDED_UNKNOWN:
            self.monitor.report(payment_id, kind)
        elif outcome == NotificationOutcome.APPLIED:
            payment_transition_counter.labels(to_status=payment.status.value).inc()
            reason = detail if kind == "return" else None
            log_payment_transition(payment.id, payment.invoice_id, previous.value, payment.status.value, reason)
        elif unrecorded_submission:
            operational_alert_counter.labels(alert="notification_before_submission_recorded").inc()
            logger.warning(
                "Gateway notification for a payment whose closed batch has no recorded submission; discarded",
                extra={
                    "payment_id": payment_id,
                    "batch_id": payment.batch_id,
                    "notification_kind": kind,
                    "detail": detail,
                    "alert": "notification_before_submission_recorded",
                },
            )
        elif outcome == NotificationOutcome.DISCARDED_INVALID:
            logger.warning(
                "Gateway notification does not fit payment state; discarded",
                extra={"payment_id": payment_id, "notification_kind": kind, "detail": detail, "payment_status": previous.value},
            )
        elif outcome == NotificationOutcome.RECORDED_AFTER_SETTLEMENT:
            operational_alert_counter.labels(alert="return_after_settlement").inc()
            logger.error(
                "Return received for settled payment",
                extra={"payment_id": payment_id, "reason_code": detail, "alert": "return_after_settlement"},
            )
        else:
            logger.info("Duplicate gateway notification ignored", extra={"payment_id": payment_id, "notification_kind": kind})

        return outcome

    def _persist(self, payment: Payment, outcome: NotificationOutcome, events: List[DomainEvent]) -> None:
        if outcome == NotificationOutcome.APPLIED:
            self.payments.save(payment)
        self.outbox.record(events)

    def _in_closed_batch(self, payment: Payment) -> bool:
        """Originated payment whose batch was closed; the processor may already hold it"""
        if payment.status != PaymentStatus.ORIGINATED or payment.batch_id is None:
            return False
        batch = self.batches.get(payment.batch_id)
        return batch is not None and batch.status == BatchStatus.CLOSED

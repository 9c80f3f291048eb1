"""Operator actions on returned payments: resubmission and failure"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from receivables_engine.config import settings
from receivables_engine.domain import lifecycle
from receivables_engine.domain.exceptions import ResubmissionNotAllowedError
from receivables_engine.domain.models import Payment, PaymentStatus
from receivables_engine.infrastructure.database.repositories import EventOutbox, PaymentRepository
from receivables_engine.infrastructure.observability.logging import log_payment_transition
from receivables_engine.infrastructure.observability.metrics import (
    payment_transition_counter,
    record_payment_originated,
)
from receivables_engine.services.base import BaseService, Clock
from receivables_engine.utils.date_utils import effective_date_for

logger = logging.getLogger("receivables_engine.payments")


class PaymentService(BaseService):
    """Reads payments and applies operator decisions after a return"""

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        max_attempts: Optional[int] = None,
        lead_days: Optional[int] = None,
    ):
        super().__init__(db, clock)
        self.max_attempts = max_attempts or settings.max_payment_attempts
        self.lead_days = settings.settlement_lead_days if lead_days is None else lead_days
        self.payments = PaymentRepository(db)
        self.outbox = EventOutbox(db)

    def get(self, payment_id: str) -> Payment:
        return self.payments.require(payment_id)

    def superseded_by(self, payment_id: str) -> Optional[str]:
        replacement = self.payments.get_replacement(payment_id)
        return replacement.id if replacement else None

    def list_for_invoice(self, invoice_id: str) -> List[Payment]:
        return self.payments.list_for_invoice(invoice_id)

    def resubmit(self, payment_id: str, bank_account_ref: str, requested_by: str) -> Payment:
        """
        Originate a replacement payment for a returned one.

        The new payment carries the same invoice and amount, the corrected
        bank account and a supersedes link; the returned payment is left as
        it was. The replacement is batched through the PaymentOriginated event.

        Raises:
            ResubmissionNotAllowedError: Not returned, or already resubmitted
            ResubmissionLimitExceededError: Invoice used all payment attempts
        """
        with self.unit_of_work():
            returned = self.payments.require(payment_id)
            self._ensure_not_superseded(returned)
            at = self.clock()
            replacement, events = lifecycle.resubmit_payment(
                returned,
                bank_account_ref=bank_account_ref,
                effective_date=effective_date_for(at, self.lead_days),
                at=at,
                requested_by=requested_by,
                max_attempts=self.max_attempts,
            )
            self.payments.add(replacement)
            self.outbox.record(events)

        record_payment_originated(replacement.amount_cents, resubmission=True)
        payment_transition_counter.labels(to_status=PaymentStatus.ORIGINATED.value).inc()
        logger.info(
            "Payment resubmitted",
            extra={
                "payment_id": replacement.id,
                "supersedes_payment_id": returned.id,
                "invoice_id": replacement.invoice_id,
                "attempt": replacement.attempt,
                "requested_by": requested_by,
            },
        )
        return replacement

    def mark_failed(self, payment_id: str, reason_code: str) -> Payment:
        """Terminal failure of a returned payment that will not be resubmitted"""
        with self.unit_of_work():
            payment = self.payments.require(payment_id)
            self._ensure_not_superseded(payment)
            events = lifecycle.mark_failed(payment, reason_code, self.clock())
            self.payments.save(payment)
            self.outbox.record(events)

        payment_transition_counter.labels(to_status=PaymentStatus.FAILED.value).inc()
        log_payment_transition(payment.id, payment.invoice_id, PaymentStatus.RETURNED.value, PaymentStatus.FAILED.value, reason_code)
        return payment

    def _ensure_not_superseded(self, payment: Payment) -> None:
        replacement = self.payments.get_replacement(payment.id)
        if replacement is not None:
            raise ResubmissionNotAllowedError(f"Payment {payment.id} was already resubmitted as {replacement.id}")

"""Payment origination and batching"""

import logging
from datetime import date
from typing import Dict, Optional

from sqlalchemy.orm import Session

from receivables_engine.config import settings
from receivables_engine.domain import batching
from receivables_engine.domain.exceptions import (
    ConcurrentModificationError,
    EmptyBatchError,
    GatewaySubmissionError,
    InvalidTransitionError,
    PayorAccountNotFoundError,
)
from receivables_engine.domain.lifecycle import originate_payment
from receivables_engine.domain.models import BatchPayload, PaymentBatch, PaymentStatus
from receivables_engine.infrastructure.clients.processor import PaymentProcessorClient
from receivables_engine.infrastructure.database.repositories import (
    BatchRepository,
    EventOutbox,
    InvoiceApprovalRepository,
    PaymentRepository,
    PayorAccountRepository,
)
from receivables_engine.infrastructure.observability.logging import log_payment_transition
from receivables_engine.infrastructure.observability.metrics import (
    batch_submission_counter,
    operational_alert_counter,
    payment_transition_counter,
    record_payment_originated,
)
from receivables_engine.services.base import BaseService, Clock
from receivables_engine.utils.date_utils import add_business_days, effective_date_for

logger = logging.getLogger("receivables_engine.origination")


class OriginationService(BaseService):
    """Turns approved invoices into payments and payments into submitted batches"""

    def __init__(
        self,
        db: Session,
        processor: Optional[PaymentProcessorClient] = None,
        clock: Optional[Clock] = None,
        lead_days: Optional[int] = None,
    ):
        super().__init__(db, clock)
        self.processor = processor or PaymentProcessorClient()
        self.lead_days = settings.settlement_lead_days if lead_days is None else lead_days
        self.approvals = InvoiceApprovalRepository(db)
        self.payments = PaymentRepository(db)
        self.batches = BatchRepository(db)
        self.accounts = PayorAccountRepository(db)
        self.outbox = EventOutbox(db)

    def originate(self, invoice_approval_id: str) -> str:
        """
        Create the payment for an approved invoice and return its id.

        Idempotent: if the approval already produced a payment, that id is
        returned and nothing is created.

        Raises:
            NotApprovedError: Chain is not approved
            PayorAccountNotFoundError: Payor has no verified bank account
        """
        with self.unit_of_work():
            approval = self.approvals.require(invoice_approval_id)
            existing = self.payments.get_first_for_approval(approval.id)
            if existing is not None:
                logger.info(
                    "Origination already done",
                    extra={"invoice_id": approval.invoice_id, "payment_id": existing.id},
                )
                return existing.id

            account = self.accounts.get_account(approval.payor_id)
            if account is None:
                raise PayorAccountNotFoundError(f"Payor {approval.payor_id} has no verified bank account")

            at = self.clock()
            payment, events = originate_payment(approval, account, effective_date_for(at, self.lead_days), at)
            self.payments.add(payment)
            self.outbox.record(events)

        record_payment_originated(payment.amount_cents, resubmission=False)
        payment_transition_counter.labels(to_status=PaymentStatus.ORIGINATED.value).inc()
        logger.info(
            "Payment originated",
            extra={
                "invoice_id": payment.invoice_id,
                "payment_id": payment.id,
                "amount_cents": payment.amount_cents,
                "effective_date": payment.effective_date.isoformat(),
            },
        )
        return payment.id

    def add_to_open_batch(self, payment_id: str) -> str:
        """
        Place an originated payment in the open batch for its payor and effective date.

        Creates the batch when none is open. Returns the batch id; a payment
        already in a batch just returns that batch.
        """
        with self.unit_of_work():
            payment = self.payments.require(payment_id)
            if payment.batch_id is not None:
                return payment.batch_id
            if payment.status != PaymentStatus.ORIGINATED:
                raise InvalidTransitionError(
                    f"Payment {payment.id} is {payment.status.value}; only originated payments are batched"
                )

            at = self.clock()
            batch = self.batches.get_open(payment.payor_id, payment.effective_date)
            if batch is None:
                batch = batching.open_batch(payment.payor_id, payment.effective_date, at)
                self.batches.add(batch)
                logger.info(
                    "Batch opened",
                    extra={"batch_id": batch.id, "payor_id": batch.payor_id, "effective_date": batch.effective_date.isoformat()},
                )
            batching.add_payment(batch, payment)
            self.batches.save(batch, at)

        logger.info("Payment added to batch", extra={"payment_id": payment.id, "batch_id": batch.id})
        return batch.id

    def close_batch(self, batch_id: str) -> BatchPayload:
        """
        Freeze batch membership and return the submission payload.

        Raises:
            EmptyBatchError: Batch has no payments
            BatchAlreadySubmittedError: Batch was submitted
        """
        with self.unit_of_work():
            batch = self.batches.require(batch_id)
            payments = self.payments.get_many(batch.payment_ids)
            payload = batching.close_batch(batch, payments, self.clock())
            self.batches.save(batch, self.clock())

        logger.info(
            "Batch closed",
            extra={"batch_id": batch.id, "payment_count": payload.payment_count, "total_cents": payload.total_cents},
        )
        return payload

    async def submit_batch(self, batch_id: str) -> PaymentBatch:
        """
        Close (if needed) and submit a batch to the payment processor.

        On success the batch and every member payment become submitted in
        one transaction. On GatewaySubmissionError the attempt is recorded on
        the batch, every payment stays originated, and the error is re-raised.
        """
        payload = self.close_batch(batch_id)

        try:
            reference = await self.processor.submit_batch(payload)
        except GatewaySubmissionError as e:
            batch_submission_counter.labels(outcome="failed").inc()
            logger.error(
                "Batch submission failed",
                extra={"batch_id": batch_id, "payment_count": payload.payment_count, "error": str(e)},
            )
            self._record_failure(batch_id, e)
            raise

        try:
            with self.unit_of_work():
                at = self.clock()
                batch = self.batches.require(batch_id)
                payments = self.payments.get_many(batch.payment_ids)
                events = batching.record_submission(batch, payments, reference, at)
                for payment in payments:
                    self.payments.save(payment)
                self.batches.save(batch, at)
                self.outbox.record(events)
        except ConcurrentModificationError:
            operational_alert_counter.labels(alert="accepted_batch_not_recorded").inc()
            logger.error(
                "Processor accepted batch but recording the submission failed; resubmit to reconcile",
                extra={"batch_id": batch_id, "external_reference": reference, "alert": "accepted_batch_not_recorded"},
            )
            raise

        batch_submission_counter.labels(outcome="submitted").inc()
        for payment in payments:
            payment_transition_counter.labels(to_status=PaymentStatus.SUBMITTED.value).inc()
            log_payment_transition(payment.id, payment.invoice_id, PaymentStatus.ORIGINATED.value, PaymentStatus.SUBMITTED.value)
        logger.info(
            "Batch submitted",
            extra={"batch_id": batch.id, "external_reference": reference, "payment_count": len(payments)},
        )
        return batch

    async def submit_due_batches(self, as_of: date) -> Dict[str, str]:
        """
        Submit every unsubmitted batch due by the settlement lead time.

        Scheduler hook: failures are logged and reported per batch, never raised.
        """
        cutoff = add_business_days(as_of, self.lead_days)
        due = [batch.id for batch in self.batches.list_unsubmitted_due(cutoff)]
        results: Dict[str, str] = {}
        for batch_id in due:
            try:
                await self.submit_batch(batch_id)
                results[batch_id] = "submitted"
            except (GatewaySubmissionError, EmptyBatchError, ConcurrentModificationError) as e:
                results[batch_id] = f"failed: {e}"
                logger.warning("Due batch not submitted", extra={"batch_id": batch_id, "error": str(e)})
        return results

    def _record_failure(self, batch_id: str, error: GatewaySubmissionError) -> None:
        """Note a refused submission on the batch; a lost write here never masks the gateway error"""
        try:
            with self.unit_of_work():
                batch = self.batches.require(batch_id)
                batching.record_submission_failure(batch, str(error))
                self.batches.save(batch, self.clock())
        except ConcurrentModificationError as e:
            logger.warning(
                "Batch submission failure not recorded",
                extra={"batch_id": batch_id, "gateway_error": str(error), "error": str(e)},
            )

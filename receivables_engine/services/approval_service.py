"""Approval workflow service: submission from Invoicing and approver actions"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from receivables_engine.domain import approval as chain
from receivables_engine.domain.exceptions import (
    ConcurrentModificationError,
    InvoiceAlreadySubmittedError,
    PolicyViolationError,
)
from receivables_engine.domain.models import Decision, InvoiceApproval
from receivables_engine.domain.rules import RuleResolver
from receivables_engine.infrastructure.database.repositories import (
    ApprovalRuleRepository,
    EventOutbox,
    InvoiceApprovalRepository,
)
from receivables_engine.infrastructure.observability.logging import log_approval_action
from receivables_engine.infrastructure.observability.metrics import (
    approval_action_counter,
    approval_outcome_counter,
    approval_policy_violation_counter,
)
from receivables_engine.services.base import BaseService, Clock

logger = logging.getLogger("receivables_engine.approval")


class ApprovalService(BaseService):
    """Creates invoice approvals and records approver decisions"""

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        super().__init__(db, clock)
        self.approvals = InvoiceApprovalRepository(db)
        self.resolver = RuleResolver(ApprovalRuleRepository(db))
        self.outbox = EventOutbox(db)

    def get(self, approval_id: str) -> InvoiceApproval:
        return self.approvals.require(approval_id)

    def submit_for_approval(
        self,
        invoice_id: str,
        payor_id: str,
        amount_cents: int,
        rule_version: Optional[int] = None,
    ) -> InvoiceApproval:
        """
        Start the approval chain for an invoice.

        Re-submitting an invoice with the same payor and amount returns the
        existing approval, so Invoicing can safely redeliver. A rule_version
        of None binds the chain to the payor's currently active rule.

        Raises:
            InvoiceAlreadySubmittedError: Invoice exists with different terms
            RuleNotFoundError: No rule or tier covers the invoice
        """
        existing = self.approvals.get_by_invoice(invoice_id)
        if existing is not None:
            same_terms = (
                existing.payor_id == payor_id
                and existing.amount_cents == amount_cents
                and rule_version in (None, existing.rule_version)
            )
            if not same_terms:
                raise InvoiceAlreadySubmittedError(
                    f"Invoice {invoice_id} was already submitted for payor {existing.payor_id}, "
                    f"amount {existing.amount_cents}, rule v{existing.rule_version}"
                )
            return existing

        with self.unit_of_work():
            definition = self.resolver.resolve(payor_id, amount_cents, rule_version)
            approval, events = chain.start_approval(
                invoice_id=invoice_id,
                payor_id=payor_id,
                amount_cents=amount_cents,
                chain=definition,
                at=self.clock(),
            )
            self.approvals.add(approval)
            self.outbox.record(events)

        logger.info(
            "Invoice submitted for approval",
            extra={
                "invoice_id": invoice_id,
                "payor_id": payor_id,
                "amount_cents": amount_cents,
                "rule_version": definition.rule_version,
                "slots": definition.slot_count,
            },
        )
        return approval

    def record_action(
        self,
        approval_id: str,
        approver_id: str,
        decision: Decision,
        expected_version: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> InvoiceApproval:
        """
        Record an approver decision on the slot awaiting one.

        expected_version, when given, must match the version the caller last
        read; otherwise ConcurrentModificationError asks it to re-read.
        """
        with self.unit_of_work():
            approval = self.approvals.require(approval_id)
            self._check_expected_version(approval, expected_version)
            try:
                events = chain.record_action(approval, approver_id, decision, self.clock())
            except PolicyViolationError as e:
                approval_policy_violation_counter.labels(reason=type(e).__name__).inc()
                logger.warning(
                    "Approver action refused",
                    extra={"invoice_id": approval.invoice_id, "approver_id": approver_id, "reason": str(e)},
                )
                raise
            self.approvals.save(approval)
            self.outbox.record(events)

        approval_action_counter.labels(decision=decision.value).inc()
        if approval.is_terminal:
            approval_outcome_counter.labels(outcome=approval.status.value).inc()
        log_approval_action(approval.invoice_id, approver_id, decision.value, approval.state_label, request_id)
        return approval

    def withdraw(
        self,
        approval_id: str,
        requested_by: str,
        reason: str,
        expected_version: Optional[int] = None,
    ) -> InvoiceApproval:
        """Audited withdrawal requested by Invoicing; ends the chain as withdrawn"""
        with self.unit_of_work():
            approval = self.approvals.require(approval_id)
            self._check_expected_version(approval, expected_version)
            events = chain.withdraw(approval, requested_by, reason, self.clock())
            self.approvals.save(approval)
            self.outbox.record(events)

        approval_outcome_counter.labels(outcome=approval.status.value).inc()
        logger.info(
            "Invoice approval withdrawn",
            extra={"invoice_id": approval.invoice_id, "requested_by": requested_by, "reason": reason},
        )
        return approval

    @staticmethod
    def _check_expected_version(approval: InvoiceApproval, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != approval.version:
            raise ConcurrentModificationError(
                f"Approval of invoice {approval.invoice_id} is at version {approval.version}, "
                f"caller expected {expected_version}"
            )

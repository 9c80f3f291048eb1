"""Payment lifecycle state machine: origination, settlement, returns and resubmission"""

import uuid
from datetime import date, datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from receivables_engine.domain.events import (
    DomainEvent,
    PaymentFailed,
    PaymentOriginated,
    PaymentResubmitted,
    PaymentReturned,
    PaymentReturnedAfterSettlement,
    PaymentStatusChanged,
)
from receivables_engine.domain.exceptions import (
    InvalidTransitionError,
    NotApprovedError,
    ResubmissionLimitExceededError,
    ResubmissionNotAllowedError,
)
from receivables_engine.domain.models import (
    ApprovalStatus,
    InvoiceApproval,
    NotificationOutcome,
    Payment,
    PaymentStatus,
    StatusTransition,
)

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.ORIGINATED: frozenset({PaymentStatus.SUBMITTED}),
    PaymentStatus.SUBMITTED: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.SETTLED,
        PaymentStatus.RETURNED,
    }),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.SETTLED, PaymentStatus.RETURNED}),
    PaymentStatus.SETTLED: frozenset(),
    PaymentStatus.RETURNED: frozenset({PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset(),
}

# Position on the success path; notifications never move a payment backwards
_PROGRESS_RANK: Dict[PaymentStatus, int] = {
    PaymentStatus.ORIGINATED: 0,
    PaymentStatus.SUBMITTED: 1,
    PaymentStatus.PROCESSING: 2,
    PaymentStatus.SETTLED: 3,
}

PROCESSOR_STATUSES: FrozenSet[PaymentStatus] = frozenset({PaymentStatus.PROCESSING, PaymentStatus.SETTLED})


def originate_payment(
    approval: InvoiceApproval,
    bank_account_ref: str,
    effective_date: date,
    at: datetime,
    payment_id: Optional[str] = None,
) -> Tuple[Payment, List[DomainEvent]]:
    """
    Create the first payment for an approved invoice.

    Raises:
        NotApprovedError: Approval chain is still pending, rejected or withdrawn
    """
    if approval.status != ApprovalStatus.APPROVED:
        raise NotApprovedError(
            f"Invoice {approval.invoice_id} approval is {approval.state_label}, not approved"
        )

    payment = _new_payment(
        payment_id=payment_id,
        invoice_id=approval.invoice_id,
        invoice_approval_id=approval.id,
        payor_id=approval.payor_id,
        amount_cents=approval.amount_cents,
        effective_date=effective_date,
        bank_account_ref=bank_account_ref,
        at=at,
        attempt=1,
        supersedes_payment_id=None,
    )
    return payment, [_originated_event(payment, at)]


def resubmit_payment(
    returned: Payment,
    bank_account_ref: str,
    effective_date: date,
    at: datetime,
    requested_by: str,
    max_attempts: int,
    payment_id: Optional[str] = None,
) -> Tuple[Payment, List[DomainEvent]]:
    """
    Originate a replacement for a returned payment against a corrected account.

    The returned payment is not modified; the replacement points back at it
    through supersedes_payment_id.

    Raises:
        ResubmissionNotAllowedError: Payment is not in returned status
        ResubmissionLimitExceededError: Invoice already used max_attempts payments
    """
    if returned.status != PaymentStatus.RETURNED:
        raise ResubmissionNotAllowedError(
            f"Payment {returned.id} is {returned.status.value}; only returned payments can be resubmitted"
        )
    if returned.attempt >= max_attempts:
        raise ResubmissionLimitExceededError(
            f"Invoice {returned.invoice_id} has used {returned.attempt} of {max_attempts} payment attempts"
        )

    replacement = _new_payment(
        payment_id=payment_id,
        invoice_id=returned.invoice_id,
        invoice_approval_id=returned.invoice_approval_id,
        payor_id=returned.payor_id,
        amount_cents=returned.amount_cents,
        effective_date=effective_date,
        bank_account_ref=bank_account_ref,
        at=at,
        attempt=returned.attempt + 1,
        supersedes_payment_id=returned.id,
    )
    events: List[DomainEvent] = [
        _originated_event(replacement, at),
        PaymentResubmitted(
            aggregate_id=replacement.id,
            occurred_at=at,
            invoice_id=replacement.invoice_id,
            superseded_payment_id=returned.id,
            attempt=replacement.attempt,
            requested_by=requested_by,
        ),
    ]
    return replacement, events


def transition(
    payment: Payment,
    to_status: PaymentStatus,
    at: datetime,
    reason_code: Optional[str] = None,
) -> None:
    """Apply a transition from the table and append it to the history"""
    if to_status not in PAYMENT_TRANSITIONS[payment.status]:
        raise InvalidTransitionError(
            f"Payment {payment.id} cannot move from {payment.status.value} to {to_status.value}"
        )
    payment.history.append(
        StatusTransition(from_status=payment.status, to_status=to_status, at=at, reason_code=reason_code)
    )
    payment.status = to_status


def apply_status(
    payment: Payment,
    status: PaymentStatus,
    at: datetime,
) -> Tuple[NotificationOutcome, List[DomainEvent]]:
    """
    Apply a processing/settled notification from the processor.

    Repeated or stale notifications (same or earlier position on the success
    path) are no-ops. Notifications for payments that never left origination
    or are already off the success path are discarded.
    """
    if status not in PROCESSOR_STATUSES:
        raise InvalidTransitionError(f"{status.value} is not a processor status notification")

    if payment.status not in _PROGRESS_RANK or payment.status == PaymentStatus.ORIGINATED:
        return NotificationOutcome.DISCARDED_INVALID, []
    if _PROGRESS_RANK[status] <= _PROGRESS_RANK[payment.status]:
        return NotificationOutcome.DUPLICATE, []

    previous = payment.status
    transition(payment, status, at)
    return NotificationOutcome.APPLIED, [
        PaymentStatusChanged(
            aggregate_id=payment.id,
            occurred_at=at,
            invoice_id=payment.invoice_id,
            from_status=previous.value,
            to_status=status.value,
        )
    ]


def apply_return(
    payment: Payment,
    reason_code: str,
    at: datetime,
) -> Tuple[NotificationOutcome, List[DomainEvent]]:
    """
    Apply an ACH return notification.

    A return for a settled payment is a separate occurrence: the payment keeps
    its settled status and a PaymentReturnedAfterSettlement event is raised.
    """
    if payment.status == PaymentStatus.RETURNED:
        return NotificationOutcome.DUPLICATE, []

    if payment.status == PaymentStatus.SETTLED:
        return NotificationOutcome.RECORDED_AFTER_SETTLEMENT, [
            PaymentReturnedAfterSettlement(
                aggregate_id=payment.id,
                occurred_at=at,
                invoice_id=payment.invoice_id,
                payor_id=payment.payor_id,
                reason_code=reason_code,
            )
        ]

    if PaymentStatus.RETURNED not in PAYMENT_TRANSITIONS[payment.status]:
        return NotificationOutcome.DISCARDED_INVALID, []

    transition(payment, PaymentStatus.RETURNED, at, reason_code=reason_code)
    payment.return_reason_code = reason_code
    return NotificationOutcome.APPLIED, [
        PaymentReturned(
            aggregate_id=payment.id,
            occurred_at=at,
            invoice_id=payment.invoice_id,
            payor_id=payment.payor_id,
            reason_code=reason_code,
        )
    ]


def mark_failed(payment: Payment, reason_code: str, at: datetime) -> List[DomainEvent]:
    """Close out a returned payment that will not be resubmitted"""
    if payment.status != PaymentStatus.RETURNED:
        raise ResubmissionNotAllowedError(
            f"Payment {payment.id} is {payment.status.value}; only returned payments can be failed"
        )
    transition(payment, PaymentStatus.FAILED, at, reason_code=reason_code)
    return [
        PaymentFailed(
            aggregate_id=payment.id,
            occurred_at=at,
            invoice_id=payment.invoice_id,
            reason_code=reason_code,
        )
    ]


def _new_payment(
    payment_id: Optional[str],
    invoice_id: str,
    invoice_approval_id: str,
    payor_id: str,
    amount_cents: int,
    effective_date: date,
    bank_account_ref: str,
    at: datetime,
    attempt: int,
    supersedes_payment_id: Optional[str],
) -> Payment:
    return Payment(
        id=payment_id or str(uuid.uuid4()),
        invoice_id=invoice_id,
        invoice_approval_id=invoice_approval_id,
        payor_id=payor_id,
        amount_cents=amount_cents,
        effective_date=effective_date,
        bank_account_ref=bank_account_ref,
        status=PaymentStatus.ORIGINATED,
        created_at=at,
        history=[StatusTransition(from_status=None, to_status=PaymentStatus.ORIGINATED, at=at)],
        attempt=attempt,
        supersedes_payment_id=supersedes_payment_id,
    )


def _originated_event(payment: Payment, at: datetime) -> PaymentOriginated:
    return PaymentOriginated(
        aggregate_id=payment.id,
        occurred_at=at,
        invoice_id=payment.invoice_id,
        payor_id=payment.payor_id,
        amount_cents=payment.amount_cents,
        effective_date=payment.effective_date,
        attempt=payment.attempt,
        supersedes_payment_id=payment.supersedes_payment_id,
    )

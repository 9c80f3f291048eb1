"""Payment batch rules: open-window membership, freezing, and all-or-nothing submission"""

import uuid
from datetime import date, datetime
from typing import Dict, FrozenSet, List, Optional, Sequence

from receivables_engine.domain.events import DomainEvent, PaymentBatchSubmitted
from receivables_engine.domain.exceptions import (
    BatchAlreadySubmittedError,
    EmptyBatchError,
    InvalidTransitionError,
)
from receivables_engine.domain.lifecycle import transition
from receivables_engine.domain.models import (
    BatchPayload,
    BatchPaymentLine,
    BatchStatus,
    Payment,
    PaymentBatch,
    PaymentStatus,
)

BATCH_TRANSITIONS: Dict[BatchStatus, FrozenSet[BatchStatus]] = {
    BatchStatus.OPEN: frozenset({BatchStatus.CLOSED}),
    BatchStatus.CLOSED: frozenset({BatchStatus.SUBMITTED}),
    BatchStatus.SUBMITTED: frozenset(),
}


def open_batch(payor_id: str, effective_date: date, at: datetime, batch_id: Optional[str] = None) -> PaymentBatch:
    return PaymentBatch(
        id=batch_id or str(uuid.uuid4()),
        payor_id=payor_id,
        effective_date=effective_date,
        status=BatchStatus.OPEN,
        created_at=at,
    )


def add_payment(batch: PaymentBatch, payment: Payment) -> bool:
    """
    Append a payment to an open batch.

    Returns False when the payment is already a member (no change).

    Raises:
        InvalidTransitionError: Batch is closed, or payment belongs elsewhere
        BatchAlreadySubmittedError: Batch was submitted
    """
    if payment.id in batch.payment_ids:
        return False
    if batch.status == BatchStatus.SUBMITTED:
        raise BatchAlreadySubmittedError(f"Batch {batch.id} was submitted and cannot take payment {payment.id}")
    if batch.status != BatchStatus.OPEN:
        raise InvalidTransitionError(f"Batch {batch.id} is {batch.status.value}; membership is frozen")
    if payment.batch_id is not None and payment.batch_id != batch.id:
        raise InvalidTransitionError(f"Payment {payment.id} already belongs to batch {payment.batch_id}")
    if payment.payor_id != batch.payor_id or payment.effective_date != batch.effective_date:
        raise InvalidTransitionError(
            f"Payment {payment.id} ({payment.payor_id}, {payment.effective_date}) does not match "
            f"batch {batch.id} ({batch.payor_id}, {batch.effective_date})"
        )

    batch.payment_ids.append(payment.id)
    payment.batch_id = batch.id
    return True


def close_batch(batch: PaymentBatch, payments: Sequence[Payment], at: datetime) -> BatchPayload:
    """
    Freeze membership and build the submission payload.

    Closing an already closed batch returns the same payload again.

    Raises:
        EmptyBatchError: Batch has no payments
        BatchAlreadySubmittedError: Batch was submitted
    """
    if batch.status == BatchStatus.SUBMITTED:
        raise BatchAlreadySubmittedError(f"Batch {batch.id} was already submitted")
    if not batch.payment_ids:
        raise EmptyBatchError(f"Batch {batch.id} has no payments")

    payload = build_payload(batch, payments)
    if batch.status == BatchStatus.OPEN:
        _set_status(batch, BatchStatus.CLOSED)
        batch.closed_at = at
    return payload


def build_payload(batch: PaymentBatch, payments: Sequence[Payment]) -> BatchPayload:
    """Payload lines in batch insertion order"""
    by_id = {payment.id: payment for payment in payments}
    missing = [payment_id for payment_id in batch.payment_ids if payment_id not in by_id]
    if missing:
        raise InvalidTransitionError(f"Batch {batch.id} members not loaded: {', '.join(missing)}")

    lines = tuple(
        BatchPaymentLine(
            payment_id=by_id[payment_id].id,
            invoice_id=by_id[payment_id].invoice_id,
            amount_cents=by_id[payment_id].amount_cents,
            bank_account_ref=by_id[payment_id].bank_account_ref,
        )
        for payment_id in batch.payment_ids
    )
    return BatchPayload(
        batch_id=batch.id,
        payor_id=batch.payor_id,
        effective_date=batch.effective_date,
        lines=lines,
    )


def record_submission(
    batch: PaymentBatch,
    payments: Sequence[Payment],
    external_reference: str,
    at: datetime,
) -> List[DomainEvent]:
    """
    Mark a closed batch and every member payment as submitted.

    All members are checked before any is changed, so the batch never ends up
    with a mix of submitted and originated payments.
    """
    if batch.status != BatchStatus.CLOSED:
        raise InvalidTransitionError(f"Batch {batch.id} is {batch.status.value}; only closed batches are submitted")

    by_id = {payment.id: payment for payment in payments}
    members = [by_id.get(payment_id) for payment_id in batch.payment_ids]
    blocked = [
        payment_id
        for payment_id, payment in zip(batch.payment_ids, members)
        if payment is None or payment.status != PaymentStatus.ORIGINATED
    ]
    if blocked:
        raise InvalidTransitionError(f"Batch {batch.id} has payments not awaiting submission: {', '.join(blocked)}")

    for payment in members:
        transition(payment, PaymentStatus.SUBMITTED, at)

    _set_status(batch, BatchStatus.SUBMITTED)
    batch.submitted_at = at
    batch.external_reference = external_reference
    batch.submission_attempts += 1
    batch.last_error = None

    return [
        PaymentBatchSubmitted(
            aggregate_id=batch.id,
            occurred_at=at,
            payor_id=batch.payor_id,
            external_reference=external_reference,
            payment_ids=tuple(batch.payment_ids),
        )
    ]


def record_submission_failure(batch: PaymentBatch, error: str) -> None:
    """Count a failed submit attempt; batch stays closed for retry"""
    batch.submission_attempts += 1
    batch.last_error = error


def _set_status(batch: PaymentBatch, new_status: BatchStatus) -> None:
    if new_status not in BATCH_TRANSITIONS[batch.status]:
        raise InvalidTransitionError(f"Batch {batch.id} cannot move from {batch.status.value} to {new_status.value}")
    batch.status = new_status

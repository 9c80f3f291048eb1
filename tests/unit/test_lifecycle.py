"""Unit tests for the payment lifecycle state machine"""

import pytest
from datetime import date, datetime, timezone
from receivables_engine.domain import lifecycle
from receivables_engine.domain.events import (
    PaymentOriginated,
    PaymentResubmitted,
    PaymentReturned,
    PaymentReturnedAfterSettlement,
)
from receivables_engine.domain.exceptions import (
    InvalidTransitionError,
    NotApprovedError,
    ResubmissionLimitExceededError,
    ResubmissionNotAllowedError,
)
from receivables_engine.domain.models import (
    ApprovalChainDefinition,
    ApprovalSlot,
    ApprovalStatus,
    InvoiceApproval,
    NotificationOutcome,
    PaymentStatus,
)

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
EFFECTIVE = date(2026, 3, 3)


def _approval(status: ApprovalStatus = ApprovalStatus.APPROVED) -> InvoiceApproval:
    return InvoiceApproval(
        id="appr_1",
        invoice_id="inv_1",
        payor_id="payor_1",
        amount_cents=25000,
        chain=ApprovalChainDefinition(
            payor_id="payor_1",
            rule_version=1,
            tier_lower_cents=10000,
            tier_upper_cents=None,
            slots=(ApprovalSlot(index=0, eligible_approvers=("alice",)),),
        ),
        status=status,
        current_slot=None if status != ApprovalStatus.AWAITING_SLOT else 0,
        created_at=NOW,
        updated_at=NOW,
    )


def _payment(status: PaymentStatus = PaymentStatus.ORIGINATED):
    payment, _ = lifecycle.originate_payment(_approval(), "acct_1", EFFECTIVE, NOW, payment_id="pay_1")
    path = [PaymentStatus.SUBMITTED, PaymentStatus.PROCESSING, PaymentStatus.SETTLED]
    if status == PaymentStatus.RETURNED:
        lifecycle.transition(payment, PaymentStatus.SUBMITTED, NOW)
        lifecycle.apply_return(payment, "insufficient_funds", NOW)
        return payment
    for step in path:
        if payment.status == status:
            break
        lifecycle.transition(payment, step, NOW)
    return payment


def test_originate_payment_from_approved_invoice():
    """Test origination copies invoice terms and starts the history"""
    payment, events = lifecycle.originate_payment(_approval(), "acct_1", EFFECTIVE, NOW)

    assert payment.status == PaymentStatus.ORIGINATED
    assert payment.amount_cents == 25000
    assert payment.invoice_approval_id == "appr_1"
    assert payment.attempt == 1
    assert payment.supersedes_payment_id is None
    assert len(payment.history) == 1
    assert payment.history[0].from_status is None
    assert isinstance(events[0], PaymentOriginated)


@pytest.mark.parametrize(
    "status", [ApprovalStatus.AWAITING_SLOT, ApprovalStatus.REJECTED, ApprovalStatus.WITHDRAWN]
)
def test_originate_requires_approved_chain(status: ApprovalStatus):
    with pytest.raises(NotApprovedError):
        lifecycle.originate_payment(_approval(status), "acct_1", EFFECTIVE, NOW)


def test_transition_rejects_skipping_submission():
    """Test a payment cannot settle before it was submitted"""
    payment = _payment()

    with pytest.raises(InvalidTransitionError):
        lifecycle.transition(payment, PaymentStatus.SETTLED, NOW)

    assert payment.status == PaymentStatus.ORIGINATED
    assert len(payment.history) == 1


def test_status_notifications_move_forward():
    payment = _payment(PaymentStatus.SUBMITTED)

    outcome, events = lifecycle.apply_status(payment, PaymentStatus.PROCESSING, NOW)
    assert outcome == NotificationOutcome.APPLIED
    assert events[0].from_status == "submitted"

    outcome, _ = lifecycle.apply_status(payment, PaymentStatus.SETTLED, NOW)
    assert outcome == NotificationOutcome.APPLIED
    assert payment.status == PaymentStatus.SETTLED
    assert [entry.to_status for entry in payment.history] == [
        PaymentStatus.ORIGINATED,
        PaymentStatus.SUBMITTED,
        PaymentStatus.PROCESSING,
        PaymentStatus.SETTLED,
    ]


def test_settled_directly_from_submitted():
    payment = _payment(PaymentStatus.SUBMITTED)

    outcome, _ = lifecycle.apply_status(payment, PaymentStatus.SETTLED, NOW)

    assert outcome == NotificationOutcome.APPLIED
    assert payment.status == PaymentStatus.SETTLED


def test_stale_notification_never_moves_backwards():
    """Test a late 'processing' after settlement is a no-op"""
    payment = _payment(PaymentStatus.SETTLED)
    history_length = len(payment.history)

    outcome, events = lifecycle.apply_status(payment, PaymentStatus.PROCESSING, NOW)

    assert outcome == NotificationOutcome.DUPLICATE
    assert events == []
    assert payment.status == PaymentStatus.SETTLED
    assert len(payment.history) == history_length


def test_repeated_notification_is_duplicate():
    payment = _payment(PaymentStatus.PROCESSING)

    outcome, _ = lifecycle.apply_status(payment, PaymentStatus.PROCESSING, NOW)

    assert outcome == NotificationOutcome.DUPLICATE


def test_notification_before_submission_is_discarded():
    payment = _payment()

    outcome, _ = lifecycle.apply_status(payment, PaymentStatus.PROCESSING, NOW)

    assert outcome == NotificationOutcome.DISCARDED_INVALID
    assert payment.status == PaymentStatus.ORIGINATED


def test_return_of_submitted_payment():
    """Test return notification records the reason code"""
    payment = _payment(PaymentStatus.SUBMITTED)

    outcome, events = lifecycle.apply_return(payment, "insufficient_funds", NOW)

    assert outcome == NotificationOutcome.APPLIED
    assert payment.status == PaymentStatus.RETURNED
    assert payment.return_reason_code == "insufficient_funds"
    assert payment.history[-1].reason_code == "insufficient_funds"
    assert isinstance(events[0], PaymentReturned)


def test_repeated_return_is_duplicate():
    payment = _payment(PaymentStatus.RETURNED)

    outcome, events = lifecycle.apply_return(payment, "insufficient_funds", NOW)

    assert outcome == NotificationOutcome.DUPLICATE
    assert events == []


def test_return_after_settlement_keeps_settled():
    """Test a late return is recorded as its own event without reopening the payment"""
    payment = _payment(PaymentStatus.SETTLED)

    outcome, events = lifecycle.apply_return(payment, "unauthorized", NOW)

    assert outcome == NotificationOutcome.RECORDED_AFTER_SETTLEMENT
    assert payment.status == PaymentStatus.SETTLED
    assert isinstance(events[0], PaymentReturnedAfterSettlement)


def test_return_of_unsubmitted_payment_discarded():
    payment = _payment()

    outcome, _ = lifecycle.apply_return(payment, "insufficient_funds", NOW)

    assert outcome == NotificationOutcome.DISCARDED_INVALID
    assert payment.status == PaymentStatus.ORIGINATED


def test_scenario_c_resubmission():
    """Test resubmission creates a linked replacement and leaves the original alone"""
    original = _payment(PaymentStatus.RETURNED)
    history_before = list(original.history)

    replacement, events = lifecycle.resubmit_payment(
        original, "acct_corrected", EFFECTIVE, NOW, requested_by="ops_jane", max_attempts=3
    )

    assert replacement.id != original.id
    assert replacement.supersedes_payment_id == original.id
    assert replacement.bank_account_ref == "acct_corrected"
    assert replacement.amount_cents == original.amount_cents
    assert replacement.attempt == 2
    assert replacement.status == PaymentStatus.ORIGINATED
    assert original.status == PaymentStatus.RETURNED
    assert original.history == history_before
    assert [type(e) for e in events] == [PaymentOriginated, PaymentResubmitted]


def test_resubmit_requires_returned_payment():
    payment = _payment(PaymentStatus.SETTLED)

    with pytest.raises(ResubmissionNotAllowedError):
        lifecycle.resubmit_payment(payment, "acct_2", EFFECTIVE, NOW, requested_by="ops", max_attempts=3)


def test_resubmit_limit():
    """Test the invoice's attempt budget caps resubmissions"""
    payment = _payment(PaymentStatus.RETURNED)
    payment.attempt = 3

    with pytest.raises(ResubmissionLimitExceededError):
        lifecycle.resubmit_payment(payment, "acct_2", EFFECTIVE, NOW, requested_by="ops", max_attempts=3)


def test_mark_failed_only_after_return():
    payment = _payment(PaymentStatus.RETURNED)

    lifecycle.mark_failed(payment, "account_closed", NOW)
    assert payment.status == PaymentStatus.FAILED

    with pytest.raises(ResubmissionNotAllowedError):
        lifecycle.mark_failed(_payment(PaymentStatus.SUBMITTED), "account_closed", NOW)


def test_terminal_statuses():
    assert lifecycle.PAYMENT_TRANSITIONS[PaymentStatus.SETTLED] == frozenset()
    assert lifecycle.PAYMENT_TRANSITIONS[PaymentStatus.FAILED] == frozenset()

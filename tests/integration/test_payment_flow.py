"""Service tests for origination, batching, submission and operator actions on returns"""

import pytest
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, patch
from prometheus_client import REGISTRY
from sqlalchemy.orm import Session
from receivables_engine.domain.batching import open_batch
from receivables_engine.domain.exceptions import (
    ConcurrentModificationError,
    EmptyBatchError,
    GatewaySubmissionError,
    NotApprovedError,
    PayorAccountNotFoundError,
    ResubmissionLimitExceededError,
    ResubmissionNotAllowedError,
)
from receivables_engine.domain.models import (
    AmountTier,
    BatchStatus,
    Decision,
    NotificationOutcome,
    PaymentStatus,
)
from receivables_engine.infrastructure.database.repositories import BatchRepository, PaymentRepository
from receivables_engine.services.approval_service import ApprovalService
from receivables_engine.services.gateway_service import GatewayNotificationService
from receivables_engine.services.origination_service import OriginationService
from receivables_engine.services.payment_service import PaymentService
from receivables_engine.services.registry_service import RegistryService

# Monday; with one business day of lead time payments settle Tuesday
NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
EFFECTIVE = date(2026, 3, 3)


def clock() -> datetime:
    return NOW


def _approve(db: Session, invoice_id: str, payor_id: str, amount_cents: int = 5000) -> str:
    service = ApprovalService(db, clock=clock)
    approval = service.submit_for_approval(invoice_id, payor_id, amount_cents)
    service.record_action(approval.id, "alice", Decision.APPROVE)
    if amount_cents >= 10000:
        service.record_action(approval.id, "bob", Decision.APPROVE)
    return approval.id


def _origination(db: Session, processor: AsyncMock) -> OriginationService:
    return OriginationService(db, processor=processor, clock=clock, lead_days=1)


def _originate_and_batch(db: Session, processor: AsyncMock, approval_id: str) -> tuple[str, str]:
    origination = _origination(db, processor)
    payment_id = origination.originate(approval_id)
    return payment_id, origination.add_to_open_batch(payment_id)


async def _returned_payment(db: Session, processor: AsyncMock, payor_id: str) -> str:
    payment_id, batch_id = _originate_and_batch(db, processor, _approve(db, "inv_1", payor_id))
    await _origination(db, processor).submit_batch(batch_id)
    outcome = GatewayNotificationService(db, clock=clock).handle_return_notification(payment_id, "insufficient_funds")
    assert outcome == NotificationOutcome.APPLIED
    return payment_id


def test_scenario_a_originates_one_payment(db: Session, acme: str, processor: AsyncMock):
    """Test an approved invoice yields exactly one payment, however often origination runs"""
    approval_id = _approve(db, "inv_1", acme, 5000)
    origination = _origination(db, processor)

    payment_id = origination.originate(approval_id)
    assert origination.originate(approval_id) == payment_id

    payments = PaymentService(db).list_for_invoice("inv_1")
    assert [p.id for p in payments] == [payment_id]
    assert payments[0].status == PaymentStatus.ORIGINATED
    assert payments[0].amount_cents == 5000
    assert payments[0].bank_account_ref == "acct_acme_primary"
    assert payments[0].effective_date == EFFECTIVE


def test_originate_pending_chain_refused(db: Session, acme: str, processor: AsyncMock):
    approval = ApprovalService(db).submit_for_approval("inv_1", acme, 25000)

    with pytest.raises(NotApprovedError):
        _origination(db, processor).originate(approval.id)


def test_originate_without_bank_account(db: Session, processor: AsyncMock):
    RegistryService(db).publish_rule(
        "payor_new",
        [AmountTier(lower_cents=0, upper_cents=None, required_approvals=1, slot_approvers=(("alice",),))],
    )
    approval_id = _approve(db, "inv_1", "payor_new")

    with pytest.raises(PayorAccountNotFoundError):
        _origination(db, processor).originate(approval_id)

    assert PaymentService(db).list_for_invoice("inv_1") == []


def test_payments_share_open_batch(db: Session, acme: str, processor: AsyncMock):
    """Test payments for one payor and date land in the same batch, in order"""
    first, batch_id = _originate_and_batch(db, processor, _approve(db, "inv_1", acme))
    second, second_batch = _originate_and_batch(db, processor, _approve(db, "inv_2", acme, 25000))

    assert second_batch == batch_id
    batch = BatchRepository(db).require(batch_id)
    assert batch.payment_ids == [first, second]
    assert batch.effective_date == EFFECTIVE
    assert _origination(db, processor).add_to_open_batch(first) == batch_id


def test_closed_batch_gets_no_new_members(db: Session, acme: str, processor: AsyncMock):
    _, batch_id = _originate_and_batch(db, processor, _approve(db, "inv_1", acme))
    payload = _origination(db, processor).close_batch(batch_id)

    _, next_batch = _originate_and_batch(db, processor, _approve(db, "inv_2", acme))

    assert next_batch != batch_id
    assert payload.payment_count == 1
    assert BatchRepository(db).require(batch_id).status == BatchStatus.CLOSED


async def test_submit_batch_success(db: Session, acme: str, processor: AsyncMock):
    """Test batch and members become submitted together"""
    p1, batch_id = _originate_and_batch(db, processor, _approve(db, "inv_1", acme))
    p2, _ = _originate_and_batch(db, processor, _approve(db, "inv_2", acme, 25000))

    batch = await _origination(db, processor).submit_batch(batch_id)

    assert batch.status == BatchStatus.SUBMITTED
    assert batch.external_reference == "ach_ref_0001"
    payload = processor.submit_batch.await_args.args[0]
    assert [line.payment_id for line in payload.lines] == [p1, p2]
    assert payload.total_cents == 30000
    payments = PaymentService(db)
    assert payments.get(p1).status == PaymentStatus.SUBMITTED
    assert payments.get(p2).status == PaymentStatus.SUBMITTED


async def test_submit_batch_failure_leaves_payments_unsubmitted(db: Session, acme: str, processor: AsyncMock):
    """Test a refused submission keeps every payment originated and the batch retryable"""
    payment_id, batch_id = _originate_and_batch(db, processor, _approve(db, "inv_1", acme))
    processor.submit_batch.side_effect = GatewaySubmissionError("processor unavailable")

    with pytest.raises(GatewaySubmissionError):
        await _origination(db, processor).submit_batch(batch_id)

    batch = BatchRepository(db).require(batch_id)
    assert batch.status == BatchStatus.CLOSED
    assert batch.submission_attempts == 1
    assert batch.last_error == "processor unavailable"
    assert PaymentService(db).get(payment_id).status == PaymentStatus.ORIGINATED

    processor.submit_batch.side_effect = None
    batch = await _origination(db, processor).submit_batch(batch_id)

    assert batch.status == BatchStatus.SUBMITTED
    assert batch.submission_attempts == 2
    assert PaymentService(db).get(payment_id).status == PaymentStatus.SUBMITTED


def _alerts(name: str) -> float:
    return REGISTRY.get_sample_value("receivables_operational_alerts_total", {"alert": name}) or 0.0


async def test_failure_record_conflict_keeps_gateway_error(db: Session, acme: str, processor: AsyncMock):
    """Test a lost write while noting the refusal does not replace the processor's error"""
    _, batch_id = _originate_and_batch(db, processor, _approve(db, "inv_1", acme))
    processor.submit_batch.side_effect = GatewaySubmissionError("processor unavailable")
    conflict = ConcurrentModificationError(f"Batch {batch_id} was modified concurrently")

    with patch.object(BatchRepository, "save", side_effect=[None, conflict]):
        with pytest.raises(GatewaySubmissionError, match="processor unavailable"):
            await _origination(db, processor).submit_batch(batch_id)

    assert BatchRepository(db).require(batch_id).submission_attempts == 0


async def test_accepted_batch_not_recorded_alerts(db: Session, acme: str, processor: AsyncMock):
    """Test an accepted batch whose recording fails is alerted, and so are early processor updates"""
    payment_id, batch_id = _originate_and_batch(db, processor, _approve(db, "inv_1", acme))
    not_recorded = _alerts("accepted_batch_not_recorded")
    early_update = _alerts("notification_before_submission_recorded")

    with patch.object(PaymentRepository, "save", side_effect=ConcurrentModificationError("Payment modified concurrently")):
        with pytest.raises(ConcurrentModificationError):
            await _origination(db, processor).submit_batch(batch_id)

    assert _alerts("accepted_batch_not_recorded") == not_recorded + 1
    assert BatchRepository(db).require(batch_id).status == BatchStatus.CLOSED
    assert PaymentService(db).get(payment_id).status == PaymentStatus.ORIGINATED

    outcome = GatewayNotificationService(db, clock=clock).handle_status_notification(payment_id, PaymentStatus.PROCESSING)

    assert outcome == NotificationOutcome.DISCARDED_INVALID
    assert _alerts("notification_before_submission_recorded") == early_update + 1

    batch = await _origination(db, processor).submit_batch(batch_id)
    assert batch.status == BatchStatus.SUBMITTED
    assert processor.submit_batch.await_args.args[0].batch_id == batch_id



async def test_submit_empty_batch_refused(db: Session, acme: str, processor: AsyncMock):
    batch = open_batch(acme, EFFECTIVE, NOW)
    BatchRepository(db).add(batch)
    db.commit()

    with pytest.raises(EmptyBatchError):
        await _origination(db, processor).submit_batch(batch.id)

    processor.submit_batch.assert_not_awaited()


async def test_submit_due_batches(db: Session, acme: str, processor: AsyncMock):
    """Test only batches inside the settlement lead time are submitted"""
    _, batch_id = _originate_and_batch(db, processor, _approve(db, "inv_1", acme))
    origination = _origination(db, processor)

    assert await origination.submit_due_batches(date(2026, 2, 26)) == {}
    assert await origination.submit_due_batches(date(2026, 3, 2)) == {batch_id: "submitted"}
    assert await origination.submit_due_batches(date(2026, 3, 2)) == {}


async def test_submit_due_batches_reports_failures(db: Session, acme: str, processor: AsyncMock):
    _, batch_id = _originate_and_batch(db, processor, _approve(db, "inv_1", acme))
    processor.submit_batch.side_effect = GatewaySubmissionError("timeout")

    results = await _origination(db, processor).submit_due_batches(date(2026, 3, 2))

    assert results[batch_id].startswith("failed")


async def test_scenario_c_resubmission(db: Session, acme: str, processor: AsyncMock):
    """Test a returned payment is replaced, linked, and left unchanged"""
    original_id = await _returned_payment(db, processor, acme)
    payments = PaymentService(db, clock=clock)
    original_before = payments.get(original_id)

    replacement = payments.resubmit(original_id, "acct_acme_corrected", requested_by="ops_jane")

    assert replacement.supersedes_payment_id == original_id
    assert replacement.bank_account_ref == "acct_acme_corrected"
    assert replacement.attempt == 2
    assert replacement.status == PaymentStatus.ORIGINATED
    original_after = payments.get(original_id)
    assert original_after.status == PaymentStatus.RETURNED
    assert original_after.history == original_before.history
    assert original_after.version == original_before.version
    assert payments.superseded_by(original_id) == replacement.id
    assert [p.id for p in payments.list_for_invoice("inv_1")] == [original_id, replacement.id]


async def test_resubmit_twice_refused(db: Session, acme: str, processor: AsyncMock):
    original_id = await _returned_payment(db, processor, acme)
    payments = PaymentService(db, clock=clock)
    payments.resubmit(original_id, "acct_2", requested_by="ops")

    with pytest.raises(ResubmissionNotAllowedError):
        payments.resubmit(original_id, "acct_3", requested_by="ops")


async def test_resubmission_limit(db: Session, acme: str, processor: AsyncMock):
    """Test the invoice's payment attempts are capped"""
    original_id = await _returned_payment(db, processor, acme)
    payments = PaymentService(db, clock=clock, max_attempts=2)
    replacement = payments.resubmit(original_id, "acct_2", requested_by="ops")

    batch_id = _origination(db, processor).add_to_open_batch(replacement.id)
    await _origination(db, processor).submit_batch(batch_id)
    GatewayNotificationService(db, clock=clock).handle_return_notification(replacement.id, "account_closed")

    with pytest.raises(ResubmissionLimitExceededError):
        payments.resubmit(replacement.id, "acct_3", requested_by="ops")

    failed = payments.mark_failed(replacement.id, "account_closed")
    assert failed.status == PaymentStatus.FAILED


def test_resubmit_unreturned_payment_refused(db: Session, acme: str, processor: AsyncMock):
    payment_id, _ = _originate_and_batch(db, processor, _approve(db, "inv_1", acme))

    with pytest.raises(ResubmissionNotAllowedError):
        PaymentService(db).resubmit(payment_id, "acct_2", requested_by="ops")

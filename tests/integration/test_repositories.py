"""Repository tests: optimistic versioning and read query shape"""

import pytest
from datetime import datetime, timezone
from typing import Callable, List
from unittest.mock import AsyncMock
from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker
from receivables_engine.domain import lifecycle
from receivables_engine.domain.exceptions import ConcurrentModificationError
from receivables_engine.domain.models import Decision, PaymentStatus
from receivables_engine.infrastructure.database.repositories import PaymentRepository
from receivables_engine.services.approval_service import ApprovalService
from receivables_engine.services.origination_service import OriginationService

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


def _batched_payments(db: Session, payor_id: str, processor: AsyncMock, count: int) -> List[str]:
    approvals = ApprovalService(db, clock=lambda: NOW)
    origination = OriginationService(db, processor=processor, clock=lambda: NOW, lead_days=1)
    payment_ids = []
    for n in range(count):
        approval = approvals.submit_for_approval(f"inv_{n}", payor_id, 5000)
        approvals.record_action(approval.id, "alice", Decision.APPROVE)
        payment_id = origination.originate(approval.id)
        origination.add_to_open_batch(payment_id)
        payment_ids.append(payment_id)
    return payment_ids


def _statements(session_factory: sessionmaker, read: Callable[[PaymentRepository], list]) -> int:
    issued = []

    def count(conn, cursor, statement, parameters, context, executemany):
        issued.append(statement)

    with session_factory() as db:
        bind = db.get_bind()
        event.listen(bind, "before_cursor_execute", count)
        try:
            payments = read(PaymentRepository(db))
        finally:
            event.remove(bind, "before_cursor_execute", count)
    assert all(payment.batch_id is not None for payment in payments)
    return len(issued)


def test_get_many_query_count_independent_of_size(
    db: Session, session_factory: sessionmaker, acme: str, processor: AsyncMock
):
    """Test batch membership and history load per read, not per payment"""
    payment_ids = _batched_payments(db, acme, processor, 3)

    one = _statements(session_factory, lambda repo: repo.get_many(payment_ids[:1]))
    three = _statements(session_factory, lambda repo: repo.get_many(payment_ids))

    assert three == one


def test_get_many_carries_batch_and_history(
    db: Session, session_factory: sessionmaker, acme: str, processor: AsyncMock
):
    payment_ids = _batched_payments(db, acme, processor, 2)

    with session_factory() as check:
        payments = PaymentRepository(check).get_many(payment_ids)

    assert {payment.id for payment in payments} == set(payment_ids)
    assert len({payment.batch_id for payment in payments}) == 1
    assert all([entry.to_status for entry in payment.history] == [PaymentStatus.ORIGINATED] for payment in payments)


def test_stale_payment_save_conflicts(session_factory: sessionmaker, acme: str, processor: AsyncMock):
    """Test the version column refuses a save based on a payment another session already changed"""
    with session_factory() as setup:
        [payment_id] = _batched_payments(setup, acme, processor, 1)

    with session_factory() as first, session_factory() as second:
        fresh = PaymentRepository(first).require(payment_id)
        stale = PaymentRepository(second).require(payment_id)

        lifecycle.transition(fresh, PaymentStatus.SUBMITTED, NOW)
        PaymentRepository(first).save(fresh)
        first.commit()

        lifecycle.transition(stale, PaymentStatus.SUBMITTED, NOW)
        with pytest.raises(ConcurrentModificationError):
            PaymentRepository(second).save(stale)
        second.rollback()

    with session_factory() as check:
        persisted = PaymentRepository(check).require(payment_id)
        assert [entry.to_status for entry in persisted.history] == [PaymentStatus.ORIGINATED, PaymentStatus.SUBMITTED]

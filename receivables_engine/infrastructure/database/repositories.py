"""Data access layer: maps aggregates to rows and enforces optimistic versioning"""

import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from receivables_engine.domain.events import DomainEvent
from receivables_engine.domain.exceptions import (
    BatchNotFoundError,
    ConcurrentModificationError,
    InvoiceApprovalNotFoundError,
    PaymentNotFoundError,
)
from receivables_engine.domain.models import (
    AmountTier,
    ApprovalChainDefinition,
    ApprovalRule,
    ApprovalSlot,
    ApprovalStatus,
    ApproverAction,
    BatchStatus,
    Decision,
    InvoiceApproval,
    Payment,
    PaymentBatch,
    PaymentStatus,
    StatusTransition,
)
from receivables_engine.infrastructure.database.models import (
    ApprovalRuleRecord,
    ApproverActionRecord,
    DomainEventRecord,
    InvoiceApprovalRecord,
    PayorAccountRecord,
    PaymentBatchMemberRecord,
    PaymentBatchRecord,
    PaymentRecord,
    PaymentTransitionRecord,
)


def flush_or_conflict(db: Session, what: str) -> None:
    """Flush pending writes; a lost version race or unique-key race becomes a conflict"""
    try:
        db.flush()
    except StaleDataError as e:
        raise ConcurrentModificationError(f"{what} was modified concurrently") from e
    except IntegrityError as e:
        raise ConcurrentModificationError(f"{what} conflicts with a concurrent write") from e


class ApprovalRuleRepository:
    """Versioned payor approval rules (read side of Payor Management)"""

    def __init__(self, db: Session):
        self.db = db

    def get_rule(self, payor_id: str, version: Optional[int] = None) -> Optional[ApprovalRule]:
        """Specific rule version, or the latest one when version is None"""
        query = select(ApprovalRuleRecord).where(ApprovalRuleRecord.payor_id == payor_id)
        if version is None:
            query = query.order_by(ApprovalRuleRecord.version.desc()).limit(1)
        else:
            query = query.where(ApprovalRuleRecord.version == version)
        record = self.db.execute(query).scalars().first()
        return self._to_domain(record) if record else None

    def next_version(self, payor_id: str) -> int:
        current = self.db.execute(
            select(func.max(ApprovalRuleRecord.version)).where(ApprovalRuleRecord.payor_id == payor_id)
        ).scalar()
        return (current or 0) + 1

    def add(self, rule: ApprovalRule) -> None:
        self.db.add(
            ApprovalRuleRecord(
                payor_id=rule.payor_id,
                version=rule.version,
                tiers=[
                    {
                        "lower_cents": tier.lower_cents,
                        "upper_cents": tier.upper_cents,
                        "required_approvals": tier.required_approvals,
                        "slot_approvers": [list(approvers) for approvers in tier.slot_approvers],
                    }
                    for tier in rule.tiers
                ],
                created_at=rule.created_at,
            )
        )
        flush_or_conflict(self.db, f"Approval rule v{rule.version} of payor {rule.payor_id}")

    @staticmethod
    def _to_domain(record: ApprovalRuleRecord) -> ApprovalRule:
        return ApprovalRule(
            payor_id=record.payor_id,
            version=record.version,
            tiers=tuple(
                AmountTier(
                    lower_cents=tier["lower_cents"],
                    upper_cents=tier["upper_cents"],
                    required_approvals=tier["required_approvals"],
                    slot_approvers=tuple(tuple(approvers) for approvers in tier["slot_approvers"]),
                )
                for tier in record.tiers
            ),
            created_at=record.created_at,
        )


class PayorAccountRepository:
    """Verified payor bank accounts"""

    def __init__(self, db: Session):
        self.db = db

    def get_account(self, payor_id: str) -> Optional[str]:
        record = self.db.get(PayorAccountRecord, payor_id)
        return record.bank_account_ref if record else None

    def set_account(self, payor_id: str, bank_account_ref: str) -> None:
        record = self.db.get(PayorAccountRecord, payor_id)
        if record is None:
            self.db.add(PayorAccountRecord(payor_id=payor_id, bank_account_ref=bank_account_ref))
        else:
            record.bank_account_ref = bank_account_ref
        flush_or_conflict(self.db, f"Bank account of payor {payor_id}")


class InvoiceApprovalRepository:
    """Repository for InvoiceApproval aggregates"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, approval_id: str) -> Optional[InvoiceApproval]:
        record = self.db.get(InvoiceApprovalRecord, approval_id)
        return self._to_domain(record) if record else None

    def require(self, approval_id: str) -> InvoiceApproval:
        approval = self.get(approval_id)
        if approval is None:
            raise InvoiceApprovalNotFoundError(f"Invoice approval {approval_id} not found")
        return approval

    def get_by_invoice(self, invoice_id: str) -> Optional[InvoiceApproval]:
        record = self.db.execute(
            select(InvoiceApprovalRecord).where(InvoiceApprovalRecord.invoice_id == invoice_id)
        ).scalars().first()
        return self._to_domain(record) if record else None

    def add(self, approval: InvoiceApproval) -> None:
        record = InvoiceApprovalRecord(
            id=approval.id,
            invoice_id=approval.invoice_id,
            payor_id=approval.payor_id,
            amount_cents=approval.amount_cents,
            rule_version=approval.rule_version,
            chain=_chain_to_json(approval.chain),
            created_at=approval.created_at,
        )
        self._copy_state(approval, record)
        self.db.add(record)
        flush_or_conflict(self.db, f"Approval of invoice {approval.invoice_id}")
        approval.version = record.version

    def save(self, approval: InvoiceApproval) -> None:
        record = self.db.get(InvoiceApprovalRecord, approval.id)
        if record is None:
            raise InvoiceApprovalNotFoundError(f"Invoice approval {approval.id} not found")
        self._copy_state(approval, record)
        flush_or_conflict(self.db, f"Approval of invoice {approval.invoice_id}")
        approval.version = record.version

    @staticmethod
    def _copy_state(approval: InvoiceApproval, record: InvoiceApprovalRecord) -> None:
        record.status = approval.status.value
        record.current_slot = approval.current_slot
        record.withdrawn_by = approval.withdrawn_by
        record.withdrawal_reason = approval.withdrawal_reason
        record.updated_at = approval.updated_at
        # Actions are append-only
        for position in range(len(record.actions), len(approval.actions)):
            action = approval.actions[position]
            record.actions.append(
                ApproverActionRecord(
                    position=position,
                    approver_id=action.approver_id,
                    decision=action.decision.value,
                    slot_index=action.slot_index,
                    recorded_at=action.recorded_at,
                )
            )

    @staticmethod
    def _to_domain(record: InvoiceApprovalRecord) -> InvoiceApproval:
        return InvoiceApproval(
            id=record.id,
            invoice_id=record.invoice_id,
            payor_id=record.payor_id,
            amount_cents=record.amount_cents,
            chain=_chain_from_json(record.chain),
            status=ApprovalStatus(record.status),
            current_slot=record.current_slot,
            created_at=record.created_at,
            updated_at=record.updated_at,
            actions=[
                ApproverAction(
                    approver_id=action.approver_id,
                    decision=Decision(action.decision),
                    slot_index=action.slot_index,
                    recorded_at=action.recorded_at,
                )
                for action in record.actions
            ],
            withdrawn_by=record.withdrawn_by,
            withdrawal_reason=record.withdrawal_reason,
            version=record.version,
        )


def _chain_to_json(chain: ApprovalChainDefinition) -> Dict[str, Any]:
    return {
        "payor_id": chain.payor_id,
        "rule_version": chain.rule_version,
        "tier_lower_cents": chain.tier_lower_cents,
        "tier_upper_cents": chain.tier_upper_cents,
        "slots": [list(slot.eligible_approvers) for slot in chain.slots],
    }


def _chain_from_json(data: Dict[str, Any]) -> ApprovalChainDefinition:
    return ApprovalChainDefinition(
        payor_id=data["payor_id"],
        rule_version=data["rule_version"],
        tier_lower_cents=data["tier_lower_cents"],
        tier_upper_cents=data["tier_upper_cents"],
        slots=tuple(
            ApprovalSlot(index=index, eligible_approvers=tuple(approvers))
            for index, approvers in enumerate(data["slots"])
        ),
    )


class PaymentRepository:
    """Repository for Payment aggregates"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, payment_id: str) -> Optional[Payment]:
        record = self.db.get(PaymentRecord, payment_id)
        return self._one(record)

    def require(self, payment_id: str) -> Payment:
        payment = self.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        return payment

    def get_many(self, payment_ids: Sequence[str]) -> List[Payment]:
        if not payment_ids:
            return []
        records = self.db.execute(select(PaymentRecord).where(PaymentRecord.id.in_(list(payment_ids)))).scalars().all()
        return self._many(records)

    def get_first_for_approval(self, invoice_approval_id: str) -> Optional[Payment]:
        record = self.db.execute(
            select(PaymentRecord).where(
                PaymentRecord.invoice_approval_id == invoice_approval_id,
                PaymentRecord.attempt == 1,
            )
        ).scalars().first()
        return self._one(record)

    def get_replacement(self, payment_id: str) -> Optional[Payment]:
        """Payment that superseded the given one through resubmission"""
        record = self.db.execute(
            select(PaymentRecord).where(PaymentRecord.supersedes_payment_id == payment_id)
        ).scalars().first()
        return self._one(record)

    def list_for_invoice(self, invoice_id: str) -> List[Payment]:
        records = self.db.execute(
            select(PaymentRecord).where(PaymentRecord.invoice_id == invoice_id).order_by(PaymentRecord.attempt)
        ).scalars().all()
        return self._many(records)

    def add(self, payment: Payment) -> None:
        record = PaymentRecord(
            id=payment.id,
            invoice_id=payment.invoice_id,
            invoice_approval_id=payment.invoice_approval_id,
            payor_id=payment.payor_id,
            amount_cents=payment.amount_cents,
            effective_date=payment.effective_date,
            bank_account_ref=payment.bank_account_ref,
            attempt=payment.attempt,
            supersedes_payment_id=payment.supersedes_payment_id,
            created_at=payment.created_at,
        )
        self._copy_state(payment, record)
        self.db.add(record)
        flush_or_conflict(self.db, f"Payment {payment.id}")
        payment.version = record.version

    def save(self, payment: Payment) -> None:
        record = self.db.get(PaymentRecord, payment.id)
        if record is None:
            raise PaymentNotFoundError(f"Payment {payment.id} not found")
        self._copy_state(payment, record)
        flush_or_conflict(self.db, f"Payment {payment.id}")
        payment.version = record.version

    @staticmethod
    def _copy_state(payment: Payment, record: PaymentRecord) -> None:
        record.status = payment.status.value
        record.return_reason_code = payment.return_reason_code
        for position in range(len(record.history), len(payment.history)):
            entry = payment.history[position]
            record.history.append(
                PaymentTransitionRecord(
                    position=position,
                    from_status=entry.from_status.value if entry.from_status else None,
                    to_status=entry.to_status.value,
                    at=entry.at,
                    reason_code=entry.reason_code,
                )
            )

    def _one(self, record: Optional[PaymentRecord]) -> Optional[Payment]:
        return self._many([record])[0] if record else None

    def _many(self, records: Sequence[PaymentRecord]) -> List[Payment]:
        """Translate records, loading batch membership for all of them in one query"""
        batch_ids = self._batch_ids([record.id for record in records])
        return [self._to_domain(record, batch_ids.get(record.id)) for record in records]

    def _batch_ids(self, payment_ids: Sequence[str]) -> Dict[str, str]:
        if not payment_ids:
            return {}
        rows = self.db.execute(
            select(PaymentBatchMemberRecord.payment_id, PaymentBatchMemberRecord.batch_id).where(
                PaymentBatchMemberRecord.payment_id.in_(list(payment_ids))
            )
        ).all()
        return {payment_id: batch_id for payment_id, batch_id in rows}

    @staticmethod
    def _to_domain(record: PaymentRecord, batch_id: Optional[str]) -> Payment:
        return Payment(
            id=record.id,
            invoice_id=record.invoice_id,
            invoice_approval_id=record.invoice_approval_id,
            payor_id=record.payor_id,
            amount_cents=record.amount_cents,
            effective_date=record.effective_date,
            bank_account_ref=record.bank_account_ref,
            status=PaymentStatus(record.status),
            created_at=record.created_at,
            history=[
                StatusTransition(
                    from_status=PaymentStatus(entry.from_status) if entry.from_status else None,
                    to_status=PaymentStatus(entry.to_status),
                    at=entry.at,
                    reason_code=entry.reason_code,
                )
                for entry in record.history
            ],
            batch_id=batch_id,
            supersedes_payment_id=record.supersedes_payment_id,
            attempt=record.attempt,
            return_reason_code=record.return_reason_code,
            version=record.version,
        )


class BatchRepository:
    """Repository for PaymentBatch aggregates"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, batch_id: str) -> Optional[PaymentBatch]:
        record = self.db.get(PaymentBatchRecord, batch_id)
        return self._to_domain(record) if record else None

    def require(self, batch_id: str) -> PaymentBatch:
        batch = self.get(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        return batch

    def get_open(self, payor_id: str, effective_date: date) -> Optional[PaymentBatch]:
        record = self.db.execute(
            select(PaymentBatchRecord).where(PaymentBatchRecord.open_key == _open_key(payor_id, effective_date))
        ).scalars().first()
        return self._to_domain(record) if record else None

    def list_unsubmitted_due(self, cutoff: date) -> List[PaymentBatch]:
        """Open or closed batches whose effective date is on or before cutoff"""
        records = self.db.execute(
            select(PaymentBatchRecord)
            .where(
                PaymentBatchRecord.status.in_([BatchStatus.OPEN.value, BatchStatus.CLOSED.value]),
                PaymentBatchRecord.effective_date <= cutoff,
            )
            .order_by(PaymentBatchRecord.effective_date, PaymentBatchRecord.created_at)
        ).scalars().all()
        return [self._to_domain(record) for record in records]

    def add(self, batch: PaymentBatch) -> None:
        record = PaymentBatchRecord(
            id=batch.id,
            payor_id=batch.payor_id,
            effective_date=batch.effective_date,
            created_at=batch.created_at,
        )
        self._copy_state(batch, record, batch.created_at)
        self.db.add(record)
        flush_or_conflict(self.db, f"Open batch for payor {batch.payor_id} on {batch.effective_date}")
        batch.version = record.version

    def save(self, batch: PaymentBatch, at: datetime) -> None:
        record = self.db.get(PaymentBatchRecord, batch.id)
        if record is None:
            raise BatchNotFoundError(f"Batch {batch.id} not found")
        self._copy_state(batch, record, at)
        flush_or_conflict(self.db, f"Batch {batch.id}")
        batch.version = record.version

    @staticmethod
    def _copy_state(batch: PaymentBatch, record: PaymentBatchRecord, at: datetime) -> None:
        record.status = batch.status.value
        record.open_key = _open_key(batch.payor_id, batch.effective_date) if batch.status == BatchStatus.OPEN else None
        record.updated_at = at
        record.closed_at = batch.closed_at
        record.submitted_at = batch.submitted_at
        record.external_reference = batch.external_reference
        record.submission_attempts = batch.submission_attempts
        record.last_error = batch.last_error
        for position in range(len(record.members), len(batch.payment_ids)):
            record.members.append(PaymentBatchMemberRecord(position=position, payment_id=batch.payment_ids[position]))

    @staticmethod
    def _to_domain(record: PaymentBatchRecord) -> PaymentBatch:
        return PaymentBatch(
            id=record.id,
            payor_id=record.payor_id,
            effective_date=record.effective_date,
            status=BatchStatus(record.status),
            created_at=record.created_at,
            payment_ids=[member.payment_id for member in record.members],
            closed_at=record.closed_at,
            submitted_at=record.submitted_at,
            external_reference=record.external_reference,
            submission_attempts=record.submission_attempts,
            last_error=record.last_error,
            version=record.version,
        )


def _open_key(payor_id: str, effective_date: date) -> str:
    return f"{payor_id}|{effective_date.isoformat()}"


class EventOutbox:
    """Transactional outbox for domain events"""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"

    def __init__(self, db: Session):
        self.db = db

    def record(self, events: Sequence[DomainEvent]) -> None:
        """Stage events in the current transaction"""
        for event in events:
            self.db.add(
                DomainEventRecord(
                    event_id=str(uuid.uuid4()),
                    event_type=event.event_type,
                    aggregate_id=event.aggregate_id,
                    payload=event.to_payload(),
                    status=self.PENDING,
                    attempts=0,
                    created_at=event.occurred_at,
                )
            )

    def pending(self, limit: int) -> List[DomainEventRecord]:
        return list(
            self.db.execute(
                select(DomainEventRecord)
                .where(DomainEventRecord.status == self.PENDING)
                .order_by(DomainEventRecord.sequence)
                .limit(limit)
            ).scalars()
        )

    def get(self, event_id: str) -> Optional[DomainEventRecord]:
        return self.db.execute(
            select(DomainEventRecord).where(DomainEventRecord.event_id == event_id)
        ).scalars().first()

    def list_for_aggregate(self, aggregate_id: str) -> List[DomainEventRecord]:
        return list(
            self.db.execute(
                select(DomainEventRecord)
                .where(DomainEventRecord.aggregate_id == aggregate_id)
                .order_by(DomainEventRecord.sequence)
            ).scalars()
        )

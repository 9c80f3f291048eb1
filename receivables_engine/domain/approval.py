"""Approval chain state machine.

An InvoiceApproval moves through awaiting_slot[0..n-1] and ends approved,
rejected or withdrawn. Slots are satisfied strictly in order and no person
may fill two slots of one chain. Every function here validates first and
mutates only once all checks pass, so a rejected call leaves the aggregate
untouched.
"""

import uuid
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from receivables_engine.domain.events import (
    ApprovalChainCompleted,
    ApproverNotificationRequested,
    DomainEvent,
    InvoiceApprovalWithdrawn,
    InvoiceApprovedByPrimaryApprover,
    InvoiceApprovedBySlotApprover,
    InvoiceRejectedByApprover,
)
from receivables_engine.domain.exceptions import (
    ChainAlreadyTerminalError,
    DuplicateApproverError,
    IneligibleApproverError,
    InvalidAmountError,
    InvalidTransitionError,
)
from receivables_engine.domain.models import (
    ApprovalChainDefinition,
    ApprovalStatus,
    ApproverAction,
    Decision,
    InvoiceApproval,
)
from receivables_engine.domain.rules import has_distinct_assignment

APPROVAL_TRANSITIONS: Dict[ApprovalStatus, FrozenSet[ApprovalStatus]] = {
    # awaiting_slot[i] -> awaiting_slot[i+1] stays within AWAITING_SLOT
    ApprovalStatus.AWAITING_SLOT: frozenset({
        ApprovalStatus.AWAITING_SLOT,
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.WITHDRAWN,
    }),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
    ApprovalStatus.WITHDRAWN: frozenset(),
}

TERMINAL_APPROVAL_STATUSES: FrozenSet[ApprovalStatus] = frozenset(
    status for status, targets in APPROVAL_TRANSITIONS.items() if not targets
)


def start_approval(
    invoice_id: str,
    payor_id: str,
    amount_cents: int,
    chain: ApprovalChainDefinition,
    at: datetime,
    approval_id: Optional[str] = None,
) -> Tuple[InvoiceApproval, List[DomainEvent]]:
    """Create an approval awaiting its first slot and ask that slot's approvers"""
    if amount_cents < 0:
        raise InvalidAmountError(f"Amount must be non-negative, got {amount_cents}")

    approval = InvoiceApproval(
        id=approval_id or str(uuid.uuid4()),
        invoice_id=invoice_id,
        payor_id=payor_id,
        amount_cents=amount_cents,
        chain=chain,
        status=ApprovalStatus.AWAITING_SLOT,
        current_slot=0,
        created_at=at,
        updated_at=at,
    )
    return approval, [_notification_for_slot(approval, 0, at)]


def record_action(
    approval: InvoiceApproval,
    approver_id: str,
    decision: Decision,
    at: datetime,
) -> List[DomainEvent]:
    """
    Record an approver's decision on the slot currently awaiting one.

    Raises:
        ChainAlreadyTerminalError: Chain is approved, rejected or withdrawn
        DuplicateApproverError: Approver already acted on an earlier slot
        IneligibleApproverError: Approver may not fill the current slot, or
            approving would leave a later slot with no distinct approver
    """
    if approval.is_terminal:
        raise ChainAlreadyTerminalError(
            f"Invoice {approval.invoice_id} approval is already {approval.state_label}"
        )

    slot_index = approval.current_slot
    slot = approval.chain.slots[slot_index]

    if approver_id in approval.acted_approvers():
        raise DuplicateApproverError(
            f"{approver_id} already acted on invoice {approval.invoice_id}; slot {slot_index} needs a different approver"
        )
    if not slot.is_eligible(approver_id):
        raise IneligibleApproverError(
            f"{approver_id} is not eligible for slot {slot_index} of invoice {approval.invoice_id}"
        )
    if decision == Decision.APPROVE and not _later_slots_fillable(approval, slot_index, approver_id):
        raise IneligibleApproverError(
            f"{approver_id} approving slot {slot_index} of invoice {approval.invoice_id} "
            f"would leave later slots without distinct approvers"
        )

    if decision == Decision.REJECT:
        _transition(approval, ApprovalStatus.REJECTED, None, at)
        events: List[DomainEvent] = [
            InvoiceRejectedByApprover(
                aggregate_id=approval.id,
                occurred_at=at,
                invoice_id=approval.invoice_id,
                approver_id=approver_id,
                slot_index=slot_index,
            )
        ]
    elif slot_index == approval.chain.slot_count - 1:
        _transition(approval, ApprovalStatus.APPROVED, None, at)
        events = [
            ApprovalChainCompleted(
                aggregate_id=approval.id,
                occurred_at=at,
                invoice_id=approval.invoice_id,
                payor_id=approval.payor_id,
                amount_cents=approval.amount_cents,
            )
        ]
    else:
        next_slot = slot_index + 1
        _transition(approval, ApprovalStatus.AWAITING_SLOT, next_slot, at)
        event_class = InvoiceApprovedByPrimaryApprover if slot_index == 0 else InvoiceApprovedBySlotApprover
        events = [
            event_class(
                aggregate_id=approval.id,
                occurred_at=at,
                invoice_id=approval.invoice_id,
                approver_id=approver_id,
                slot_index=slot_index,
            ),
            _notification_for_slot(approval, next_slot, at),
        ]

    approval.actions.append(
        ApproverAction(approver_id=approver_id, decision=decision, slot_index=slot_index, recorded_at=at)
    )
    return events


def withdraw(approval: InvoiceApproval, requested_by: str, reason: str, at: datetime) -> List[DomainEvent]:
    """Force an in-flight chain into the withdrawn terminal state (audited)"""
    if approval.is_terminal:
        raise ChainAlreadyTerminalError(
            f"Invoice {approval.invoice_id} approval is already {approval.state_label}"
        )

    _transition(approval, ApprovalStatus.WITHDRAWN, None, at)
    approval.withdrawn_by = requested_by
    approval.withdrawal_reason = reason
    return [
        InvoiceApprovalWithdrawn(
            aggregate_id=approval.id,
            occurred_at=at,
            invoice_id=approval.invoice_id,
            requested_by=requested_by,
            reason=reason,
        )
    ]


def _transition(
    approval: InvoiceApproval,
    new_status: ApprovalStatus,
    next_slot: Optional[int],
    at: datetime,
) -> None:
    if new_status not in APPROVAL_TRANSITIONS[approval.status]:
        raise InvalidTransitionError(
            f"Invoice {approval.invoice_id} approval cannot move from {approval.state_label} to {new_status.value}"
        )
    approval.status = new_status
    approval.current_slot = next_slot
    approval.updated_at = at


def _later_slots_fillable(approval: InvoiceApproval, slot_index: int, approver_id: str) -> bool:
    """Slots after slot_index can still get distinct approvers once approver_id takes slot_index"""
    used = set(approval.acted_approvers()) | {approver_id}
    remaining = [
        [candidate for candidate in slot.eligible_approvers if candidate not in used]
        for slot in approval.chain.slots[slot_index + 1:]
    ]
    return has_distinct_assignment(remaining)


def _notification_for_slot(approval: InvoiceApproval, slot_index: int, at: datetime) -> ApproverNotificationRequested:
    return ApproverNotificationRequested(
        aggregate_id=approval.id,
        occurred_at=at,
        invoice_id=approval.invoice_id,
        payor_id=approval.payor_id,
        slot_index=slot_index,
        eligible_approvers=approval.chain.slots[slot_index].eligible_approvers,
    )

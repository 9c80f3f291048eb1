"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import List, Optional, Tuple


class Decision(str, Enum):
    """Approver decision on a chain slot"""

    APPROVE = "approve"
    REJECT = "reject"


class ApprovalStatus(str, Enum):
    """InvoiceApproval lifecycle; AWAITING_SLOT is qualified by current_slot"""

    AWAITING_SLOT = "awaiting_slot"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class PaymentStatus(str, Enum):
    """Payment lifecycle from origination through settlement"""

    ORIGINATED = "originated"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    SETTLED = "settled"
    RETURNED = "returned"
    FAILED = "failed"


class BatchStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    SUBMITTED = "submitted"


class NotificationOutcome(str, Enum):
    """What the engine did with an inbound gateway notification"""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    DISCARDED_UNKNOWN = "discarded_unknown"
    DISCARDED_INVALID = "discarded_invalid"
    RECORDED_AFTER_SETTLEMENT = "recorded_after_settlement"


@dataclass(frozen=True)
class AmountTier:
    """Half-open amount range [lower_cents, upper_cents) and who must approve it"""

    lower_cents: int
    upper_cents: Optional[int]  # None = unbounded
    required_approvals: int
    slot_approvers: Tuple[Tuple[str, ...], ...]  # eligible approvers per slot, in order

    def contains(self, amount_cents: int) -> bool:
        if amount_cents < self.lower_cents:
            return False
        return self.upper_cents is None or amount_cents < self.upper_cents


@dataclass(frozen=True)
class ApprovalRule:
    """Versioned amount-tier configuration owned by a payor"""

    payor_id: str
    version: int
    tiers: Tuple[AmountTier, ...]
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ApprovalSlot:
    """One required approval in a chain"""

    index: int
    eligible_approvers: Tuple[str, ...]

    @property
    def designated_approver(self) -> Optional[str]:
        """Set when exactly one person may fill the slot"""
        if len(self.eligible_approvers) == 1:
            return self.eligible_approvers[0]
        return None

    def is_eligible(self, approver_id: str) -> bool:
        return approver_id in self.eligible_approvers


@dataclass(frozen=True)
class ApprovalChainDefinition:
    """Snapshot of the rule tier an invoice was routed through"""

    payor_id: str
    rule_version: int
    tier_lower_cents: int
    tier_upper_cents: Optional[int]
    slots: Tuple[ApprovalSlot, ...]

    @property
    def slot_count(self) -> int:
        return len(self.slots)


@dataclass
class ApproverAction:
    """Recorded decision of one approver on one slot"""

    approver_id: str
    decision: Decision
    slot_index: int
    recorded_at: datetime


@dataclass
class InvoiceApproval:
    """Aggregate root tracking one invoice through its approval chain"""

    id: str
    invoice_id: str
    payor_id: str
    amount_cents: int
    chain: ApprovalChainDefinition
    status: ApprovalStatus
    current_slot: Optional[int]
    created_at: datetime
    updated_at: datetime
    actions: List[ApproverAction] = field(default_factory=list)
    withdrawn_by: Optional[str] = None
    withdrawal_reason: Optional[str] = None
    version: int = 0  # 0 until first persisted

    @property
    def rule_version(self) -> int:
        return self.chain.rule_version

    @property
    def is_terminal(self) -> bool:
        return self.status != ApprovalStatus.AWAITING_SLOT

    @property
    def state_label(self) -> str:
        """e.g. awaiting_slot[1], approved"""
        if self.status == ApprovalStatus.AWAITING_SLOT:
            return f"awaiting_slot[{self.current_slot}]"
        return self.status.value

    def acted_approvers(self) -> List[str]:
        return [action.approver_id for action in self.actions]


@dataclass
class StatusTransition:
    """Entry of a payment's append-only status history"""

    from_status: Optional[PaymentStatus]
    to_status: PaymentStatus
    at: datetime
    reason_code: Optional[str] = None


@dataclass
class Payment:
    """Aggregate root for a single originated payment instruction"""

    id: str
    invoice_id: str
    invoice_approval_id: str
    payor_id: str
    amount_cents: int
    effective_date: date
    bank_account_ref: str
    status: PaymentStatus
    created_at: datetime
    history: List[StatusTransition] = field(default_factory=list)
    batch_id: Optional[str] = None
    supersedes_payment_id: Optional[str] = None
    attempt: int = 1
    return_reason_code: Optional[str] = None
    version: int = 0


@dataclass
class PaymentBatch:
    """Aggregate root grouping payments for one joint submission"""

    id: str
    payor_id: str
    effective_date: date
    status: BatchStatus
    created_at: datetime
    payment_ids: List[str] = field(default_factory=list)
    closed_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    external_reference: Optional[str] = None
    submission_attempts: int = 0
    last_error: Optional[str] = None
    version: int = 0


@dataclass(frozen=True)
class BatchPaymentLine:
    """Single payment instruction inside a submission payload"""

    payment_id: str
    invoice_id: str
    amount_cents: int
    bank_account_ref: str


@dataclass(frozen=True)
class BatchPayload:
    """Everything the payment processor needs to execute a closed batch"""

    batch_id: str
    payor_id: str
    effective_date: date
    lines: Tuple[BatchPaymentLine, ...]

    @property
    def total_cents(self) -> int:
        return sum(line.amount_cents for line in self.lines)

    @property
    def payment_count(self) -> int:
        return len(self.lines)

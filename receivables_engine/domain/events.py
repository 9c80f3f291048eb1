"""Domain events raised by aggregate state changes.

Events are written to the outbox in the same transaction as the change that
raised them and delivered to handlers at least once.
"""

from dataclasses import dataclass, fields
from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple


@dataclass(frozen=True)
class DomainEvent:
    """Base event; aggregate_id is the id of the aggregate that raised it"""

    aggregate_id: str
    occurred_at: datetime

    event_type: ClassVar[str] = "DomainEvent"

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe dict of the event fields"""
        return {f.name: _jsonable(getattr(self, f.name)) for f in fields(self)}


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (tuple, list)):
        return [_jsonable(item) for item in value]
    return value


# Approval chain


@dataclass(frozen=True)
class ApproverNotificationRequested(DomainEvent):
    """Trigger for the notification collaborator: a slot needs a decision"""

    invoice_id: str
    payor_id: str
    slot_index: int
    eligible_approvers: Tuple[str, ...]

    event_type: ClassVar[str] = "ApproverNotificationRequested"


@dataclass(frozen=True)
class InvoiceApprovedByPrimaryApprover(DomainEvent):
    invoice_id: str
    approver_id: str
    slot_index: int

    event_type: ClassVar[str] = "InvoiceApprovedByPrimaryApprover"


@dataclass(frozen=True)
class InvoiceApprovedBySlotApprover(DomainEvent):
    invoice_id: str
    approver_id: str
    slot_index: int

    event_type: ClassVar[str] = "InvoiceApprovedBySlotApprover"


@dataclass(frozen=True)
class InvoiceRejectedByApprover(DomainEvent):
    invoice_id: str
    approver_id: str
    slot_index: int

    event_type: ClassVar[str] = "InvoiceRejectedByApprover"


@dataclass(frozen=True)
class ApprovalChainCompleted(DomainEvent):
    invoice_id: str
    payor_id: str
    amount_cents: int

    event_type: ClassVar[str] = "ApprovalChainCompleted"


@dataclass(frozen=True)
class InvoiceApprovalWithdrawn(DomainEvent):
    invoice_id: str
    requested_by: str
    reason: str

    event_type: ClassVar[str] = "InvoiceApprovalWithdrawn"


# Payments


@dataclass(frozen=True)
class PaymentOriginated(DomainEvent):
    invoice_id: str
    payor_id: str
    amount_cents: int
    effective_date: date
    attempt: int
    supersedes_payment_id: Optional[str]

    event_type: ClassVar[str] = "PaymentOriginated"


@dataclass(frozen=True)
class PaymentResubmitted(DomainEvent):
    """aggregate_id is the replacement payment"""

    invoice_id: str
    superseded_payment_id: str
    attempt: int
    requested_by: str

    event_type: ClassVar[str] = "PaymentResubmitted"


@dataclass(frozen=True)
class PaymentStatusChanged(DomainEvent):
    invoice_id: str
    from_status: str
    to_status: str

    event_type: ClassVar[str] = "PaymentStatusChanged"


@dataclass(frozen=True)
class PaymentReturned(DomainEvent):
    invoice_id: str
    payor_id: str
    reason_code: str

    event_type: ClassVar[str] = "PaymentReturned"


@dataclass(frozen=True)
class PaymentReturnedAfterSettlement(DomainEvent):
    """Return reported for a settled payment; the payment itself is unchanged"""

    invoice_id: str
    payor_id: str
    reason_code: str

    event_type: ClassVar[str] = "PaymentReturnedAfterSettlement"


@dataclass(frozen=True)
class PaymentFailed(DomainEvent):
    invoice_id: str
    reason_code: str

    event_type: ClassVar[str] = "PaymentFailed"


@dataclass(frozen=True)
class PaymentBatchSubmitted(DomainEvent):
    payor_id: str
    external_reference: str
    payment_ids: Tuple[str, ...]

    event_type: ClassVar[str] = "PaymentBatchSubmitted"


# Status-sync events Invoicing subscribes to
INVOICING_EVENT_TYPES = frozenset({
    InvoiceApprovedByPrimaryApprover.event_type,
    InvoiceRejectedByApprover.event_type,
    ApprovalChainCompleted.event_type,
    InvoiceApprovalWithdrawn.event_type,
})

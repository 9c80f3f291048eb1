"""Pydantic schemas for API request/response validation"""

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from receivables_engine.domain.models import (
    AmountTier,
    ApprovalRule,
    Decision,
    InvoiceApproval,
    NotificationOutcome,
    Payment,
    PaymentBatch,
)


# Payor configuration


class TierSchema(BaseModel):
    """One amount tier; give either one approver list per slot or a shared list"""

    lower_cents: int = Field(..., ge=0)
    upper_cents: Optional[int] = Field(None, gt=0, description="Exclusive upper bound; null = unbounded")
    required_approvals: int = Field(..., ge=1)
    slot_approvers: Optional[List[List[str]]] = None
    approvers: Optional[List[str]] = Field(None, description="Eligible for every slot")

    @model_validator(mode="after")
    def one_approver_form(self) -> "TierSchema":
        if (self.slot_approvers is None) == (self.approvers is None):
            raise ValueError("give exactly one of slot_approvers or approvers")
        return self

    def to_domain(self) -> AmountTier:
        if self.slot_approvers is not None:
            slots = tuple(tuple(approvers) for approvers in self.slot_approvers)
        else:
            slots = tuple(tuple(self.approvers) for _ in range(self.required_approvals))
        return AmountTier(
            lower_cents=self.lower_cents,
            upper_cents=self.upper_cents,
            required_approvals=self.required_approvals,
            slot_approvers=slots,
        )


class ApprovalRuleRequest(BaseModel):
    """Body for PUT /v1/payors/{payor_id}/approval-rule"""

    tiers: List[TierSchema] = Field(..., min_length=1)


class TierResponse(BaseModel):
    lower_cents: int
    upper_cents: Optional[int]
    required_approvals: int
    slot_approvers: List[List[str]]


class ApprovalRuleResponse(BaseModel):
    payor_id: str
    version: int
    tiers: List[TierResponse]

    @classmethod
    def from_domain(cls, rule: ApprovalRule) -> "ApprovalRuleResponse":
        return cls(
            payor_id=rule.payor_id,
            version=rule.version,
            tiers=[
                TierResponse(
                    lower_cents=tier.lower_cents,
                    upper_cents=tier.upper_cents,
                    required_approvals=tier.required_approvals,
                    slot_approvers=[list(approvers) for approvers in tier.slot_approvers],
                )
                for tier in rule.tiers
            ],
        )


class BankAccountRequest(BaseModel):
    bank_account_ref: str = Field(..., min_length=1)


class BankAccountResponse(BaseModel):
    payor_id: str
    bank_account_ref: str


# Approvals


class SubmitForApprovalRequest(BaseModel):
    """Body for POST /v1/approvals (from Invoicing)"""

    invoice_id: str = Field(..., min_length=1)
    payor_id: str = Field(..., min_length=1)
    amount_cents: int = Field(..., ge=0, description="Invoice amount in cents")
    rule_version: Optional[int] = Field(None, ge=1, description="Defaults to the payor's active rule")


class ApproverActionRequest(BaseModel):
    approver_id: str = Field(..., min_length=1)
    decision: Decision
    expected_version: Optional[int] = Field(None, ge=1)


class WithdrawRequest(BaseModel):
    requested_by: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    expected_version: Optional[int] = Field(None, ge=1)


class SlotSchema(BaseModel):
    index: int
    eligible_approvers: List[str]
    designated_approver: Optional[str] = None


class ActionSchema(BaseModel):
    approver_id: str
    decision: Decision
    slot_index: int
    recorded_at: datetime


class InvoiceApprovalResponse(BaseModel):
    approval_id: str
    invoice_id: str
    payor_id: str
    amount_cents: int
    rule_version: int
    status: str
    state: str = Field(..., description="e.g. awaiting_slot[1], approved")
    current_slot: Optional[int]
    slots: List[SlotSchema]
    actions: List[ActionSchema]
    withdrawn_by: Optional[str] = None
    version: int

    @classmethod
    def from_domain(cls, approval: InvoiceApproval) -> "InvoiceApprovalResponse":
        return cls(
            approval_id=approval.id,
            invoice_id=approval.invoice_id,
            payor_id=approval.payor_id,
            amount_cents=approval.amount_cents,
            rule_version=approval.rule_version,
            status=approval.status.value,
            state=approval.state_label,
            current_slot=approval.current_slot,
            slots=[
                SlotSchema(
                    index=slot.index,
                    eligible_approvers=list(slot.eligible_approvers),
                    designated_approver=slot.designated_approver,
                )
                for slot in approval.chain.slots
            ],
            actions=[
                ActionSchema(
                    approver_id=action.approver_id,
                    decision=action.decision,
                    slot_index=action.slot_index,
                    recorded_at=action.recorded_at,
                )
                for action in approval.actions
            ],
            withdrawn_by=approval.withdrawn_by,
            version=approval.version,
        )


# Payments and batches


class StatusTransitionSchema(BaseModel):
    from_status: Optional[str]
    to_status: str
    at: datetime
    reason_code: Optional[str] = None


class PaymentResponse(BaseModel):
    payment_id: str
    invoice_id: str
    payor_id: str
    amount_cents: int
    effective_date: date
    status: str
    attempt: int
    batch_id: Optional[str] = None
    supersedes_payment_id: Optional[str] = None
    superseded_by_payment_id: Optional[str] = None
    return_reason_code: Optional[str] = None
    history: List[StatusTransitionSchema]

    @classmethod
    def from_domain(cls, payment: Payment, superseded_by: Optional[str] = None) -> "PaymentResponse":
        return cls(
            payment_id=payment.id,
            invoice_id=payment.invoice_id,
            payor_id=payment.payor_id,
            amount_cents=payment.amount_cents,
            effective_date=payment.effective_date,
            status=payment.status.value,
            attempt=payment.attempt,
            batch_id=payment.batch_id,
            supersedes_payment_id=payment.supersedes_payment_id,
            superseded_by_payment_id=superseded_by,
            return_reason_code=payment.return_reason_code,
            history=[
                StatusTransitionSchema(
                    from_status=entry.from_status.value if entry.from_status else None,
                    to_status=entry.to_status.value,
                    at=entry.at,
                    reason_code=entry.reason_code,
                )
                for entry in payment.history
            ],
        )


class ResubmitRequest(BaseModel):
    bank_account_ref: str = Field(..., min_length=1, description="Replacement bank account reference")
    requested_by: str = Field(..., min_length=1)


class FailPaymentRequest(BaseModel):
    reason_code: str = Field(..., min_length=1)


class BatchResponse(BaseModel):
    batch_id: str
    payor_id: str
    effective_date: date
    status: str
    payment_ids: List[str]
    submitted_at: Optional[datetime] = None
    external_reference: Optional[str] = None
    submission_attempts: int
    last_error: Optional[str] = None

    @classmethod
    def from_domain(cls, batch: PaymentBatch) -> "BatchResponse":
        return cls(
            batch_id=batch.id,
            payor_id=batch.payor_id,
            effective_date=batch.effective_date,
            status=batch.status.value,
            payment_ids=list(batch.payment_ids),
            submitted_at=batch.submitted_at,
            external_reference=batch.external_reference,
            submission_attempts=batch.submission_attempts,
            last_error=batch.last_error,
        )


class BatchPaymentLineSchema(BaseModel):
    payment_id: str
    invoice_id: str
    amount_cents: int
    bank_account_ref: str


class BatchPayloadResponse(BaseModel):
    batch_id: str
    payor_id: str
    effective_date: date
    total_cents: int
    payment_count: int
    payments: List[BatchPaymentLineSchema]


# Gateway notifications


class StatusNotification(BaseModel):
    """PaymentProcessingStatusReceived"""

    payment_id: str = Field(..., min_length=1)
    status: Literal["processing", "settled"]


class ReturnNotification(BaseModel):
    """ACHReturnReceived; reason_code already in the engine's vocabulary"""

    payment_id: str = Field(..., min_length=1)
    reason_code: str = Field(..., min_length=1)


class NotificationResponse(BaseModel):
    payment_id: str
    outcome: NotificationOutcome


class DueBatchesRequest(BaseModel):
    as_of: Optional[date] = None


class DueBatchesResponse(BaseModel):
    results: dict[str, str]

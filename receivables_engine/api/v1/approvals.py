"""Invoice approval endpoints: submission from Invoicing and approver actions"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from receivables_engine.api.dependencies import get_dispatcher, get_request_id
from receivables_engine.api.v1.schemas import (
    ApproverActionRequest,
    InvoiceApprovalResponse,
    SubmitForApprovalRequest,
    WithdrawRequest,
)
from receivables_engine.infrastructure.database.session import get_db
from receivables_engine.services.approval_service import ApprovalService
from receivables_engine.services.dispatcher import EventDispatcher

router = APIRouter()


@router.post("/approvals", response_model=InvoiceApprovalResponse, status_code=201)
def submit_for_approval(
    request_body: SubmitForApprovalRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """
    Start the approval chain for an invoice.

    Flow:
    1. Resolve the payor's amount tier (active or requested rule version)
    2. Snapshot it as the chain definition
    3. Persist the approval awaiting slot 0
    4. Notify the first slot's approvers (async, via outbox)
    """
    approval = ApprovalService(db).submit_for_approval(
        invoice_id=request_body.invoice_id,
        payor_id=request_body.payor_id,
        amount_cents=request_body.amount_cents,
        rule_version=request_body.rule_version,
    )
    background_tasks.add_task(dispatcher.dispatch_pending)
    return InvoiceApprovalResponse.from_domain(approval)


@router.get("/approvals/{approval_id}", response_model=InvoiceApprovalResponse)
def get_approval(approval_id: str, db: Session = Depends(get_db)):
    return InvoiceApprovalResponse.from_domain(ApprovalService(db).get(approval_id))


@router.post("/approvals/{approval_id}/actions", response_model=InvoiceApprovalResponse)
def record_action(
    approval_id: str,
    request_body: ApproverActionRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """
    Record an approver's decision on the slot awaiting one.

    Errors:
        409 on ineligible/duplicate approver, terminal chain, or stale expected_version
    """
    approval = ApprovalService(db).record_action(
        approval_id,
        approver_id=request_body.approver_id,
        decision=request_body.decision,
        expected_version=request_body.expected_version,
        request_id=get_request_id(request),
    )
    background_tasks.add_task(dispatcher.drain)
    return InvoiceApprovalResponse.from_domain(approval)


@router.post("/approvals/{approval_id}/withdraw", response_model=InvoiceApprovalResponse)
def withdraw_approval(
    approval_id: str,
    request_body: WithdrawRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """Audited withdrawal of an in-flight approval, requested by Invoicing"""
    approval = ApprovalService(db).withdraw(
        approval_id,
        requested_by=request_body.requested_by,
        reason=request_body.reason,
        expected_version=request_body.expected_version,
    )
    background_tasks.add_task(dispatcher.dispatch_pending)
    return InvoiceApprovalResponse.from_domain(approval)

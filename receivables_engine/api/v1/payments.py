"""Payment read and operator endpoints"""

from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from receivables_engine.api.dependencies import get_dispatcher
from receivables_engine.api.v1.schemas import FailPaymentRequest, PaymentResponse, ResubmitRequest
from receivables_engine.infrastructure.database.session import get_db
from receivables_engine.services.dispatcher import EventDispatcher
from receivables_engine.services.payment_service import PaymentService

router = APIRouter()


@router.get("/payments", response_model=List[PaymentResponse])
def list_payments(invoice_id: str = Query(..., description="Invoice identifier"), db: Session = Depends(get_db)):
    """All payment attempts for an invoice, oldest first"""
    service = PaymentService(db)
    return [
        PaymentResponse.from_domain(payment, service.superseded_by(payment.id))
        for payment in service.list_for_invoice(invoice_id)
    ]


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: str, db: Session = Depends(get_db)):
    service = PaymentService(db)
    payment = service.get(payment_id)
    return PaymentResponse.from_domain(payment, service.superseded_by(payment.id))


@router.post("/payments/{payment_id}/resubmit", response_model=PaymentResponse, status_code=201)
def resubmit_payment(
    payment_id: str,
    request_body: ResubmitRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """
    Resubmit a returned payment with a corrected bank account.

    Returns:
        The replacement payment; the returned one is left unchanged
    """
    replacement = PaymentService(db).resubmit(
        payment_id,
        bank_account_ref=request_body.bank_account_ref,
        requested_by=request_body.requested_by,
    )
    background_tasks.add_task(dispatcher.dispatch_pending)
    return PaymentResponse.from_domain(replacement)


@router.post("/payments/{payment_id}/fail", response_model=PaymentResponse)
def fail_payment(
    payment_id: str,
    request_body: FailPaymentRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """Give up on a returned payment"""
    payment = PaymentService(db).mark_failed(payment_id, request_body.reason_code)
    background_tasks.add_task(dispatcher.dispatch_pending)
    return PaymentResponse.from_domain(payment)

"""Batch endpoints: inspection, closing and submission to the processor"""

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from receivables_engine.api.dependencies import get_dispatcher, get_processor_client
from receivables_engine.api.v1.schemas import (
    BatchPayloadResponse,
    BatchPaymentLineSchema,
    BatchResponse,
    DueBatchesRequest,
    DueBatchesResponse,
)
from receivables_engine.infrastructure.clients.processor import PaymentProcessorClient
from receivables_engine.infrastructure.database.repositories import BatchRepository
from receivables_engine.infrastructure.database.session import get_db
from receivables_engine.services.dispatcher import EventDispatcher
from receivables_engine.services.origination_service import OriginationService
from receivables_engine.utils.date_utils import utcnow

router = APIRouter()


@router.get("/batches/{batch_id}", response_model=BatchResponse)
def get_batch(batch_id: str, db: Session = Depends(get_db)):
    return BatchResponse.from_domain(BatchRepository(db).require(batch_id))


@router.post("/batches/{batch_id}/close", response_model=BatchPayloadResponse)
def close_batch(batch_id: str, db: Session = Depends(get_db)):
    """
    Freeze batch membership.

    Returns:
        The submission payload, lines in insertion order
    """
    payload = OriginationService(db).close_batch(batch_id)
    return BatchPayloadResponse(
        batch_id=payload.batch_id,
        payor_id=payload.payor_id,
        effective_date=payload.effective_date,
        total_cents=payload.total_cents,
        payment_count=payload.payment_count,
        payments=[
            BatchPaymentLineSchema(
                payment_id=line.payment_id,
                invoice_id=line.invoice_id,
                amount_cents=line.amount_cents,
                bank_account_ref=line.bank_account_ref,
            )
            for line in payload.lines
        ],
    )


@router.post("/batches/{batch_id}/submit", response_model=BatchResponse)
async def submit_batch(
    batch_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    processor: PaymentProcessorClient = Depends(get_processor_client),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """
    Submit a batch to the payment processor.

    Errors:
        502 when the processor refuses; the batch and its payments stay unsubmitted
    """
    batch = await OriginationService(db, processor=processor).submit_batch(batch_id)
    background_tasks.add_task(dispatcher.dispatch_pending)
    return BatchResponse.from_domain(batch)


@router.post("/batches/submit-due", response_model=DueBatchesResponse)
async def submit_due_batches(
    request_body: DueBatchesRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    processor: PaymentProcessorClient = Depends(get_processor_client),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """Scheduler hook: submit every batch due by the settlement lead time"""
    as_of = request_body.as_of or utcnow().date()
    results = await OriginationService(db, processor=processor).submit_due_batches(as_of)
    background_tasks.add_task(dispatcher.dispatch_pending)
    return DueBatchesResponse(results=results)

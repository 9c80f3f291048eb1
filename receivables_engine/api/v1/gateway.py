"""Inbound payment processor notifications"""

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from receivables_engine.api.dependencies import get_dispatcher
from receivables_engine.api.v1.schemas import NotificationResponse, ReturnNotification, StatusNotification
from receivables_engine.domain.models import PaymentStatus
from receivables_engine.infrastructure.database.session import get_db
from receivables_engine.services.dispatcher import EventDispatcher
from receivables_engine.services.gateway_service import GatewayNotificationService

router = APIRouter()


@router.post("/gateway/status", response_model=NotificationResponse, status_code=202)
def receive_status(
    request_body: StatusNotification,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """
    PaymentProcessingStatusReceived.

    Always 202: duplicates, stale updates and unknown payment ids are
    absorbed and reported in the outcome, never bounced back to the processor.
    """
    outcome = GatewayNotificationService(db).handle_status_notification(
        request_body.payment_id, PaymentStatus(request_body.status)
    )
    background_tasks.add_task(dispatcher.dispatch_pending)
    return NotificationResponse(payment_id=request_body.payment_id, outcome=outcome)


@router.post("/gateway/returns", response_model=NotificationResponse, status_code=202)
def receive_return(
    request_body: ReturnNotification,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """ACHReturnReceived"""
    outcome = GatewayNotificationService(db).handle_return_notification(
        request_body.payment_id, request_body.reason_code
    )
    background_tasks.add_task(dispatcher.dispatch_pending)
    return NotificationResponse(payment_id=request_body.payment_id, outcome=outcome)

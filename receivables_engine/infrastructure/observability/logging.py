"""Structured JSON logging for the engine"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from receivables_engine.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp, level and service name to every record"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on the root logger"""
    logger = logging.getLogger()
    logger.setLevel(level)

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_approval_action(
    invoice_id: str,
    approver_id: str,
    decision: str,
    state: str,
    request_id: Optional[str] = None,
) -> None:
    """Audit line for every recorded approver decision"""
    logging.getLogger("receivables_engine.approval").info(
        "Approval action recorded",
        extra={
            "request_id": request_id,
            "invoice_id": invoice_id,
            "approver_id": approver_id,
            "decision": decision,
            "approval_state": state,
        },
    )


def log_payment_transition(payment_id: str, invoice_id: str, from_status: str, to_status: str, reason_code: Optional[str] = None) -> None:
    """Audit line for every payment status change"""
    logging.getLogger("receivables_engine.payments").info(
        "Payment status changed",
        extra={
            "payment_id": payment_id,
            "invoice_id": invoice_id,
            "from_status": from_status,
            "to_status": to_status,
            "reason_code": reason_code,
        },
    )

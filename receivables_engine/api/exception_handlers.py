"""Map domain exceptions to HTTP responses"""

import logging
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from receivables_engine.domain.exceptions import (
    ConcurrentModificationError,
    ConfigurationError,
    DomainException,
    GatewaySubmissionError,
    InvalidAmountError,
    NotFoundError,
    PolicyViolationError,
)


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logging.error(
        f"Configuration error: {exc}",
        extra={"request_id": getattr(request.state, "request_id", None), "error": type(exc).__name__},
    )
    return _error_response(422, exc)


def invalid_amount_handler(_request: Request, exc: InvalidAmountError) -> JSONResponse:
    return _error_response(422, exc)


def policy_violation_handler(_request: Request, exc: PolicyViolationError) -> JSONResponse:
    return _error_response(status.HTTP_409_CONFLICT, exc)


def concurrent_modification_handler(request: Request, exc: ConcurrentModificationError) -> JSONResponse:
    # Expected under contention; the caller re-reads and retries
    logging.info(
        f"Concurrent modification: {exc}",
        extra={"request_id": getattr(request.state, "request_id", None)},
    )
    return _error_response(status.HTTP_409_CONFLICT, exc)


def not_found_handler(_request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(status.HTTP_404_NOT_FOUND, exc)


def gateway_submission_handler(request: Request, exc: GatewaySubmissionError) -> JSONResponse:
    logging.error(
        f"Payment processor error: {exc}",
        extra={"request_id": getattr(request.state, "request_id", None)},
    )
    return _error_response(status.HTTP_502_BAD_GATEWAY, exc)


def domain_error_handler(_request: Request, exc: DomainException) -> JSONResponse:
    return _error_response(status.HTTP_400_BAD_REQUEST, exc)


def register_exception_handlers(app: FastAPI) -> None:
    """Register domain exception handlers; Starlette picks the most specific class"""
    app.add_exception_handler(ConfigurationError, configuration_error_handler)
    app.add_exception_handler(InvalidAmountError, invalid_amount_handler)
    app.add_exception_handler(PolicyViolationError, policy_violation_handler)
    app.add_exception_handler(ConcurrentModificationError, concurrent_modification_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(GatewaySubmissionError, gateway_submission_handler)
    app.add_exception_handler(DomainException, domain_error_handler)

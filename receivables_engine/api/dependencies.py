"""Dependency injection for FastAPI endpoints"""

from functools import lru_cache

from fastapi import Request
from receivables_engine.infrastructure.clients.processor import PaymentProcessorClient
from receivables_engine.infrastructure.database.session import SessionLocal
from receivables_engine.services.dispatcher import EventDispatcher, build_dispatcher


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_processor_client() -> PaymentProcessorClient:
    """Provide payment processor client instance"""
    return PaymentProcessorClient()


@lru_cache
def get_dispatcher() -> EventDispatcher:
    """Process-wide outbox dispatcher"""
    return build_dispatcher(SessionLocal)

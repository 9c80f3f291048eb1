"""Payor Management feed: approval rules and verified bank accounts"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from receivables_engine.api.v1.schemas import (
    ApprovalRuleRequest,
    ApprovalRuleResponse,
    BankAccountRequest,
    BankAccountResponse,
)
from receivables_engine.infrastructure.database.session import get_db
from receivables_engine.services.registry_service import RegistryService

router = APIRouter()


@router.put("/payors/{payor_id}/approval-rule", response_model=ApprovalRuleResponse, status_code=201)
def publish_approval_rule(payor_id: str, request_body: ApprovalRuleRequest, db: Session = Depends(get_db)):
    """
    Publish a new approval rule version for a payor.

    Returns:
        The stored rule with its new version number
    """
    rule = RegistryService(db).publish_rule(payor_id, [tier.to_domain() for tier in request_body.tiers])
    return ApprovalRuleResponse.from_domain(rule)


@router.get("/payors/{payor_id}/approval-rule", response_model=ApprovalRuleResponse)
def get_approval_rule(
    payor_id: str,
    version: Optional[int] = Query(None, ge=1, description="Defaults to the active rule"),
    db: Session = Depends(get_db),
):
    rule = RegistryService(db).get_rule(payor_id, version)
    return ApprovalRuleResponse.from_domain(rule)


@router.put("/payors/{payor_id}/bank-account", response_model=BankAccountResponse)
def set_bank_account(payor_id: str, request_body: BankAccountRequest, db: Session = Depends(get_db)):
    RegistryService(db).set_payor_account(payor_id, request_body.bank_account_ref)
    return BankAccountResponse(payor_id=payor_id, bank_account_ref=request_body.bank_account_ref)


@router.get("/payors/{payor_id}/bank-account", response_model=BankAccountResponse)
def get_bank_account(payor_id: str, db: Session = Depends(get_db)):
    account = RegistryService(db).get_payor_account(payor_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Bank account not found")
    return BankAccountResponse(payor_id=payor_id, bank_account_ref=account)

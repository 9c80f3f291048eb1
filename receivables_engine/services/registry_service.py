"""Payor-owned configuration the engine reads: approval rules and bank accounts"""

import logging
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from receivables_engine.domain.exceptions import RuleNotFoundError
from receivables_engine.domain.models import AmountTier, ApprovalRule
from receivables_engine.domain.rules import validate_rule
from receivables_engine.infrastructure.database.repositories import (
    ApprovalRuleRepository,
    PayorAccountRepository,
)
from receivables_engine.services.base import BaseService, Clock

logger = logging.getLogger("receivables_engine.registry")


class RegistryService(BaseService):
    """Receives rule and account snapshots published by Payor Management"""

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        super().__init__(db, clock)
        self.rules = ApprovalRuleRepository(db)
        self.accounts = PayorAccountRepository(db)

    def publish_rule(self, payor_id: str, tiers: Sequence[AmountTier]) -> ApprovalRule:
        """
        Store a new rule version for a payor; it becomes the active rule.

        Chains already in flight keep the version they were created with.

        Raises:
            InvalidApprovalRuleError: Tiers leave gaps/overlaps or cannot be staffed
        """
        with self.unit_of_work():
            rule = ApprovalRule(
                payor_id=payor_id,
                version=self.rules.next_version(payor_id),
                tiers=tuple(tiers),
                created_at=self.clock(),
            )
            validate_rule(rule)
            self.rules.add(rule)

        logger.info(
            "Approval rule published",
            extra={"payor_id": payor_id, "rule_version": rule.version, "tiers": len(rule.tiers)},
        )
        return rule

    def get_rule(self, payor_id: str, version: Optional[int] = None) -> ApprovalRule:
        rule = self.rules.get_rule(payor_id, version)
        if rule is None:
            wanted = "active rule" if version is None else f"rule v{version}"
            raise RuleNotFoundError(f"Payor {payor_id} has no {wanted}")
        return rule

    def set_payor_account(self, payor_id: str, bank_account_ref: str) -> None:
        with self.unit_of_work():
            self.accounts.set_account(payor_id, bank_account_ref)
        logger.info("Payor bank account updated", extra={"payor_id": payor_id})

    def get_payor_account(self, payor_id: str) -> Optional[str]:
        return self.accounts.get_account(payor_id)

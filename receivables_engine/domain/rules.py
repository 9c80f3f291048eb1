"""Amount-tier rule resolver - routes an invoice amount to its approval chain shape"""

from typing import Dict, Optional, Protocol, Sequence, Set

from receivables_engine.domain.exceptions import (
    InvalidAmountError,
    InvalidApprovalRuleError,
    RuleNotFoundError,
)
from receivables_engine.domain.models import (
    AmountTier,
    ApprovalChainDefinition,
    ApprovalRule,
    ApprovalSlot,
)


class ApprovalRuleSource(Protocol):
    """Read-only query interface onto payor approval rules"""

    def get_rule(self, payor_id: str, version: Optional[int] = None) -> Optional[ApprovalRule]:
        ...


def validate_rule(rule: ApprovalRule) -> None:
    """
    Check that a rule's tiers partition [0, inf) and can each be staffed.

    Requirements:
    - First tier starts at 0
    - Each tier's upper bound is the next tier's lower bound (no gap, no overlap)
    - Bounds strictly increasing, only the last tier unbounded
    - One eligible-approver list per required approval
    - Slots can be filled by pairwise-distinct approvers

    Raises:
        InvalidApprovalRuleError: On the first violated requirement
    """
    label = f"payor {rule.payor_id} rule v{rule.version}"
    if not rule.tiers:
        raise InvalidApprovalRuleError(f"{label} has no tiers")

    expected_lower = 0
    last_position = len(rule.tiers) - 1
    for position, tier in enumerate(rule.tiers):
        if tier.lower_cents != expected_lower:
            kind = "gap" if tier.lower_cents > expected_lower else "overlap"
            raise InvalidApprovalRuleError(
                f"{label}: {kind} at {expected_lower} (tier {position} starts at {tier.lower_cents})"
            )

        if tier.upper_cents is None:
            if position != last_position:
                raise InvalidApprovalRuleError(f"{label}: unbounded tier {position} is not the last tier")
        else:
            if tier.upper_cents <= tier.lower_cents:
                raise InvalidApprovalRuleError(
                    f"{label}: tier {position} bounds not increasing ({tier.lower_cents} >= {tier.upper_cents})"
                )
            if position == last_position:
                raise InvalidApprovalRuleError(f"{label}: amounts from {tier.upper_cents} are not covered")
            expected_lower = tier.upper_cents

        _validate_slots(label, position, tier)


def _validate_slots(label: str, position: int, tier: AmountTier) -> None:
    if tier.required_approvals < 1:
        raise InvalidApprovalRuleError(f"{label}: tier {position} requires no approvals")
    if len(tier.slot_approvers) != tier.required_approvals:
        raise InvalidApprovalRuleError(
            f"{label}: tier {position} requires {tier.required_approvals} approvals "
            f"but lists {len(tier.slot_approvers)} slots"
        )
    for slot_index, approvers in enumerate(tier.slot_approvers):
        if not approvers:
            raise InvalidApprovalRuleError(f"{label}: tier {position} slot {slot_index} has no eligible approvers")
    if not has_distinct_assignment(tier.slot_approvers):
        raise InvalidApprovalRuleError(
            f"{label}: tier {position} slots cannot be filled by distinct approvers"
        )


def has_distinct_assignment(slot_approvers: Sequence[Sequence[str]]) -> bool:
    """True if every slot can get its own approver (bipartite matching, augmenting paths)"""
    assigned: Dict[str, int] = {}

    def assign(slot: int, visited: Set[str]) -> bool:
        for approver in slot_approvers[slot]:
            if approver in visited:
                continue
            visited.add(approver)
            if approver not in assigned or assign(assigned[approver], visited):
                assigned[approver] = slot
                return True
        return False

    return all(assign(slot, set()) for slot in range(len(slot_approvers)))


def find_tier(rule: ApprovalRule, amount_cents: int) -> AmountTier:
    """Tier whose [lower, upper) range contains the amount"""
    for tier in rule.tiers:
        if tier.contains(amount_cents):
            return tier
    raise RuleNotFoundError(
        f"No tier of payor {rule.payor_id} rule v{rule.version} covers amount {amount_cents}"
    )


def build_chain(rule: ApprovalRule, amount_cents: int) -> ApprovalChainDefinition:
    """Snapshot the tier covering the amount as an ordered slot list"""
    if amount_cents < 0:
        raise InvalidAmountError(f"Amount must be non-negative, got {amount_cents}")

    tier = find_tier(rule, amount_cents)
    slots = tuple(
        ApprovalSlot(index=index, eligible_approvers=tuple(approvers))
        for index, approvers in enumerate(tier.slot_approvers)
    )
    return ApprovalChainDefinition(
        payor_id=rule.payor_id,
        rule_version=rule.version,
        tier_lower_cents=tier.lower_cents,
        tier_upper_cents=tier.upper_cents,
        slots=slots,
    )


class RuleResolver:
    """Resolves (payor, amount, rule version) to an approval chain definition"""

    def __init__(self, rules: ApprovalRuleSource):
        self.rules = rules

    def resolve(
        self,
        payor_id: str,
        amount_cents: int,
        rule_version: Optional[int] = None,
    ) -> ApprovalChainDefinition:
        """
        Resolve the chain for an invoice amount.

        A rule_version of None means the payor's active rule. Resolving the
        same inputs always yields an equal definition.

        Raises:
            InvalidAmountError: Amount is negative
            RuleNotFoundError: Payor has no such rule, or no tier covers the amount
        """
        if amount_cents < 0:
            raise InvalidAmountError(f"Amount must be non-negative, got {amount_cents}")

        rule = self.rules.get_rule(payor_id, rule_version)
        if rule is None:
            wanted = "active rule" if rule_version is None else f"rule v{rule_version}"
            raise RuleNotFoundError(f"Payor {payor_id} has no {wanted}")

        return build_chain(rule, amount_cents)

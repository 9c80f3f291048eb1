"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


# Configuration errors: fatal to the operation, surfaced to an operator


class ConfigurationError(DomainException):
    """Engine configuration is missing or inconsistent"""

    pass


class RuleNotFoundError(ConfigurationError):
    """No approval rule (or no tier of it) covers the requested amount"""

    pass


class InvalidApprovalRuleError(ConfigurationError):
    """Approval rule tiers do not partition [0, inf) or cannot be staffed"""

    pass


class PayorAccountNotFoundError(ConfigurationError):
    """Payor has no verified bank account to originate payments from"""

    pass


class InvalidAmountError(DomainException, ValueError):
    """Amount is negative or otherwise unusable"""

    pass


# Policy violations: rejected synchronously, no state mutation


class PolicyViolationError(DomainException):
    """Requested action is not allowed in the aggregate's current state"""

    pass


class IneligibleApproverError(PolicyViolationError):
    """Approver is not eligible for the slot awaiting a decision"""

    pass


class DuplicateApproverError(PolicyViolationError):
    """Approver already acted on an earlier slot of the same chain"""

    pass


class ChainAlreadyTerminalError(PolicyViolationError):
    """Approval chain has already been approved, rejected or withdrawn"""

    pass


class InvoiceAlreadySubmittedError(PolicyViolationError):
    """Invoice was already submitted for approval with different terms"""

    pass


class NotApprovedError(PolicyViolationError):
    """Origination requested for a chain that is not approved"""

    pass


class InvalidTransitionError(PolicyViolationError):
    """State transition is not in the aggregate's transition table"""

    pass


class EmptyBatchError(PolicyViolationError):
    """Batch has no payments to submit"""

    pass


class BatchAlreadySubmittedError(PolicyViolationError):
    """Batch has been submitted and can no longer change"""

    pass


class ResubmissionNotAllowedError(PolicyViolationError):
    """Payment is not a returned payment that can be resubmitted or failed"""

    pass


class ResubmissionLimitExceededError(ResubmissionNotAllowedError):
    """Invoice has used all of its payment attempts"""

    pass


# Lookups


class NotFoundError(DomainException):
    """Referenced aggregate does not exist"""

    pass


class InvoiceApprovalNotFoundError(NotFoundError):
    pass


class PaymentNotFoundError(NotFoundError):
    pass


class BatchNotFoundError(NotFoundError):
    pass


# Concurrency and external boundary


class ConcurrentModificationError(DomainException):
    """Aggregate changed since it was read; re-read and retry"""

    pass


class GatewaySubmissionError(DomainException):
    """Payment processor rejected the batch or is unavailable"""

    pass

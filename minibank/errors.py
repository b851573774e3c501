"""
Domain Error Module

Exception hierarchy for the minibank core. Every error carries a stable
``code`` so that an outer layer can map it to a response without string
matching on messages.

- ValidationError: caller-correctable input problems, never retried
- StateConflictError: business-rule violations against current state
- ConcurrencyConflict: transient lock/version conflicts, safe to retry
- ServiceUnavailable: retries for a transient conflict were exhausted
- ConsistencyError: a broken ledger invariant, always a bug
- NotFoundError: unknown identifiers
"""

from typing import Optional


class MinibankError(Exception):
    """Base class for all minibank domain errors"""

    code = "minibank_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code


# Validation errors

class ValidationError(MinibankError, ValueError):
    """Request failed validation"""
    code = "validation_error"


class InvalidAmount(ValidationError):
    """Amount must be greater than zero"""
    code = "invalid_amount"


class CurrencyMismatch(ValidationError):
    """Amount currency does not match the account currency"""
    code = "currency_mismatch"


class MissingReason(ValidationError):
    """Rejection reason is required"""
    code = "missing_reason"


class ProductNotEligible(ValidationError):
    """Product is not available for this customer"""
    code = "product_not_eligible"


class MinimumDepositNotMet(ValidationError):
    """Initial deposit is below the product minimum"""
    code = "minimum_deposit_not_met"


class SameAccountTransfer(ValidationError):
    """Cannot transfer to the same account"""
    code = "same_account_transfer"


class DuplicateProductCode(ValidationError):
    """Product code already exists"""
    code = "duplicate_product_code"


class RequestTypeMismatch(ValidationError):
    """Approval request type does not match the entity type"""
    code = "request_type_mismatch"


# State conflict errors

class StateConflictError(MinibankError):
    """Operation conflicts with the current state of an entity"""
    code = "state_conflict"


class AccountClosed(StateConflictError):
    """Account is closed"""
    code = "account_closed"


class AccountNotActive(StateConflictError):
    """Account is not active"""
    code = "account_not_active"


class AlreadyClosed(StateConflictError):
    """Account is already closed"""
    code = "already_closed"


class NonZeroBalance(StateConflictError):
    """Account balance must be zero before closure"""
    code = "non_zero_balance"


class InsufficientBalance(StateConflictError):
    """Insufficient balance"""
    code = "insufficient_balance"


class NotPending(StateConflictError):
    """Only pending approval requests can be reviewed"""
    code = "not_pending"


class CustomerNotActive(StateConflictError):
    """Customer is not active and approved"""
    code = "customer_not_active"


class DuplicatePendingRequest(StateConflictError):
    """Entity already has a pending approval request"""
    code = "duplicate_pending_request"


class SelfReviewNotAllowed(StateConflictError):
    """Reviewer must be a different user than the requester"""
    code = "self_review_not_allowed"


class NotAwaitingApproval(StateConflictError):
    """Entity is no longer inactive and pending approval"""
    code = "not_awaiting_approval"


# Concurrency errors

class ConcurrencyConflict(MinibankError):
    """Could not lock or update a contended row"""
    code = "concurrency_conflict"


class ServiceUnavailable(MinibankError):
    """Operation could not complete after repeated concurrency conflicts"""
    code = "service_unavailable"


# Consistency errors

class ConsistencyError(MinibankError):
    """Ledger invariant violated"""
    code = "consistency_error"


# Not-found errors

class NotFoundError(MinibankError, LookupError):
    """Entity not found"""
    code = "not_found"


class AccountNotFound(NotFoundError):
    """Account not found"""
    code = "account_not_found"


class CustomerNotFound(NotFoundError):
    """Customer not found"""
    code = "customer_not_found"


class ProductNotFound(NotFoundError):
    """Product not found"""
    code = "product_not_found"


class ApprovalRequestNotFound(NotFoundError):
    """Approval request not found"""
    code = "approval_request_not_found"


class TransactionNotFound(NotFoundError):
    """Transaction not found"""
    code = "transaction_not_found"

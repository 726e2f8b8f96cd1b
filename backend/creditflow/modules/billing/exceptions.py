"""Billing error types.

All of these are expected, local failure modes surfaced to the caller;
routers map them to HTTP responses.
"""

from typing import Optional


class BillingError(Exception):
    """Base exception for billing errors."""
    pass


class PlanNotFound(BillingError):
    """Raised when a referenced plan does not exist."""

    def __init__(self, plan_ref: object):
        self.plan_ref = plan_ref
        super().__init__(f"Plan not found: {plan_ref}")


class PlanAlreadyExists(BillingError):
    """Raised when a plan name is already taken."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Plan already exists: {name}")


class SubscriptionNotFound(BillingError):
    """Raised when a referenced subscription does not exist."""

    def __init__(self, subscription_ref: object = None):
        self.subscription_ref = subscription_ref
        message = "Subscription not found"
        if subscription_ref is not None:
            message = f"{message}: {subscription_ref}"
        super().__init__(message)


class InvalidCreditAmount(BillingError, ValueError):
    """Raised for non-positive amounts or a non-allocation type passed to allocate."""
    pass


class InsufficientCredits(BillingError):
    """Raised when a deduction exceeds the available balance.

    Carries both numbers so callers can show an actionable message.
    """

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits: {required} required, {available} available"
        )


class LedgerUnavailable(BillingError):
    """Raised when a ledger write keeps conflicting after all retries."""

    def __init__(self, operation: str, attempts: int, cause: Optional[Exception] = None):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Credit ledger unavailable: {operation} failed after {attempts} attempts"
        )

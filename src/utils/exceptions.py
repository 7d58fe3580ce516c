"""
Billing exception hierarchy.

Errors that can leave the ledger financially inconsistent propagate to the
webhook worker so the queue retries the whole transition. Everything else is
resolved inside the reconciliation engine to a logged no-op.

Usage:
    from src.utils.exceptions import GatewayError

    try:
        gateway.cancel_subscription(subscription_id)
    except GatewayError:
        # Never swallow: a half-applied upgrade can bill the user twice
        raise
"""


class ReconciliationError(Exception):
    """Base class for ledger reconciliation failures."""


class GatewayError(ReconciliationError):
    """Ambiguous failure talking to the payment processor."""

    def __init__(self, message: str, *, code: str | None = None, operation: str | None = None):
        super().__init__(message)
        self.code = code
        self.operation = operation


class LedgerCommitError(ReconciliationError):
    """The atomic ledger commit failed for a reason other than a duplicate."""


class StaleLedgerError(LedgerCommitError):
    """The credit balance changed between the ledger read and the commit."""

    def __init__(self, message: str, *, expected_balance: int | None = None):
        super().__init__(message)
        self.expected_balance = expected_balance


class DuplicateTransitionError(ReconciliationError):
    """A concurrent delivery already committed this transition (unique violation)."""

    def __init__(self, message: str, *, idempotency_key: str | None = None):
        super().__init__(message)
        self.idempotency_key = idempotency_key


class InsufficientCreditsError(ReconciliationError):
    """Usage deduction would overdraw the credit balance."""

    def __init__(self, balance: int, required: int):
        super().__init__(f"Insufficient credits. Current: {balance}, Required: {required}")
        self.balance = balance
        self.required = required

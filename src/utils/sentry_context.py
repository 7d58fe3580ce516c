"""
Sentry error context utilities for billing error tracking and reporting.

This module provides helper functions to add structured context to errors
captured by Sentry from webhook handlers and the reconciliation worker.
"""

import logging
from typing import Any

import sentry_sdk

logger = logging.getLogger(__name__)


def capture_error(
    exception: Exception,
    context_type: str | None = None,
    context_data: dict[str, Any] | None = None,
    tags: dict[str, str] | None = None,
) -> str | None:
    """
    Capture an exception to Sentry with structured context.

    Returns:
        Event ID if captured, None if Sentry is not initialised or capture failed

    Example:
        try:
            gateway.cancel_subscription(subscription_id)
        except GatewayError as e:
            capture_error(
                e,
                context_type='stripe',
                context_data={'subscription_id': subscription_id},
                tags={'operation': 'cancel_subscription'},
            )
            raise
    """
    try:
        with sentry_sdk.push_scope() as scope:
            if context_type and context_data:
                scope.set_context(context_type, context_data)
            for key, value in (tags or {}).items():
                scope.set_tag(key, str(value))
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")
        return None


def capture_payment_error(
    exception: Exception,
    operation: str,
    provider: str = "stripe",
    user_id: str | None = None,
    amount: float | None = None,
    details: dict[str, Any] | None = None,
) -> str | None:
    """
    Capture a payment-related error with standard context.

    Args:
        exception: The exception to capture
        operation: Payment operation (e.g., 'webhook', 'upgrade', 'renewal')
        provider: Payment provider (default: 'stripe')
        user_id: User ID if applicable
        amount: Credit amount if applicable
        details: Additional details (event ID, subscription ID, etc.)

    Returns:
        Event ID if captured, None if Sentry is disabled
    """
    context_data: dict[str, Any] = {
        "operation": operation,
        "provider": provider,
    }
    if user_id:
        context_data["user_id"] = user_id
    if amount:
        context_data["amount"] = amount
    if details:
        context_data.update(details)

    return capture_error(
        exception,
        context_type="payment",
        context_data=context_data,
        tags={"operation": operation, "provider": provider},
    )

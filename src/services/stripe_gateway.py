"""
Stripe gateway adapter.

Thin wrapper over the Stripe SDK used by the reconciliation engine. The API
key is passed on every call instead of being set on the global `stripe`
module, so several gateways (or a fake in tests) can coexist.

Error contract:
- cancel_subscription treats "already gone" as success and returns False
- every other Stripe failure is raised as GatewayError
"""

import logging
from datetime import UTC, datetime
from typing import Any

import stripe

from src.utils.exceptions import GatewayError

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION_EXPAND = ("latest_invoice", "customer")


def get_value(obj: Any, attr: str) -> Any:
    """
    Safely extract a field from a Stripe object (dict-like or attribute-based).
    """
    if obj is None:
        return None

    if isinstance(obj, dict):
        return obj.get(attr)

    if hasattr(obj, attr):
        return getattr(obj, attr)

    try:
        return obj[attr]
    except (KeyError, TypeError, IndexError):
        return None


def metadata_to_dict(metadata: Any) -> dict[str, Any]:
    """Convert Stripe metadata object into a plain dictionary."""
    if metadata is None:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    to_dict = getattr(metadata, "to_dict", None)
    if callable(to_dict):
        try:
            return to_dict()
        except Exception:
            pass
    try:
        return dict(metadata)
    except (TypeError, ValueError):
        return {}


def id_of(value: Any) -> str | None:
    """Stripe references arrive either as an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return get_value(value, "id")


def customer_id_of(obj: Any) -> str | None:
    return id_of(get_value(obj, "customer"))


def price_id_of(subscription: Any) -> str | None:
    """items.data[0].price.id of a subscription, if present."""
    items = get_value(subscription, "items")
    data = get_value(items, "data") or []
    if not data:
        return None
    return id_of(get_value(data[0], "price"))


def timestamp_to_datetime(value: Any) -> datetime | None:
    """Stripe timestamps are unix seconds."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def subscription_period_end(subscription: Any) -> datetime | None:
    """current_period_end, which newer API versions report per subscription item."""
    period_end = timestamp_to_datetime(get_value(subscription, "current_period_end"))
    if period_end is not None:
        return period_end
    items = get_value(get_value(subscription, "items"), "data") or []
    if items:
        return timestamp_to_datetime(get_value(items[0], "current_period_end"))
    return None


def invoice_period(invoice: Any) -> tuple[datetime | None, datetime | None]:
    """
    Billing period an invoice pays for.

    The subscription line item carries the service period being paid; the
    invoice-level period_start/period_end are used when there are no lines.
    """
    lines = get_value(get_value(invoice, "lines"), "data") or []
    for line in lines:
        period = get_value(line, "period")
        start = timestamp_to_datetime(get_value(period, "start"))
        end = timestamp_to_datetime(get_value(period, "end"))
        if end is not None:
            return start, end
    return (
        timestamp_to_datetime(get_value(invoice, "period_start")),
        timestamp_to_datetime(get_value(invoice, "period_end")),
    )


def invoice_subscription_id(invoice: Any) -> str | None:
    """invoice.subscription, or parent.subscription_details.subscription on newer API versions."""
    subscription_id = id_of(get_value(invoice, "subscription"))
    if subscription_id:
        return subscription_id
    details = get_value(get_value(invoice, "parent"), "subscription_details")
    return id_of(get_value(details, "subscription"))


def is_already_missing(error: Exception) -> bool:
    """True when Stripe reports the subscription no longer exists."""
    code = getattr(error, "code", None)
    if code == "resource_missing":
        return True
    return "No such subscription" in str(error)


class StripeGateway:
    """Calls out to Stripe for the subscription and credit grant operations reconciliation needs"""

    def __init__(self, api_key: str, webhook_secret: str | None = None):
        if not api_key:
            raise ValueError("Stripe API key is required")
        self.api_key = api_key
        self.webhook_secret = webhook_secret

        if not webhook_secret:
            logger.warning(
                "STRIPE_WEBHOOK_SECRET not configured - webhook signature validation will fail"
            )

    # ==================== Webhooks ====================

    def construct_event(self, payload: bytes, signature: str | None) -> Any:
        """
        Verify a webhook signature and parse the event

        Raises:
            ValueError: secret missing, signature missing or invalid, or malformed payload
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured - rejecting webhook")
            raise ValueError("Webhook secret not configured")
        if not signature:
            logger.error("Missing webhook signature")
            raise ValueError("Missing webhook signature")

        try:
            # Stripe's verification uses a constant-time comparison
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise ValueError(f"Invalid webhook signature: {e}") from e

    # ==================== Subscriptions ====================

    def retrieve_subscription(
        self, subscription_id: str, expand: tuple[str, ...] | list[str] | None = DEFAULT_SUBSCRIPTION_EXPAND
    ) -> Any:
        try:
            return stripe.Subscription.retrieve(
                subscription_id,
                api_key=self.api_key,
                expand=list(expand or []),
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve Stripe subscription {subscription_id}: {e}")
            raise GatewayError(
                f"Could not retrieve subscription {subscription_id}: {e}",
                code=getattr(e, "code", None),
                operation="retrieve_subscription",
            ) from e

    def list_active_subscriptions(self, customer_id: str) -> list[Any]:
        try:
            result = stripe.Subscription.list(
                customer=customer_id,
                status="active",
                limit=100,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise GatewayError(
                f"Could not list subscriptions for customer {customer_id}: {e}",
                code=getattr(e, "code", None),
                operation="list_active_subscriptions",
            ) from e

        return list(get_value(result, "data") or [])

    def cancel_subscription(self, subscription_id: str) -> bool:
        """
        Cancel a subscription immediately

        Returns:
            True if Stripe canceled it, False if it was already gone

        Raises:
            GatewayError: any failure other than "already gone"
        """
        try:
            stripe.Subscription.cancel(subscription_id, api_key=self.api_key)
            logger.info(f"Canceled Stripe subscription {subscription_id}")
            return True
        except stripe.StripeError as e:
            if is_already_missing(e):
                logger.info(f"Stripe subscription {subscription_id} already canceled or missing")
                return False
            logger.error(f"Failed to cancel Stripe subscription {subscription_id}: {e}")
            raise GatewayError(
                f"Could not cancel subscription {subscription_id}: {e}",
                code=getattr(e, "code", None),
                operation="cancel_subscription",
            ) from e

    def update_subscription_metadata(self, subscription_id: str, metadata: dict[str, Any]) -> Any:
        try:
            return stripe.Subscription.modify(
                subscription_id,
                metadata=metadata,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise GatewayError(
                f"Could not update metadata for subscription {subscription_id}: {e}",
                code=getattr(e, "code", None),
                operation="update_subscription_metadata",
            ) from e

    # ==================== Billing credits ====================

    def create_credit_grant(
        self,
        customer_id: str,
        amount_cents: int,
        name: str,
        category: str = "paid",
        metadata: dict[str, str] | None = None,
    ) -> Any:
        """
        Grant monetary credit that Stripe applies to metered invoice lines

        Raises:
            GatewayError: Stripe rejected or failed the request
        """
        try:
            grant = stripe.billing.CreditGrant.create(
                customer=customer_id,
                name=name,
                category=category,
                amount={"type": "monetary", "monetary": {"value": amount_cents, "currency": "usd"}},
                applicability_config={"scope": {"price_type": "metered"}},
                metadata=metadata or {},
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise GatewayError(
                f"Could not create credit grant for customer {customer_id}: {e}",
                code=getattr(e, "code", None),
                operation="create_credit_grant",
            ) from e

        logger.info(
            f"Created Stripe credit grant {get_value(grant, 'id')} for customer {customer_id} "
            f"({amount_cents} cents)"
        )
        return grant

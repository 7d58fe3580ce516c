#!/usr/bin/env python3
"""
Subscription Records Database Module
Local mirror of Stripe subscriptions, keyed by stripe_subscription_id.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from supabase import Client

from src.config.supabase_config import get_supabase_client
from src.schemas.common import SubscriptionStatus

logger = logging.getLogger(__name__)

TABLE = "subscriptions"


def get_subscription_by_stripe_id(
    stripe_subscription_id: str, client: Client | None = None
) -> dict[str, Any] | None:
    if not stripe_subscription_id:
        return None

    client = client or get_supabase_client()
    result = (
        client.table(TABLE)
        .select("*")
        .eq("stripe_subscription_id", stripe_subscription_id)
        .execute()
    )
    return result.data[0] if result.data else None


def get_active_subscription_for_user(
    user_id: str, client: Client | None = None
) -> dict[str, Any] | None:
    """Most recently updated ACTIVE subscription for a user"""
    client = client or get_supabase_client()
    result = (
        client.table(TABLE)
        .select("*")
        .eq("user_id", user_id)
        .eq("status", SubscriptionStatus.ACTIVE.value)
        .order("updated_at", desc=True)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def update_subscription_status(
    stripe_subscription_id: str,
    status: SubscriptionStatus,
    client: Client | None = None,
) -> bool:
    """
    Set the status of a subscription record

    Returns:
        True if a record was updated, False if none matched
    """
    client = client or get_supabase_client()
    result = (
        client.table(TABLE)
        .update({"status": status.value, "updated_at": datetime.now(UTC).isoformat()})
        .eq("stripe_subscription_id", stripe_subscription_id)
        .execute()
    )
    if not result.data:
        logger.warning(
            f"No subscription record found for {stripe_subscription_id} while setting status {status.value}"
        )
        return False

    logger.info(f"Subscription {stripe_subscription_id} marked {status.value}")
    return True


def extend_subscription_period(
    stripe_subscription_id: str,
    period_end: datetime,
    client: Client | None = None,
) -> bool:
    """Move the stored period end forward without touching credits"""
    client = client or get_supabase_client()
    result = (
        client.table(TABLE)
        .update(
            {
                "stripe_current_period_end": period_end.isoformat(),
                "updated_at": datetime.now(UTC).isoformat(),
            }
        )
        .eq("stripe_subscription_id", stripe_subscription_id)
        .execute()
    )
    return bool(result.data)

#!/usr/bin/env python3
"""
Stripe Credit Grants Database Module
Local record of the Stripe Credit Grant created for each cloud credit purchase.
"""

import logging
from typing import Any

from supabase import Client

from src.config.supabase_config import get_supabase_client

logger = logging.getLogger(__name__)

TABLE = "stripe_credit_grants"


def record_credit_grant(
    user_id: str,
    stripe_credit_grant_id: str,
    stripe_customer_id: str,
    name: str,
    amount_cents: int,
    credits: int,
    category: str = "paid",
    metadata: dict[str, Any] | None = None,
    client: Client | None = None,
) -> dict[str, Any] | None:
    """
    Track a credit grant created at Stripe

    Returns:
        The inserted row, or None if the insert returned nothing
    """
    client = client or get_supabase_client()
    result = (
        client.table(TABLE)
        .insert(
            {
                "user_id": user_id,
                "stripe_credit_grant_id": stripe_credit_grant_id,
                "stripe_customer_id": stripe_customer_id,
                "name": name,
                "category": category,
                "amount_cents": amount_cents,
                "credits": credits,
                "status": "ACTIVE",
                "metadata": metadata or {},
            }
        )
        .execute()
    )
    if not result.data:
        logger.warning(f"Credit grant {stripe_credit_grant_id} insert returned no data")
        return None
    return result.data[0]


def get_credit_grants_for_user(user_id: str, client: Client | None = None) -> list[dict[str, Any]]:
    client = client or get_supabase_client()
    result = (
        client.table(TABLE)
        .select("id, stripe_credit_grant_id, stripe_customer_id, name, amount_cents, credits, status, created_at")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .execute()
    )
    return result.data or []

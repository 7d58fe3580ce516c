#!/usr/bin/env python3
"""
Credit Purchases Database Module
One row per completed one-time checkout, unique on stripe_payment_id.
"""

import logging
from typing import Any

from supabase import Client

from src.config.supabase_config import get_supabase_client

logger = logging.getLogger(__name__)

PURCHASE_TABLES = {
    "builder": "credit_purchases",
    "cloud": "cloud_credit_purchases",
}


def get_purchase_by_payment_id(
    stripe_payment_id: str, ledger: str = "builder", client: Client | None = None
) -> dict[str, Any] | None:
    """
    Find a purchase already recorded for a Stripe payment

    Args:
        stripe_payment_id: payment_intent id, or free_<session id> for zero-amount checkouts
        ledger: "builder" for app credits, "cloud" for cloud credits
    """
    table = PURCHASE_TABLES.get(ledger)
    if table is None:
        raise ValueError(f"Unknown credit ledger: {ledger}")

    client = client or get_supabase_client()
    result = (
        client.table(table)
        .select("id, user_id, credits, amount_paid, stripe_payment_id, status, created_at")
        .eq("stripe_payment_id", stripe_payment_id)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None

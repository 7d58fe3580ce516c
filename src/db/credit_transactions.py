#!/usr/bin/env python3
"""
Credit Transactions Database Module
Append-only audit trail of every credit balance change.

MONTHLY_ALLOCATION rows double as the idempotency record for billing events:
their metadata carries the Stripe subscription id (and invoice id for renewals)
and their idempotency_key is unique per (user_id, type).
"""

import logging
from datetime import datetime
from typing import Any

from supabase import Client

from src.config.supabase_config import get_supabase_client
from src.schemas.common import CreditTransactionType

logger = logging.getLogger(__name__)

TABLE = "credit_transactions"

_ALLOCATION_COLUMNS = "id, user_id, amount, type, description, metadata, idempotency_key, created_at"


def subscription_key(subscription_id: str) -> str:
    return f"subscription:{subscription_id}"


def invoice_key(invoice_id: str) -> str:
    return f"invoice:{invoice_id}"


def checkout_key(session_id: str) -> str:
    return f"checkout:{session_id}"


def cancellation_key(subscription_id: str) -> str:
    return f"cancellation:{subscription_id}"


def log_credit_transaction(
    user_id: str,
    amount: int,
    transaction_type: CreditTransactionType | str,
    description: str,
    metadata: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
    client: Client | None = None,
) -> dict[str, Any] | None:
    """
    Insert a standalone transaction row

    Billing transitions do not use this: their entry is written inside the
    apply_ledger_transition RPC together with the balance change.

    Returns:
        The inserted row, or None if the insert failed
    """
    client = client or get_supabase_client()
    try:
        result = (
            client.table(TABLE)
            .insert(
                {
                    "user_id": user_id,
                    "amount": amount,
                    "type": CreditTransactionType(transaction_type).value,
                    "description": description,
                    "metadata": metadata or {},
                    "idempotency_key": idempotency_key,
                }
            )
            .execute()
        )
    except Exception as e:
        logger.error(f"Failed to log credit transaction for user {user_id}: {e}", exc_info=True)
        return None

    return result.data[0] if result.data else None


def find_allocations_by_metadata(
    user_id: str, field: str, value: str, client: Client | None = None
) -> list[dict[str, Any]]:
    """
    MONTHLY_ALLOCATION rows whose metadata[field] equals value.

    Covers rows written before idempotency_key was introduced.
    """
    client = client or get_supabase_client()
    result = (
        client.table(TABLE)
        .select(_ALLOCATION_COLUMNS)
        .eq("user_id", user_id)
        .eq("type", CreditTransactionType.MONTHLY_ALLOCATION.value)
        .eq(f"metadata->>{field}", value)
        .execute()
    )
    return result.data or []


def find_allocation_by_key(
    user_id: str, idempotency_key: str, client: Client | None = None
) -> dict[str, Any] | None:
    client = client or get_supabase_client()
    result = (
        client.table(TABLE)
        .select(_ALLOCATION_COLUMNS)
        .eq("user_id", user_id)
        .eq("type", CreditTransactionType.MONTHLY_ALLOCATION.value)
        .eq("idempotency_key", idempotency_key)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def find_allocations_since(
    user_id: str, since: datetime, client: Client | None = None
) -> list[dict[str, Any]]:
    """MONTHLY_ALLOCATION rows created at or after `since`, newest first."""
    client = client or get_supabase_client()
    result = (
        client.table(TABLE)
        .select(_ALLOCATION_COLUMNS)
        .eq("user_id", user_id)
        .eq("type", CreditTransactionType.MONTHLY_ALLOCATION.value)
        .gte("created_at", since.isoformat())
        .order("created_at", desc=True)
        .execute()
    )
    return result.data or []


def get_recent_transactions(
    user_id: str, limit: int = 10, client: Client | None = None
) -> list[dict[str, Any]]:
    client = client or get_supabase_client()
    result = (
        client.table(TABLE)
        .select("id, amount, type, description, metadata, created_at")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return result.data or []

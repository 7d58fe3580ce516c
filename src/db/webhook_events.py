#!/usr/bin/env python3
"""
Webhook Event Tracking Database Module
Delivery receipts for Stripe webhook events.

These rows answer "did we receive / process this event, and how many tries did
it take". They are NOT the idempotency mechanism: a receipt is written before
reconciliation runs, and the ledger's transaction log decides whether a
billing event was already applied.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from src.config.supabase_config import execute_with_retry
from src.schemas.common import WebhookEventStatus

logger = logging.getLogger(__name__)

TABLE = "stripe_webhook_events"

_missing_table_warning_logged = False


def _maybe_log_missing_table_hint(error: Exception) -> None:
    """
    Emit a single actionable warning when the stripe_webhook_events table
    is missing from the Supabase schema cache so operators know to run migrations.
    """
    global _missing_table_warning_logged

    if _missing_table_warning_logged:
        return

    message = str(error)
    if TABLE in message or "PGRST205" in message:
        logger.warning(
            "stripe_webhook_events table is unavailable in Supabase (likely migrations not applied "
            "or schema cache stale). Apply supabase/migrations/20250708000000_credit_ledger.sql, "
            "then run NOTIFY pgrst, 'reload schema'; to refresh PostgREST."
        )
        _missing_table_warning_logged = True


def record_event_received(
    event_id: str,
    event_type: str,
    user_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """
    Record receipt of a webhook event

    Args:
        event_id: Stripe event ID (evt_xxx)
        event_type: Stripe event type (e.g., invoice.payment_succeeded)
        user_id: User ID associated with the event (if applicable)
        metadata: Additional event metadata for debugging

    Returns:
        True if this is the first receipt, False for a redelivery or on error
    """
    try:

        def _record_event(client):
            return (
                client.table(TABLE)
                .upsert(
                    {
                        "event_id": event_id,
                        "event_type": event_type,
                        "user_id": user_id,
                        "status": WebhookEventStatus.RECEIVED.value,
                        "metadata": metadata or {},
                        "received_at": datetime.now(UTC).isoformat(),
                    },
                    on_conflict="event_id",
                    ignore_duplicates=True,
                )
                .execute()
            )

        result = execute_with_retry(
            _record_event, max_retries=2, retry_delay=0.2, operation_name="record_event_received"
        )

        if result.data:
            logger.info(f"Recorded webhook event receipt: {event_id} ({event_type})")
            return True

        logger.info(f"Webhook event {event_id} redelivered; receipt already exists")
        return False

    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error recording webhook event receipt: {e}", exc_info=True)
        return False


def get_webhook_event(event_id: str) -> dict[str, Any] | None:
    """
    Get the receipt for a webhook event

    Args:
        event_id: Stripe event ID (evt_xxx)

    Returns:
        Event details if found, None otherwise
    """
    try:

        def _get_event(client):
            return client.table(TABLE).select("*").eq("event_id", event_id).execute()

        result = execute_with_retry(
            _get_event, max_retries=2, retry_delay=0.2, operation_name="get_webhook_event"
        )

        if result.data:
            return result.data[0]
        return None

    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error getting webhook event: {e}", exc_info=True)
        return None


def mark_event_attempt(event_id: str) -> int:
    """
    Increment the attempt counter before a processing run

    Returns:
        The attempt number now being made (1 for the first run), 0 on error
    """
    try:
        existing = get_webhook_event(event_id)
        attempts = ((existing or {}).get("attempts") or 0) + 1

        def _mark_attempt(client):
            return (
                client.table(TABLE)
                .update({"attempts": attempts})
                .eq("event_id", event_id)
                .execute()
            )

        execute_with_retry(
            _mark_attempt, max_retries=2, retry_delay=0.2, operation_name="mark_event_attempt"
        )
        return attempts

    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error marking webhook attempt for {event_id}: {e}", exc_info=True)
        return 0


def _set_event_status(
    event_id: str,
    status: WebhookEventStatus,
    last_error: str | None = None,
    user_id: str | None = None,
) -> bool:
    update: dict[str, Any] = {"status": status.value, "last_error": last_error}
    if status == WebhookEventStatus.PROCESSED:
        update["processed_at"] = datetime.now(UTC).isoformat()
    if user_id:
        update["user_id"] = user_id

    try:

        def _update_event(client):
            return client.table(TABLE).update(update).eq("event_id", event_id).execute()

        result = execute_with_retry(
            _update_event, max_retries=2, retry_delay=0.2, operation_name="set_event_status"
        )
        return bool(result.data)

    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error setting webhook event {event_id} to {status.value}: {e}", exc_info=True)
        return False


def mark_event_processed(event_id: str, user_id: str | None = None) -> bool:
    return _set_event_status(event_id, WebhookEventStatus.PROCESSED, user_id=user_id)


def mark_event_failed(event_id: str, error: str) -> bool:
    # Column is for humans; keep it bounded
    return _set_event_status(event_id, WebhookEventStatus.FAILED, last_error=error[:2000])


def cleanup_old_events(days: int = 90) -> int:
    """
    Clean up old webhook receipts (older than specified days)

    Args:
        days: Number of days to keep events (default 90)

    Returns:
        Number of events deleted
    """
    try:
        cutoff_dt = (datetime.now(UTC) - timedelta(days=days)).isoformat()

        def _cleanup_events(client):
            return client.table(TABLE).delete().lt("received_at", cutoff_dt).execute()

        result = execute_with_retry(
            _cleanup_events, max_retries=2, retry_delay=0.2, operation_name="cleanup_old_events"
        )

        count = len(result.data) if result.data else 0
        logger.info(f"Cleaned up {count} old webhook events (older than {days} days)")

        return count

    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error cleaning up old events: {e}", exc_info=True)
        return 0

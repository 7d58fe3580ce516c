#!/usr/bin/env python3
"""
Tests for Stripe webhook delivery receipts

Tests cover:
- First receipt vs. redelivery
- Attempt counting and status transitions
- HTTP/2 connection errors retried through execute_with_retry
- Cleanup of old receipts
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import Mock, patch

import pytest
from httpcore import RemoteProtocolError

from src.db.webhook_events import (
    cleanup_old_events,
    get_webhook_event,
    mark_event_attempt,
    mark_event_failed,
    mark_event_processed,
    record_event_received,
)


@pytest.fixture
def client(sb):
    with patch("src.config.supabase_config.get_supabase_client", return_value=sb):
        yield sb


class TestRecordEventReceived:
    def test_first_receipt(self, client):
        assert record_event_received("evt_1", "invoice.payment_succeeded", user_id="user-1") is True

        event = get_webhook_event("evt_1")
        assert event["status"] == "received"
        assert event["event_type"] == "invoice.payment_succeeded"
        assert event["user_id"] == "user-1"

    def test_redelivery_keeps_original_receipt(self, client):
        record_event_received("evt_1", "invoice.payment_succeeded")
        mark_event_processed("evt_1")

        assert record_event_received("evt_1", "invoice.payment_succeeded") is False
        assert get_webhook_event("evt_1")["status"] == "processed"
        assert len(client.rows("stripe_webhook_events")) == 1

    def test_database_error_is_logged_not_raised(self):
        with patch("src.db.webhook_events.execute_with_retry", side_effect=RuntimeError("table missing")):
            assert record_event_received("evt_1", "invoice.payment_succeeded") is False


class TestStatusTransitions:
    def test_attempts_increment(self, client):
        record_event_received("evt_1", "customer.subscription.created")

        assert mark_event_attempt("evt_1") == 1
        assert mark_event_attempt("evt_1") == 2
        assert get_webhook_event("evt_1")["attempts"] == 2

    def test_failed_then_processed(self, client):
        record_event_received("evt_1", "customer.subscription.created")

        assert mark_event_failed("evt_1", "GatewayError: Stripe unavailable") is True
        event = get_webhook_event("evt_1")
        assert event["status"] == "failed"
        assert event["last_error"] == "GatewayError: Stripe unavailable"

        assert mark_event_processed("evt_1", user_id="user-1") is True
        event = get_webhook_event("evt_1")
        assert event["status"] == "processed"
        assert event["last_error"] is None
        assert event["user_id"] == "user-1"
        assert event["processed_at"] is not None

    def test_failure_message_is_bounded(self, client):
        record_event_received("evt_1", "invoice.payment_succeeded")

        mark_event_failed("evt_1", "x" * 5000)

        assert len(get_webhook_event("evt_1")["last_error"]) == 2000

    def test_unknown_event(self, client):
        assert get_webhook_event("evt_missing") is None
        assert mark_event_processed("evt_missing") is False


class TestRetryOnProtocolErrors:
    @patch("src.config.supabase_config.time.sleep")
    @patch("src.config.supabase_config.reset_supabase_client")
    def test_http2_error_is_retried(self, mock_reset, mock_sleep, sb):
        calls = {"n": 0}

        def flaky_client():
            calls["n"] += 1
            if calls["n"] == 1:
                broken = Mock()
                broken.table.side_effect = RemoteProtocolError("ConnectionState.CLOSED")
                return broken
            return sb

        with patch("src.config.supabase_config.get_supabase_client", side_effect=flaky_client):
            assert record_event_received("evt_1", "invoice.payment_succeeded") is True

        mock_reset.assert_called_once()
        assert sb.rows("stripe_webhook_events", event_id="evt_1")


def test_cleanup_old_events(client):
    old = (datetime.now(UTC) - timedelta(days=120)).isoformat()
    recent = datetime.now(UTC).isoformat()
    client.tables["stripe_webhook_events"].extend(
        [
            {"event_id": "evt_old", "status": "processed", "received_at": old},
            {"event_id": "evt_new", "status": "processed", "received_at": recent},
        ]
    )

    assert cleanup_old_events(days=90) == 1
    assert [e["event_id"] for e in client.rows("stripe_webhook_events")] == ["evt_new"]

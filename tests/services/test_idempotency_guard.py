"""
Tests for transaction-log based duplicate detection
"""

from datetime import UTC, datetime, timedelta

import pytest

from src.services.idempotency_guard import NOT_DUPLICATE, IdempotencyGuard

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


def _allocation(sb, created_at, **fields):
    row = {
        "user_id": "user-1",
        "amount": 400,
        "type": "MONTHLY_ALLOCATION",
        "metadata": {},
        "idempotency_key": None,
        "created_at": created_at.isoformat(),
    }
    row.update(fields)
    return sb.insert_row("credit_transactions", row)


@pytest.fixture
def guard(sb):
    return IdempotencyGuard(sb, recent_window_seconds=120, now=lambda: NOW)


def test_not_duplicate_is_falsy():
    assert not NOT_DUPLICATE
    assert NOT_DUPLICATE.matches == []


def test_activation_detected_by_idempotency_key(sb, guard):
    _allocation(sb, NOW - timedelta(days=3), idempotency_key="subscription:sub_1")

    verdict = guard.check_activation("user-1", "sub_1", "pro-400")

    assert verdict
    assert "sub_1" in verdict.reason


def test_activation_detected_by_legacy_metadata(sb, guard):
    _allocation(sb, NOW - timedelta(days=3), metadata={"subscriptionId": "sub_1"})

    assert guard.check_activation("user-1", "sub_1", "pro-400")


def test_other_users_allocations_do_not_match(sb, guard):
    _allocation(sb, NOW, user_id="user-2", idempotency_key="subscription:sub_1")

    assert not guard.check_activation("user-1", "sub_1", "pro-400")


def test_purchase_rows_are_not_allocations(sb, guard):
    _allocation(sb, NOW, type="PURCHASE", metadata={"subscriptionId": "sub_1", "tierId": "pro-400"})

    assert not guard.check_activation("user-1", "sub_1", "pro-400")


def test_recent_same_tier_allocation_blocks_activation(sb, guard):
    _allocation(sb, NOW - timedelta(seconds=30), metadata={"tierId": "pro-400", "subscriptionId": "sub_0"})

    verdict = guard.check_activation("user-1", "sub_1", "pro-400")

    assert verdict
    assert len(verdict.matches) == 1


def test_allocation_outside_window_is_ignored(sb, guard):
    _allocation(sb, NOW - timedelta(seconds=121), metadata={"tierId": "pro-400"})

    assert not guard.check_activation("user-1", "sub_1", "pro-400")


def test_window_zero_disables_heuristic(sb):
    guard = IdempotencyGuard(sb, recent_window_seconds=0, now=lambda: NOW)
    _allocation(sb, NOW, metadata={"tierId": "pro-400"})

    assert guard.recent_tier_allocation("user-1", "pro-400") == []
    assert not guard.check_activation("user-1", "sub_1", "pro-400")


def test_upgrade_window_only_counts_upgrades(sb, guard):
    _allocation(sb, NOW - timedelta(seconds=10), metadata={"tierId": "pro-800"})
    assert not guard.check_upgrade("user-1", "sub_2", "pro-800")

    _allocation(sb, NOW - timedelta(seconds=5), metadata={"tierId": "pro-800", "isUpgrade": True})
    assert guard.check_upgrade("user-1", "sub_2", "pro-800")


def test_renewal_keyed_by_invoice_not_subscription(sb, guard):
    _allocation(
        sb,
        NOW - timedelta(days=30),
        idempotency_key="invoice:in_1",
        metadata={"subscriptionId": "sub_1", "invoiceId": "in_1"},
    )

    assert guard.check_renewal("user-1", "in_1")
    assert not guard.check_renewal("user-1", "in_2")


def test_renewal_detected_by_legacy_invoice_metadata(sb, guard):
    _allocation(sb, NOW - timedelta(days=30), metadata={"invoiceId": "in_7"})

    verdict = guard.check_renewal("user-1", "in_7")

    assert verdict.duplicate is True
    assert verdict.matches[0]["metadata"]["invoiceId"] == "in_7"

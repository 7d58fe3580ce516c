"""
Tests for credit rollover arithmetic and subscription change classification
"""

from datetime import UTC, datetime

import pytest

from src.schemas.common import MembershipTier
from src.services.credit_rollover import (
    Activation,
    LedgerSnapshot,
    RenewalSkip,
    Upgrade,
    classify_subscription_change,
    compute_activation,
    compute_cancellation_forfeit,
    compute_renewal,
    compute_upgrade,
    needs_base_plan_repair,
)

PERIOD_END = datetime(2025, 2, 1, tzinfo=UTC)


def _ledger(**overrides):
    values = {"user_id": "user-1"}
    values.update(overrides)
    return LedgerSnapshot(**values)


class TestClassifySubscriptionChange:
    def test_free_user_is_activation(self):
        change = classify_subscription_change(_ledger(), "sub_new")
        assert change == Activation(subscription_id="sub_new")

    def test_free_user_with_stale_subscription_id_is_activation(self):
        ledger = _ledger(stripe_subscription_id="sub_old", membership_tier=MembershipTier.FREE)
        assert isinstance(classify_subscription_change(ledger, "sub_new"), Activation)

    def test_same_subscription_on_paid_tier_is_renewal_skip(self):
        ledger = _ledger(stripe_subscription_id="sub_1", membership_tier=MembershipTier.PRO)
        assert classify_subscription_change(ledger, "sub_1") == RenewalSkip(subscription_id="sub_1")

    def test_different_subscription_on_paid_tier_is_upgrade(self):
        ledger = _ledger(stripe_subscription_id="sub_1", membership_tier=MembershipTier.PRO)
        change = classify_subscription_change(ledger, "sub_2")
        assert change == Upgrade(subscription_id="sub_2", previous_subscription_id="sub_1")

    def test_paid_tier_without_stored_subscription_is_activation(self):
        ledger = _ledger(membership_tier=MembershipTier.ENTERPRISE)
        assert isinstance(classify_subscription_change(ledger, "sub_2"), Activation)


class TestLedgerSnapshot:
    def test_from_row_defaults_nulls_to_zero_and_free(self):
        snapshot = LedgerSnapshot.from_row(
            {"id": "u", "credit_balance": None, "membership_tier": None}
        )
        assert snapshot.credit_balance == 0
        assert snapshot.base_plan_credits == 0
        assert snapshot.is_free

    def test_needs_base_plan_repair(self):
        assert needs_base_plan_repair(_ledger(credit_balance=300, base_plan_credits=0))
        assert not needs_base_plan_repair(_ledger(credit_balance=0, base_plan_credits=0))
        assert not needs_base_plan_repair(_ledger(credit_balance=300, base_plan_credits=400))


class TestActivation:
    def test_existing_balance_becomes_carry_over(self):
        balances = compute_activation(50, 400, PERIOD_END)
        assert balances.credit_balance == 450
        assert balances.base_plan_credits == 400
        assert balances.carry_over_credits == 50
        assert balances.carry_over_expires_at == PERIOD_END

    def test_no_existing_balance_has_no_carry_over_expiry(self):
        balances = compute_activation(0, 400, PERIOD_END)
        assert balances.credit_balance == 400
        assert balances.carry_over_credits == 0
        assert balances.carry_over_expires_at is None

    def test_negative_balance_is_not_carried(self):
        balances = compute_activation(-20, 100, PERIOD_END)
        assert balances.credit_balance == 100
        assert balances.carry_over_credits == 0


class TestUpgrade:
    def test_entire_balance_carries_over(self):
        balances = compute_upgrade(300, 800, PERIOD_END)
        assert balances.credit_balance == 1100
        assert balances.base_plan_credits == 800
        assert balances.carry_over_credits == 300
        assert balances.carry_over_expires_at == PERIOD_END

    def test_first_subscription_carries_nothing(self):
        balances = compute_upgrade(300, 800, PERIOD_END, is_first_subscription=True)
        assert balances.credit_balance == 800
        assert balances.carry_over_credits == 0
        assert balances.carry_over_expires_at is None

    def test_upgrade_carries_old_carry_over_again(self):
        # Upgrade ignores the carry-over split; renewal does not
        upgrade = compute_upgrade(500, 800, PERIOD_END)
        renewal = compute_renewal(500, 200, 800, PERIOD_END)
        assert upgrade.carry_over_credits == 500
        assert renewal.carry_over_credits == 300


class TestRenewal:
    @pytest.mark.parametrize(
        "quota,used,expected_balance,expected_carry",
        [
            (400, 200, 600, 200),
            (400, 400, 400, 0),
            (400, 0, 800, 400),
            (100, 50, 150, 50),
            (800, 300, 1300, 500),
            (1200, 1000, 1400, 200),
        ],
    )
    def test_unused_base_plan_rolls_over(self, quota, used, expected_balance, expected_carry):
        balances = compute_renewal(quota - used, 0, quota, PERIOD_END)
        assert balances.credit_balance == expected_balance
        assert balances.base_plan_credits == quota
        assert balances.carry_over_credits == expected_carry
        assert balances.credit_balance == balances.base_plan_credits + balances.carry_over_credits

    def test_old_carry_over_expires(self):
        # 600 = 400 base + 200 carry, 300 used -> 300 left, all attributed to carry first
        balances = compute_renewal(300, 200, 400, PERIOD_END)
        assert balances.unused_from_base_plan == 100
        assert balances.expired_carry_over == 200
        assert balances.credit_balance == 500
        assert balances.carry_over_credits == 100

    def test_balance_below_carry_over_rolls_nothing(self):
        balances = compute_renewal(50, 200, 400, PERIOD_END)
        assert balances.unused_from_base_plan == 0
        assert balances.credit_balance == 400
        assert balances.carry_over_expires_at is None

    def test_multi_cycle_chain(self):
        first = compute_renewal(400 - 200, 0, 400, PERIOD_END)
        assert (first.credit_balance, first.carry_over_credits) == (600, 200)

        second = compute_renewal(first.credit_balance - 300, first.carry_over_credits, 400, PERIOD_END)
        assert (second.credit_balance, second.carry_over_credits) == (500, 100)


def test_cancellation_forfeits_entire_balance():
    assert compute_cancellation_forfeit(500) == 500
    assert compute_cancellation_forfeit(0) == 0

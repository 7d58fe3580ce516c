"""
Credit rollover arithmetic and subscription transition classification.

Pure functions only: no database, no Stripe. The reconciliation engine reads
ledger state, asks this module what the transition is and what the new
balances are, and commits the result.

Rollover rules:

- Activation: everything the user already holds becomes carry-over, the new
  tier's quota becomes the base plan.
- Upgrade: the entire current balance carries over (upgrades are instant and
  grant the full new quota, no proration).
- Renewal: only quota unused from the *current* base plan rolls forward. The
  previous carry-over expires at the renewal boundary and is not rolled again.
- Cancellation: every credit is forfeited.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from src.schemas.common import MembershipTier


@dataclass(frozen=True)
class LedgerSnapshot:
    """The fields of a user ledger row that drive classification and rollover."""

    user_id: str
    credit_balance: int = 0
    base_plan_credits: int = 0
    carry_over_credits: int = 0
    membership_tier: MembershipTier = MembershipTier.FREE
    stripe_subscription_id: str | None = None
    stripe_customer_id: str | None = None
    email: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "LedgerSnapshot":
        tier = row.get("membership_tier") or MembershipTier.FREE.value
        return cls(
            user_id=row["id"],
            credit_balance=row.get("credit_balance") or 0,
            base_plan_credits=row.get("base_plan_credits") or 0,
            carry_over_credits=row.get("carry_over_credits") or 0,
            membership_tier=MembershipTier(tier),
            stripe_subscription_id=row.get("stripe_subscription_id"),
            stripe_customer_id=row.get("stripe_customer_id"),
            email=row.get("email"),
        )

    @property
    def is_free(self) -> bool:
        return self.membership_tier == MembershipTier.FREE


# ==================== Transitions ====================


@dataclass(frozen=True)
class Activation:
    subscription_id: str


@dataclass(frozen=True)
class Upgrade:
    subscription_id: str
    previous_subscription_id: str


@dataclass(frozen=True)
class RenewalSkip:
    """subscription.updated for the subscription already on file; the invoice drives renewal."""

    subscription_id: str


@dataclass(frozen=True)
class Renewal:
    subscription_id: str
    invoice_id: str


@dataclass(frozen=True)
class Cancellation:
    subscription_id: str


SubscriptionChange = Activation | Upgrade | RenewalSkip


def classify_subscription_change(
    ledger: LedgerSnapshot, incoming_subscription_id: str
) -> SubscriptionChange:
    """
    Decide what a customer.subscription.created/updated event means for the ledger.

    - same subscription on file and tier not FREE: a renewal, handled by the invoice
    - a different subscription on file and tier not FREE: an upgrade
    - anything else: an activation
    """
    stored = ledger.stripe_subscription_id

    if stored == incoming_subscription_id and not ledger.is_free:
        return RenewalSkip(subscription_id=incoming_subscription_id)

    if stored and stored != incoming_subscription_id and not ledger.is_free:
        return Upgrade(subscription_id=incoming_subscription_id, previous_subscription_id=stored)

    return Activation(subscription_id=incoming_subscription_id)


def needs_base_plan_repair(ledger: LedgerSnapshot) -> bool:
    """Ledgers from before base/carry-over tracking hold credits with no base plan."""
    return ledger.base_plan_credits == 0 and ledger.credit_balance > 0


# ==================== Balances ====================


@dataclass(frozen=True)
class LedgerBalances:
    credit_balance: int
    base_plan_credits: int
    carry_over_credits: int
    carry_over_expires_at: datetime | None


@dataclass(frozen=True)
class RenewalBalances(LedgerBalances):
    unused_from_base_plan: int = 0
    expired_carry_over: int = 0


def _expiry(carry_over: int, period_end: datetime) -> datetime | None:
    # carry_over_expires_at is only meaningful while there is carry-over
    return period_end if carry_over > 0 else None


def compute_activation(existing_balance: int, tier_quota: int, period_end: datetime) -> LedgerBalances:
    carry_over = max(0, existing_balance)
    return LedgerBalances(
        credit_balance=carry_over + tier_quota,
        base_plan_credits=tier_quota,
        carry_over_credits=carry_over,
        carry_over_expires_at=_expiry(carry_over, period_end),
    )


def compute_upgrade(
    current_balance: int,
    tier_quota: int,
    period_end: datetime,
    is_first_subscription: bool = False,
) -> LedgerBalances:
    leftover = 0 if is_first_subscription else max(0, current_balance)
    return LedgerBalances(
        credit_balance=leftover + tier_quota,
        base_plan_credits=tier_quota,
        carry_over_credits=leftover,
        carry_over_expires_at=_expiry(leftover, period_end),
    )


def compute_renewal(
    current_balance: int,
    current_carry_over: int,
    tier_quota: int,
    period_end: datetime,
) -> RenewalBalances:
    """
    Roll unused base-plan credits into the next cycle.

    The remaining balance is attributed to the old carry-over first, so only
    what exceeds it counts as unused base plan. The old carry-over expires
    here and never rolls twice.

    Example:
        400 base, 0 carry, 200 used -> balance 200 -> renew at 400:
        unused 200, new balance 600 (400 base + 200 carry)
    """
    unused_from_base_plan = max(0, current_balance - current_carry_over)
    return RenewalBalances(
        credit_balance=unused_from_base_plan + tier_quota,
        base_plan_credits=tier_quota,
        carry_over_credits=unused_from_base_plan,
        carry_over_expires_at=_expiry(unused_from_base_plan, period_end),
        unused_from_base_plan=unused_from_base_plan,
        expired_carry_over=current_carry_over,
    )


def compute_cancellation_forfeit(current_balance: int) -> int:
    """Credits removed on cancellation (logged as a negative REFUND)."""
    return current_balance

"""
Idempotency checks for billing transitions.

The transaction log is the source of truth for "was this Stripe event already
applied". Each transition is keyed by the identifier that is unique to it:

- activation / upgrade: the subscription id (one allocation per subscription)
- renewal: the invoice id (the subscription id repeats every cycle)

The pre-check here keeps retries cheap and quiet. The unique index on
(user_id, type, idempotency_key) enforced inside apply_ledger_transition is
what closes the race between two concurrent deliveries.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from supabase import Client

from src.db.credit_transactions import (
    find_allocation_by_key,
    find_allocations_by_metadata,
    find_allocations_since,
    invoice_key,
    subscription_key,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdempotencyVerdict:
    duplicate: bool
    reason: str | None = None
    matches: list[dict[str, Any]] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.duplicate


NOT_DUPLICATE = IdempotencyVerdict(duplicate=False)


class IdempotencyGuard:
    """Query-based duplicate detection over credit_transactions."""

    def __init__(
        self,
        client: Client,
        recent_window_seconds: int = 0,
        now: Callable[[], datetime] | None = None,
    ):
        self.client = client
        # 0 disables the recent-allocation heuristic
        self.recent_window_seconds = recent_window_seconds
        self._now = now or (lambda: datetime.now(UTC))

    # ==================== Queries ====================

    def subscription_already_allocated(
        self, user_id: str, subscription_id: str
    ) -> list[dict[str, Any]]:
        row = find_allocation_by_key(user_id, subscription_key(subscription_id), client=self.client)
        if row:
            return [row]
        return find_allocations_by_metadata(
            user_id, "subscriptionId", subscription_id, client=self.client
        )

    def invoice_already_allocated(self, user_id: str, invoice_id: str) -> list[dict[str, Any]]:
        row = find_allocation_by_key(user_id, invoice_key(invoice_id), client=self.client)
        if row:
            return [row]
        return find_allocations_by_metadata(user_id, "invoiceId", invoice_id, client=self.client)

    def recent_tier_allocation(
        self, user_id: str, tier_id: str, upgrades_only: bool = False
    ) -> list[dict[str, Any]]:
        """
        MONTHLY_ALLOCATION entries for the same tier inside the recent window.

        Catches a duplicate delivery that raced ahead of the first commit, for
        ledgers whose earlier rows predate idempotency keys.
        """
        if self.recent_window_seconds <= 0 or not tier_id:
            return []

        since = self._now() - timedelta(seconds=self.recent_window_seconds)
        matches = []
        for row in find_allocations_since(user_id, since, client=self.client):
            metadata = row.get("metadata") or {}
            if metadata.get("tierId") != tier_id:
                continue
            if upgrades_only and metadata.get("isUpgrade") is not True:
                continue
            matches.append(row)
        return matches

    # ==================== Per-transition checks ====================

    def check_activation(self, user_id: str, subscription_id: str, tier_id: str) -> IdempotencyVerdict:
        matches = self.subscription_already_allocated(user_id, subscription_id)
        if matches:
            return IdempotencyVerdict(
                duplicate=True,
                reason=f"credits already allocated for subscription {subscription_id}",
                matches=matches,
            )

        matches = self.recent_tier_allocation(user_id, tier_id)
        if matches:
            return IdempotencyVerdict(
                duplicate=True,
                reason=f"tier {tier_id} allocated within the last {self.recent_window_seconds}s",
                matches=matches,
            )

        return NOT_DUPLICATE

    def check_upgrade(self, user_id: str, subscription_id: str, tier_id: str) -> IdempotencyVerdict:
        matches = self.subscription_already_allocated(user_id, subscription_id)
        if matches:
            return IdempotencyVerdict(
                duplicate=True,
                reason=f"upgrade to subscription {subscription_id} already processed",
                matches=matches,
            )

        matches = self.recent_tier_allocation(user_id, tier_id, upgrades_only=True)
        if matches:
            return IdempotencyVerdict(
                duplicate=True,
                reason=f"upgrade to tier {tier_id} processed within the last {self.recent_window_seconds}s",
                matches=matches,
            )

        return NOT_DUPLICATE

    def check_renewal(self, user_id: str, invoice_id: str) -> IdempotencyVerdict:
        matches = self.invoice_already_allocated(user_id, invoice_id)
        if matches:
            return IdempotencyVerdict(
                duplicate=True,
                reason=f"credits already allocated for invoice {invoice_id}",
                matches=matches,
            )
        return NOT_DUPLICATE

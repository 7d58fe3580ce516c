"""
Credit ledger reconciliation engine.

Consumes Stripe webhook payloads and applies exactly one ledger mutation per
distinct billing event: activation, upgrade, renewal or cancellation, plus
one-time credit purchases from checkout.

Every handler follows the same shape:
1. resolve the user / subscription (unresolvable -> logged no-op)
2. consult the idempotency guard (already applied -> skipped)
3. resolve the tier (unknown -> fail closed, credits untouched)
4. perform Stripe side effects (ambiguous failures raise for queue retry)
5. re-read the ledger, compute balances from it and commit ledger +
   subscription + transaction log through one RPC pinned to that balance
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, NamedTuple

from postgrest import APIError
from supabase import Client

from src.config.config import Config
from src.config.pricing_tiers import CLOUD_CENTS_PER_CREDIT, Tier, get_tier_by_id, membership_tier_for
from src.db.credit_grants import record_credit_grant
from src.db.credit_purchases import get_purchase_by_payment_id
from src.db.credit_transactions import (
    cancellation_key,
    checkout_key,
    invoice_key,
    subscription_key,
)
from src.db.ledger_commits import LedgerCommit, apply_ledger_transition
from src.db.subscriptions import (
    extend_subscription_period,
    get_active_subscription_for_user,
    get_subscription_by_stripe_id,
    update_subscription_status,
)
from src.db.users import (
    get_user_by_id,
    get_user_by_stripe_customer,
    get_user_by_subscription_id,
    repair_base_plan_credits,
)
from src.schemas.common import CreditTransactionType, MembershipTier, SubscriptionStatus
from src.schemas.payments import TransitionResult, TransitionStatus
from src.services.credit_rollover import (
    Activation,
    Cancellation,
    LedgerBalances,
    LedgerSnapshot,
    Renewal,
    RenewalSkip,
    Upgrade,
    classify_subscription_change,
    compute_activation,
    compute_cancellation_forfeit,
    compute_renewal,
    compute_upgrade,
    needs_base_plan_repair,
)
from src.services.idempotency_guard import IdempotencyGuard
from src.services.stripe_gateway import (
    StripeGateway,
    customer_id_of,
    get_value,
    id_of,
    invoice_period,
    invoice_subscription_id,
    metadata_to_dict,
    price_id_of,
    subscription_period_end,
)
from src.utils.exceptions import (
    DuplicateTransitionError,
    GatewayError,
    LedgerCommitError,
    StaleLedgerError,
)

logger = logging.getLogger(__name__)

PAID_MEMBERSHIPS = (MembershipTier.PRO, MembershipTier.ENTERPRISE)
DYNAMIC_PRICE_ID = "dynamic_price"
LEDGER_COMMIT_ATTEMPTS = 3

PURCHASE_LEDGERS = {
    "credit_purchase": "builder",
    "cloud_credit_purchase": "cloud",
}


class AppliedCommit(NamedTuple):
    """Outcome of a commit built from the ledger as it stood at commit time"""

    result: dict[str, Any] | None  # None: a concurrent delivery committed first
    ledger: LedgerSnapshot
    commit: LedgerCommit
    computed: Any


def _coerce_to_int(value: Any) -> int | None:
    """
    Convert metadata values (str, float) into an int.
    Returns None when conversion is not possible.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            return int(float(stripped))
        except (ValueError, TypeError):
            return None
    return None


def _result(
    status: TransitionStatus,
    transition: str,
    user_id: str | None = None,
    message: str = "",
    **details: Any,
) -> TransitionResult:
    return TransitionResult(
        status=status,
        transition=transition,
        user_id=user_id,
        message=message,
        details=details,
    )


class ReconciliationEngine:
    """Applies Stripe billing events to the credit ledger"""

    def __init__(
        self,
        client: Client,
        gateway: StripeGateway,
        guard: IdempotencyGuard | None = None,
        tier_lookup: Callable[[str | None], Tier | None] = get_tier_by_id,
        admin_emails: frozenset[str] | set[str] = frozenset(),
        fallback_period_days: int = 30,
        recent_window_seconds: int = 0,
        now: Callable[[], datetime] | None = None,
    ):
        self.client = client
        self.gateway = gateway
        self._now = now or (lambda: datetime.now(UTC))
        self.guard = guard or IdempotencyGuard(
            client, recent_window_seconds=recent_window_seconds, now=self._now
        )
        self.tier_lookup = tier_lookup
        self.admin_emails = frozenset(email.strip().lower() for email in admin_emails)
        self.fallback_period_days = fallback_period_days

        self._handlers: dict[str, Callable[[Any], TransitionResult]] = {
            "checkout.session.completed": self.handle_checkout_completed,
            "customer.subscription.created": self.handle_subscription_change,
            "customer.subscription.updated": self.handle_subscription_change,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.payment_succeeded": self.handle_invoice_payment_succeeded,
            "invoice.payment_failed": self.handle_invoice_payment_failed,
        }

    @classmethod
    def from_config(cls, client: Client, gateway: StripeGateway | None = None) -> "ReconciliationEngine":
        """Build an engine wired with environment configuration"""
        gateway = gateway or StripeGateway(
            api_key=Config.STRIPE_SECRET_KEY,
            webhook_secret=Config.STRIPE_WEBHOOK_SECRET,
        )
        return cls(
            client=client,
            gateway=gateway,
            admin_emails=Config.ADMIN_EMAILS,
            fallback_period_days=Config.SUBSCRIPTION_FALLBACK_PERIOD_DAYS,
            recent_window_seconds=Config.RECENT_ALLOCATION_WINDOW_SECONDS,
        )

    @property
    def handled_event_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def dispatch(self, event_type: str, payload: Any) -> TransitionResult:
        """Route a Stripe event to its handler"""
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled Stripe event type: {event_type}")
            return _result(
                TransitionStatus.IGNORED, "unhandled", message=f"Unhandled event type {event_type}"
            )
        return handler(payload)

    # ==================== Helpers ====================

    def _fallback_period_end(self) -> datetime:
        return self._now() + timedelta(days=self.fallback_period_days)

    def _is_admin(self, email: str | None) -> bool:
        return bool(email) and email.strip().lower() in self.admin_emails

    def _commit(self, commit: LedgerCommit) -> dict[str, Any] | None:
        """Commit atomically; None means a concurrent delivery already committed it."""
        try:
            return apply_ledger_transition(commit, self.client)
        except DuplicateTransitionError:
            return None

    def _commit_against_latest_ledger(
        self,
        user_id: str,
        build: Callable[[LedgerSnapshot], tuple[LedgerCommit, Any]],
    ) -> AppliedCommit:
        """
        Read the ledger, build the commit from it and commit pinned to that balance.

        Called after every Stripe round trip so the read is as late as possible.
        Usage that still lands before the commit makes the RPC refuse it; the
        ledger is then re-read and the commit rebuilt. After
        LEDGER_COMMIT_ATTEMPTS refusals the StaleLedgerError goes to the queue.
        """
        attempt = 1
        while True:
            user = get_user_by_id(user_id, client=self.client)
            if user is None:
                raise LedgerCommitError(f"User {user_id} disappeared before the ledger commit")

            ledger = LedgerSnapshot.from_row(user)
            commit, computed = build(ledger)
            commit.expected_balance = ledger.credit_balance
            try:
                return AppliedCommit(self._commit(commit), ledger, commit, computed)
            except StaleLedgerError:
                if attempt >= LEDGER_COMMIT_ATTEMPTS:
                    logger.error(
                        f"Ledger for user {user_id} kept changing during commit; "
                        f"giving up after {attempt} attempts"
                    )
                    raise
                logger.info(
                    f"Ledger for user {user_id} changed since it was read "
                    f"(balance was {ledger.credit_balance}); rebuilding commit"
                )
                attempt += 1

    def _resolve_remote_subscription(
        self, subscription_id: str, payload: Any
    ) -> tuple[datetime, str | None]:
        """
        Period end and customer id for a subscription, preferring Stripe's live copy.

        Falls back to the webhook payload, then to now + fallback period.
        """
        remote = None
        try:
            remote = self.gateway.retrieve_subscription(subscription_id)
        except GatewayError as e:
            logger.warning(
                f"Could not retrieve subscription {subscription_id} from Stripe, "
                f"using webhook payload: {e}"
            )

        period_end = subscription_period_end(remote) or subscription_period_end(payload)
        if period_end is None:
            period_end = self._fallback_period_end()
            logger.warning(
                f"No current_period_end for subscription {subscription_id}, "
                f"using {self.fallback_period_days} day fallback: {period_end.isoformat()}"
            )

        customer_id = customer_id_of(remote) or customer_id_of(payload)
        return period_end, customer_id

    def _membership_user_update(
        self,
        balances: LedgerBalances,
        membership: MembershipTier,
        subscription_id: str,
        customer_id: str | None,
        period_end: datetime,
    ) -> dict[str, Any]:
        update = {
            "membership_tier": membership,
            "membership_expires_at": period_end,
            "stripe_subscription_id": subscription_id,
            "last_credit_reset": self._now(),
            "monthly_credits_used": 0,
            "credit_balance": balances.credit_balance,
            "base_plan_credits": balances.base_plan_credits,
            "carry_over_credits": balances.carry_over_credits,
            "carry_over_expires_at": balances.carry_over_expires_at,
        }
        if customer_id:
            update["stripe_customer_id"] = customer_id
        return update

    @staticmethod
    def _subscription_record(
        subscription_id: str, payload: Any, period_end: datetime
    ) -> dict[str, Any]:
        return {
            "stripe_subscription_id": subscription_id,
            "stripe_price_id": price_id_of(payload) or DYNAMIC_PRICE_ID,
            "stripe_current_period_end": period_end,
            "stripe_cancel_at_period_end": bool(get_value(payload, "cancel_at_period_end")),
            "status": SubscriptionStatus.ACTIVE,
        }

    # ==================== Checkout ====================

    def handle_checkout_completed(self, session: Any) -> TransitionResult:
        """
        Finalize a checkout session

        One-time credit purchases are credited here. Subscription checkouts only
        tag the Stripe subscription with the session; quota is granted by the
        subscription.created event.
        """
        session_id = get_value(session, "id")
        metadata = metadata_to_dict(get_value(session, "metadata"))
        user_id = metadata.get("userId")
        checkout_type = metadata.get("type")

        if not user_id:
            logger.error(f"Checkout session {session_id} has no userId in metadata; cannot process")
            return _result(
                TransitionStatus.IGNORED,
                "checkout",
                message="Missing userId in checkout metadata",
                session_id=session_id,
            )

        if checkout_type in PURCHASE_LEDGERS:
            return self._apply_credit_purchase(session, metadata, PURCHASE_LEDGERS[checkout_type])

        if checkout_type == "membership_subscription":
            return self._tag_subscription_checkout(session, metadata)

        logger.info(f"Checkout session {session_id} has unhandled type {checkout_type!r}")
        return _result(
            TransitionStatus.IGNORED,
            "checkout",
            user_id,
            f"Unhandled checkout type {checkout_type}",
            session_id=session_id,
        )

    def _apply_credit_purchase(
        self, session: Any, metadata: dict[str, Any], ledger: str
    ) -> TransitionResult:
        session_id = get_value(session, "id")
        user_id = metadata["userId"]
        transition = "cloud_credit_purchase" if ledger == "cloud" else "credit_purchase"

        credits = _coerce_to_int(metadata.get("credits"))
        if not credits or credits <= 0:
            logger.error(
                f"Checkout session {session_id} for user {user_id} has invalid credits "
                f"{metadata.get('credits')!r}; manual review required"
            )
            return _result(
                TransitionStatus.IGNORED,
                transition,
                user_id,
                "Invalid credits in checkout metadata",
                session_id=session_id,
            )

        payment_intent_id = id_of(get_value(session, "payment_intent"))
        # Fully discounted checkouts have no payment intent
        stripe_payment_id = payment_intent_id or f"free_{session_id}"
        amount_paid = _coerce_to_int(get_value(session, "amount_total")) or 0

        if get_purchase_by_payment_id(stripe_payment_id, ledger=ledger, client=self.client):
            logger.info(f"Purchase {stripe_payment_id} already credited - skipping")
            return _result(
                TransitionStatus.SKIPPED,
                transition,
                user_id,
                f"Payment {stripe_payment_id} already credited",
                stripe_payment_id=stripe_payment_id,
            )

        user = get_user_by_id(user_id, client=self.client)
        if user is None:
            logger.error(f"Credit purchase for unknown user {user_id} (session {session_id})")
            return _result(
                TransitionStatus.IGNORED, transition, user_id, "User not found", session_id=session_id
            )

        if ledger == "cloud":
            description = f"Purchased {credits} Cloud credits (${amount_paid / 100:.2f})"
            balance_column = "cloud_credit_balance"
        else:
            description = f"Purchased {credits} credits"
            balance_column = "credit_balance"

        commit = LedgerCommit(
            user_id=user_id,
            balance_increments={balance_column: credits},
            transaction={
                "ledger": ledger,
                "amount": credits,
                "type": CreditTransactionType.PURCHASE,
                "description": description,
                "metadata": {"sessionId": session_id, "paymentIntentId": payment_intent_id},
                "idempotency_key": checkout_key(session_id),
            },
            purchase={
                "ledger": ledger,
                "credits": credits,
                "amount_paid": amount_paid,
                "stripe_payment_id": stripe_payment_id,
                "status": "COMPLETED",
            },
        )

        committed = self._commit(commit)
        if committed is None:
            return _result(
                TransitionStatus.SKIPPED,
                transition,
                user_id,
                f"Checkout {session_id} already credited",
                stripe_payment_id=stripe_payment_id,
            )

        new_balance = (committed.get("user") or {}).get(balance_column)
        logger.info(
            f"Added {credits} {'Cloud ' if ledger == 'cloud' else ''}credits to user {user_id} "
            f"(payment {stripe_payment_id}, balance now {new_balance})"
        )

        grant = {}
        if ledger == "cloud":
            grant["credit_grant_id"] = self._grant_cloud_credits(user, credits, session_id, payment_intent_id)

        return _result(
            TransitionStatus.APPLIED,
            transition,
            user_id,
            description,
            credits=credits,
            stripe_payment_id=stripe_payment_id,
            balance=new_balance,
            **grant,
        )

    def _grant_cloud_credits(
        self,
        user: dict[str, Any],
        credits: int,
        session_id: str,
        payment_intent_id: str | None,
    ) -> str | None:
        """
        Mirror a committed cloud purchase as a Stripe Credit Grant so the
        credits offset metered usage invoices.

        The ledger already holds the credits; a failed grant is logged for
        manual follow-up and does not fail the event.
        """
        user_id = user["id"]
        customer_id = user.get("stripe_customer_id")
        if not customer_id:
            logger.info(f"User {user_id} has no Stripe customer; skipping cloud credit grant")
            return None

        amount_cents = credits * CLOUD_CENTS_PER_CREDIT
        name = f"Shipper Cloud Credits - {credits} credits"
        metadata = {
            "userId": user_id,
            "credits": str(credits),
            "source": "shipper-cloud",
            "sessionId": session_id,
            "purchaseType": "cloud_credits",
        }
        if payment_intent_id:
            metadata["paymentIntentId"] = payment_intent_id

        try:
            grant = self.gateway.create_credit_grant(customer_id, amount_cents, name, metadata=metadata)
        except GatewayError as e:
            logger.error(
                f"Failed to create cloud credit grant for user {user_id} (session {session_id}): {e}",
                exc_info=True,
            )
            return None

        grant_id = id_of(grant)
        try:
            record_credit_grant(
                user_id,
                grant_id,
                customer_id,
                name,
                amount_cents,
                credits,
                metadata=metadata,
                client=self.client,
            )
        except APIError as e:
            logger.error(
                f"Credit grant {grant_id} created at Stripe but not recorded for user {user_id}: {e}",
                exc_info=True,
            )

        logger.info(f"Cloud credit grant {grant_id} created for user {user_id} ({credits} credits)")
        return grant_id

    def _tag_subscription_checkout(self, session: Any, metadata: dict[str, Any]) -> TransitionResult:
        session_id = get_value(session, "id")
        user_id = metadata["userId"]
        subscription_id = id_of(get_value(session, "subscription"))

        if not subscription_id:
            logger.warning(f"Subscription checkout {session_id} has no subscription attached")
            return _result(
                TransitionStatus.IGNORED,
                "subscription_checkout",
                user_id,
                "No subscription on checkout session",
                session_id=session_id,
            )

        metadata_updated = True
        try:
            self.gateway.update_subscription_metadata(
                subscription_id, {**metadata, "sessionId": session_id}
            )
            logger.info(f"Tagged subscription {subscription_id} with checkout session {session_id}")
        except GatewayError as e:
            # The subscription.created event still carries userId and tierId
            metadata_updated = False
            logger.error(
                f"Failed to update metadata on subscription {subscription_id}: {e}", exc_info=True
            )

        return _result(
            TransitionStatus.IGNORED,
            "subscription_checkout",
            user_id,
            "Subscription checkout recorded; credits are granted on subscription.created",
            subscription_id=subscription_id,
            metadata_updated=metadata_updated,
        )

    # ==================== Subscription created / updated ====================

    def handle_subscription_change(self, subscription: Any) -> TransitionResult:
        """Activation, upgrade, or nothing (same subscription renewing)"""
        subscription_id = get_value(subscription, "id")
        metadata = metadata_to_dict(get_value(subscription, "metadata"))
        user_id = metadata.get("userId")
        tier_id = metadata.get("tierId")

        if not user_id or not tier_id:
            logger.error(
                f"Subscription {subscription_id} is missing userId or tierId in metadata "
                f"(userId={user_id}, tierId={tier_id}). ACTION REQUIRED: manual review."
            )
            return _result(
                TransitionStatus.IGNORED,
                "subscription_change",
                user_id,
                "Missing userId or tierId in subscription metadata",
                subscription_id=subscription_id,
            )

        user = get_user_by_id(user_id, client=self.client)
        if user is None:
            logger.error(f"Subscription {subscription_id} references unknown user {user_id}")
            return _result(
                TransitionStatus.IGNORED,
                "subscription_change",
                user_id,
                "User not found",
                subscription_id=subscription_id,
            )

        ledger = LedgerSnapshot.from_row(user)
        if needs_base_plan_repair(ledger):
            ledger = LedgerSnapshot.from_row(repair_base_plan_credits(user, client=self.client))

        change = classify_subscription_change(ledger, subscription_id)

        if isinstance(change, RenewalSkip):
            logger.info(
                f"Subscription {subscription_id} already active for user {user_id}; "
                f"renewal credits are handled by invoice.payment_succeeded"
            )
            return _result(
                TransitionStatus.SKIPPED,
                "renewal",
                user_id,
                "Same subscription already active; renewal is driven by the invoice",
                subscription_id=subscription_id,
            )

        if isinstance(change, Upgrade):
            return self._apply_upgrade(ledger, subscription, change, metadata)

        return self._apply_activation(ledger, subscription, change, metadata)

    def _resolve_paid_tier(self, tier_id: str) -> tuple[Tier | None, MembershipTier | None]:
        tier = self.tier_lookup(tier_id)
        if tier is None:
            return None, None
        membership = membership_tier_for(tier.tier_name)
        if membership not in PAID_MEMBERSHIPS:
            return tier, None
        return tier, membership

    def _apply_activation(
        self,
        ledger: LedgerSnapshot,
        subscription: Any,
        change: Activation,
        metadata: dict[str, Any],
    ) -> TransitionResult:
        user_id = ledger.user_id
        subscription_id = change.subscription_id
        tier_id = metadata["tierId"]

        verdict = self.guard.check_activation(user_id, subscription_id, tier_id)
        if verdict:
            logger.info(f"Activation skipped for user {user_id}: {verdict.reason}")
            return _result(
                TransitionStatus.SKIPPED,
                "activation",
                user_id,
                verdict.reason,
                subscription_id=subscription_id,
            )

        tier, membership = self._resolve_paid_tier(tier_id)
        if tier is None or membership is None:
            logger.error(
                f"Cannot activate subscription {subscription_id} for user {user_id}: "
                f"tier {tier_id!r} does not resolve to a paid membership. Credits untouched."
            )
            return _result(
                TransitionStatus.FAILED_CLOSED,
                "activation",
                user_id,
                f"Unknown tier {tier_id}",
                subscription_id=subscription_id,
            )

        period_end, customer_id = self._resolve_remote_subscription(subscription_id, subscription)

        def build(current: LedgerSnapshot) -> tuple[LedgerCommit, LedgerBalances]:
            balances = compute_activation(current.credit_balance, tier.monthly_credits, period_end)
            existing = balances.carry_over_credits

            if existing > 0:
                description = (
                    f"Subscription activated: {tier.name} - {tier.monthly_credits} credits "
                    f"+ {existing} existing credits preserved"
                )
            else:
                description = f"Subscription activated: {tier.name} - {tier.monthly_credits} credits"

            commit = LedgerCommit(
                user_id=user_id,
                user_update=self._membership_user_update(
                    balances, membership, subscription_id, customer_id, period_end
                ),
                subscription=self._subscription_record(subscription_id, subscription, period_end),
                deployments_published=True,
                transaction={
                    "amount": tier.monthly_credits,
                    "type": CreditTransactionType.MONTHLY_ALLOCATION,
                    "description": description,
                    "metadata": {
                        "subscriptionId": subscription_id,
                        "tierId": tier.tier_id,
                        "tierName": tier.tier_name,
                        "isInitialAllocation": True,
                        "existingCreditsPreserved": existing,
                        "basePlanCredits": balances.base_plan_credits,
                        "totalCredits": balances.credit_balance,
                        "sessionId": metadata.get("sessionId"),
                    },
                    "idempotency_key": subscription_key(subscription_id),
                },
            )
            return commit, balances

        committed, ledger, commit, balances = self._commit_against_latest_ledger(user_id, build)
        if committed is None:
            return _result(
                TransitionStatus.SKIPPED,
                "activation",
                user_id,
                f"Subscription {subscription_id} already allocated by a concurrent delivery",
                subscription_id=subscription_id,
            )

        deployments = committed.get("deployments_updated", 0)
        logger.info(
            f"Activated {tier.tier_id} for user {user_id}: balance {ledger.credit_balance} -> "
            f"{balances.credit_balance} (base {balances.base_plan_credits}, "
            f"carry-over {balances.carry_over_credits}); republished {deployments} deployments"
        )
        return _result(
            TransitionStatus.APPLIED,
            "activation",
            user_id,
            commit.transaction["description"],
            subscription_id=subscription_id,
            tier_id=tier.tier_id,
            credit_balance=balances.credit_balance,
            base_plan_credits=balances.base_plan_credits,
            carry_over_credits=balances.carry_over_credits,
            deployments_republished=deployments,
        )

    def _collect_stale_subscriptions(
        self, change: Upgrade, customer_id: str | None
    ) -> list[str]:
        """
        Every active subscription that must be canceled before the upgrade commits.

        The stored id can lag reality, so Stripe is asked directly as well.
        """
        stale = [change.previous_subscription_id]

        if customer_id:
            try:
                for remote in self.gateway.list_active_subscriptions(customer_id):
                    remote_id = id_of(remote)
                    if remote_id and remote_id != change.subscription_id and remote_id not in stale:
                        stale.append(remote_id)
            except GatewayError as e:
                logger.error(
                    f"Could not list active subscriptions for customer {customer_id}; "
                    f"canceling the stored subscription only: {e}"
                )

        return [subscription_id for subscription_id in stale if subscription_id != change.subscription_id]

    def _apply_upgrade(
        self,
        ledger: LedgerSnapshot,
        subscription: Any,
        change: Upgrade,
        metadata: dict[str, Any],
    ) -> TransitionResult:
        user_id = ledger.user_id
        subscription_id = change.subscription_id
        tier_id = metadata["tierId"]

        verdict = self.guard.check_upgrade(user_id, subscription_id, tier_id)
        if verdict:
            logger.info(f"Upgrade skipped for user {user_id}: {verdict.reason}")
            return _result(
                TransitionStatus.SKIPPED,
                "upgrade",
                user_id,
                verdict.reason,
                subscription_id=subscription_id,
            )

        tier, membership = self._resolve_paid_tier(tier_id)
        if tier is None or membership is None:
            logger.error(
                f"Cannot upgrade user {user_id} to subscription {subscription_id}: "
                f"tier {tier_id!r} does not resolve to a paid membership. Nothing canceled."
            )
            return _result(
                TransitionStatus.FAILED_CLOSED,
                "upgrade",
                user_id,
                f"Unknown tier {tier_id}",
                subscription_id=subscription_id,
            )

        period_end, customer_id = self._resolve_remote_subscription(subscription_id, subscription)
        customer_id = customer_id or ledger.stripe_customer_id

        # Cancel before committing; a failed cancel leaves the ledger untouched for the retry
        stale_ids = self._collect_stale_subscriptions(change, customer_id)
        for stale_id in stale_ids:
            self.gateway.cancel_subscription(stale_id)

        def build(current: LedgerSnapshot) -> tuple[LedgerCommit, LedgerBalances]:
            balances = compute_upgrade(
                current.credit_balance,
                tier.monthly_credits,
                period_end,
                is_first_subscription=current.is_free,
            )
            leftover = balances.carry_over_credits

            commit = LedgerCommit(
                user_id=user_id,
                user_update=self._membership_user_update(
                    balances, membership, subscription_id, customer_id, period_end
                ),
                subscription=self._subscription_record(subscription_id, subscription, period_end),
                cancel_subscription_ids=stale_ids,
                transaction={
                    "amount": tier.monthly_credits,
                    "type": CreditTransactionType.MONTHLY_ALLOCATION,
                    "description": (
                        f"Subscription upgrade: {tier.name} - {balances.base_plan_credits} base credits "
                        f"+ {leftover} carry-over credits"
                    ),
                    "metadata": {
                        "subscriptionId": subscription_id,
                        "previousSubscriptionId": change.previous_subscription_id,
                        "tierId": tier.tier_id,
                        "tierName": tier.tier_name,
                        "isUpgrade": True,
                        "isCarryOver": leftover > 0,
                        "carryOverAmount": leftover,
                        "basePlanCredits": balances.base_plan_credits,
                        "totalCredits": balances.credit_balance,
                        "carryOverExpiresAt": balances.carry_over_expires_at,
                        "previousBalance": current.credit_balance,
                        "sessionId": metadata.get("sessionId"),
                        "canceledSubscriptions": stale_ids,
                    },
                    "idempotency_key": subscription_key(subscription_id),
                },
            )
            return commit, balances

        committed, ledger, commit, balances = self._commit_against_latest_ledger(user_id, build)
        leftover = balances.carry_over_credits
        if committed is None:
            return _result(
                TransitionStatus.SKIPPED,
                "upgrade",
                user_id,
                f"Upgrade to {subscription_id} already committed by a concurrent delivery",
                subscription_id=subscription_id,
            )

        logger.info(
            f"Upgraded user {user_id} to {tier.tier_id}: balance {ledger.credit_balance} -> "
            f"{balances.credit_balance} (base {balances.base_plan_credits}, carry-over {leftover}); "
            f"canceled {stale_ids}"
        )
        return _result(
            TransitionStatus.APPLIED,
            "upgrade",
            user_id,
            commit.transaction["description"],
            subscription_id=subscription_id,
            tier_id=tier.tier_id,
            credit_balance=balances.credit_balance,
            base_plan_credits=balances.base_plan_credits,
            carry_over_credits=leftover,
            canceled_subscriptions=stale_ids,
        )

    # ==================== Subscription deleted ====================

    def handle_subscription_deleted(self, subscription: Any) -> TransitionResult:
        """Cancellation forfeits every credit and drops the user to FREE"""
        change = Cancellation(subscription_id=get_value(subscription, "id"))
        user = get_user_by_subscription_id(change.subscription_id, client=self.client)

        if user is None:
            # Also the replay path: the first delivery cleared the stored id
            logger.info(
                f"No user holds subscription {change.subscription_id}; cancellation is a no-op"
            )
            return _result(
                TransitionStatus.IGNORED,
                "cancellation",
                message="No user holds this subscription",
                subscription_id=change.subscription_id,
            )

        keep_published = self._is_admin(user.get("email"))

        def build(current: LedgerSnapshot) -> tuple[LedgerCommit, int]:
            forfeited = compute_cancellation_forfeit(current.credit_balance)
            commit = LedgerCommit(
                user_id=current.user_id,
                user_update={
                    "membership_tier": MembershipTier.FREE,
                    "membership_expires_at": None,
                    "stripe_subscription_id": None,
                    "credit_balance": 0,
                    "base_plan_credits": 0,
                    "carry_over_credits": 0,
                    "carry_over_expires_at": None,
                    "monthly_credits_used": 0,
                    "last_credit_reset": self._now(),
                },
                cancel_subscription_ids=[change.subscription_id],
                deployments_published=None if keep_published else False,
                transaction={
                    "amount": -forfeited,
                    "type": CreditTransactionType.REFUND,
                    "description": f"Subscription canceled - {forfeited} credits removed",
                    "metadata": {
                        "reason": "subscription_canceled",
                        "stripeSubscriptionId": change.subscription_id,
                        "originalCredits": forfeited,
                    },
                    "idempotency_key": cancellation_key(change.subscription_id),
                },
            )
            return commit, forfeited

        committed, ledger, commit, forfeited = self._commit_against_latest_ledger(user["id"], build)
        if committed is None:
            return _result(
                TransitionStatus.SKIPPED,
                "cancellation",
                ledger.user_id,
                f"Cancellation of {change.subscription_id} already committed",
                subscription_id=change.subscription_id,
            )

        if keep_published:
            logger.info(f"Admin account {ledger.user_id}: deployments left published")
        logger.info(
            f"Canceled subscription {change.subscription_id} for user {ledger.user_id}: "
            f"{forfeited} credits forfeited, tier reset to FREE, "
            f"unpublished {committed.get('deployments_updated', 0)} deployments"
        )
        return _result(
            TransitionStatus.APPLIED,
            "cancellation",
            ledger.user_id,
            commit.transaction["description"],
            subscription_id=change.subscription_id,
            forfeited_credits=forfeited,
            deployments_unpublished=0 if keep_published else committed.get("deployments_updated", 0),
        )

    # ==================== Invoices ====================

    def _resolve_invoice_owner(
        self, invoice: Any, subscription_id: str
    ) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
        """
        Subscription record and user for an invoice.

        Looks up the subscription id first and falls back to the Stripe customer,
        since the subscription row can lag behind the invoice.
        """
        record = get_subscription_by_stripe_id(subscription_id, client=self.client)
        if record is not None:
            return record, get_user_by_id(record["user_id"], client=self.client)

        customer_id = customer_id_of(invoice)
        user = get_user_by_stripe_customer(customer_id, client=self.client) if customer_id else None
        if user is None:
            return None, None

        record = get_active_subscription_for_user(user["id"], client=self.client)
        if record is not None:
            logger.info(
                f"Resolved invoice {get_value(invoice, 'id')} via customer {customer_id} "
                f"to subscription {record['stripe_subscription_id']}"
            )
        return record, user

    def handle_invoice_payment_succeeded(self, invoice: Any) -> TransitionResult:
        """Monthly renewal: roll unused base-plan credits and grant the new quota"""
        invoice_id = get_value(invoice, "id")
        subscription_id = invoice_subscription_id(invoice)

        if not subscription_id:
            logger.info(f"Invoice {invoice_id} is not for a subscription - ignoring")
            return _result(
                TransitionStatus.IGNORED, "renewal", message="Invoice has no subscription", invoice_id=invoice_id
            )

        record, user = self._resolve_invoice_owner(invoice, subscription_id)
        if record is None or user is None:
            logger.error(
                f"RENEWAL FAILED: could not resolve subscription for invoice {invoice_id} "
                f"(subscription_id={subscription_id}, customer_id={customer_id_of(invoice)}, "
                f"billing_reason={get_value(invoice, 'billing_reason')}). Needs investigation."
            )
            return _result(
                TransitionStatus.IGNORED,
                "renewal",
                message="Subscription or user not found for invoice",
                invoice_id=invoice_id,
                subscription_id=subscription_id,
            )

        user_id = user["id"]

        if get_value(invoice, "billing_reason") == "subscription_create":
            logger.info(
                f"Skipping first invoice {invoice_id} - credits already allocated by subscription.created"
            )
            return _result(
                TransitionStatus.SKIPPED,
                "renewal",
                user_id,
                "First invoice of a subscription; activation already granted credits",
                invoice_id=invoice_id,
            )

        change = Renewal(subscription_id=subscription_id, invoice_id=invoice_id)
        return self._apply_renewal(change, invoice, record, user)

    def _apply_renewal(
        self,
        change: Renewal,
        invoice: Any,
        record: dict[str, Any],
        user: dict[str, Any],
    ) -> TransitionResult:
        user_id = user["id"]
        record_subscription_id = record["stripe_subscription_id"]
        period_start, period_end = invoice_period(invoice)
        period_end = period_end or self._fallback_period_end()

        verdict = self.guard.check_renewal(user_id, change.invoice_id)
        if verdict:
            logger.info(f"Renewal skipped for user {user_id}: {verdict.reason}")
            return _result(
                TransitionStatus.SKIPPED, "renewal", user_id, verdict.reason, invoice_id=change.invoice_id
            )

        try:
            remote = self.gateway.retrieve_subscription(change.subscription_id, expand=None)
        except GatewayError:
            # Keep the subscription alive; the retried event grants the credits
            extend_subscription_period(record_subscription_id, period_end, client=self.client)
            raise

        remote_metadata = metadata_to_dict(get_value(remote, "metadata"))
        tier_id = remote_metadata.get("tierId")
        tier = self.tier_lookup(tier_id)

        if tier is None:
            logger.error(
                f"Renewal of {change.subscription_id} for user {user_id}: "
                f"{'no tierId in subscription metadata' if not tier_id else f'unknown tier {tier_id}'}. "
                f"Extending period only; credits untouched."
            )
            extend_subscription_period(record_subscription_id, period_end, client=self.client)
            return _result(
                TransitionStatus.FAILED_CLOSED,
                "renewal",
                user_id,
                "Tier could not be resolved; subscription period extended without credits",
                invoice_id=change.invoice_id,
                tier_id=tier_id,
            )

        def build(current: LedgerSnapshot) -> tuple[LedgerCommit, LedgerBalances]:
            balances = compute_renewal(
                current.credit_balance, current.carry_over_credits, tier.monthly_credits, period_end
            )

            if balances.carry_over_credits > 0:
                description = (
                    f"Monthly renewal: {tier.name} - {tier.monthly_credits} new credits "
                    f"+ {balances.carry_over_credits} rolled over from previous cycle"
                )
            else:
                description = f"Monthly renewal: {tier.name} - {tier.monthly_credits} credits"

            commit = LedgerCommit(
                user_id=user_id,
                user_update={
                    "membership_expires_at": period_end,
                    "last_credit_reset": self._now(),
                    "monthly_credits_used": 0,
                    "credit_balance": balances.credit_balance,
                    "base_plan_credits": balances.base_plan_credits,
                    "carry_over_credits": balances.carry_over_credits,
                    "carry_over_expires_at": balances.carry_over_expires_at,
                },
                subscription={
                    "stripe_subscription_id": record_subscription_id,
                    "stripe_price_id": record.get("stripe_price_id") or DYNAMIC_PRICE_ID,
                    "stripe_current_period_end": period_end,
                    "stripe_cancel_at_period_end": bool(record.get("stripe_cancel_at_period_end")),
                    "status": SubscriptionStatus.ACTIVE,
                },
                transaction={
                    "amount": tier.monthly_credits,
                    "type": CreditTransactionType.MONTHLY_ALLOCATION,
                    "description": description,
                    "metadata": {
                        "subscriptionId": change.subscription_id,
                        "invoiceId": change.invoice_id,
                        "tierId": tier.tier_id,
                        "tierName": tier.tier_name,
                        "isRenewal": True,
                        "oldCarryOverExpired": balances.expired_carry_over,
                        "unusedFromBasePlan": balances.unused_from_base_plan,
                        "newCarryOver": balances.carry_over_credits,
                        "newBasePlan": balances.base_plan_credits,
                        "totalCredits": balances.credit_balance,
                        "previousCarryOver": current.carry_over_credits,
                        "previousBalance": current.credit_balance,
                        "billingPeriodStart": period_start,
                        "billingPeriodEnd": period_end,
                    },
                    "idempotency_key": invoice_key(change.invoice_id),
                },
            )
            return commit, balances

        try:
            committed, ledger, commit, balances = self._commit_against_latest_ledger(user_id, build)
        except LedgerCommitError:
            extend_subscription_period(record_subscription_id, period_end, client=self.client)
            raise

        if committed is None:
            return _result(
                TransitionStatus.SKIPPED,
                "renewal",
                user_id,
                f"Invoice {change.invoice_id} already allocated by a concurrent delivery",
                invoice_id=change.invoice_id,
            )

        logger.info(
            f"Renewed {tier.tier_id} for user {user_id} (invoice {change.invoice_id}): "
            f"balance {ledger.credit_balance} -> {balances.credit_balance}, "
            f"carry-over {ledger.carry_over_credits} expired, {balances.carry_over_credits} rolled; "
            f"period extended to {period_end.isoformat()}"
        )
        return _result(
            TransitionStatus.APPLIED,
            "renewal",
            user_id,
            commit.transaction["description"],
            invoice_id=change.invoice_id,
            subscription_id=change.subscription_id,
            tier_id=tier.tier_id,
            credit_balance=balances.credit_balance,
            base_plan_credits=balances.base_plan_credits,
            carry_over_credits=balances.carry_over_credits,
        )

    def handle_invoice_payment_failed(self, invoice: Any) -> TransitionResult:
        """Mark the subscription past due; credits are untouched"""
        invoice_id = get_value(invoice, "id")
        subscription_id = invoice_subscription_id(invoice)

        if not subscription_id:
            logger.info(f"Failed invoice {invoice_id} is not for a subscription - ignoring")
            return _result(
                TransitionStatus.IGNORED,
                "payment_failed",
                message="Invoice has no subscription",
                invoice_id=invoice_id,
            )

        updated = update_subscription_status(
            subscription_id, SubscriptionStatus.PAST_DUE, client=self.client
        )
        if not updated:
            return _result(
                TransitionStatus.IGNORED,
                "payment_failed",
                message="No local subscription record",
                invoice_id=invoice_id,
                subscription_id=subscription_id,
            )

        logger.warning(f"Payment failed for invoice {invoice_id}: subscription {subscription_id} past due")
        return _result(
            TransitionStatus.APPLIED,
            "payment_failed",
            message=f"Subscription {subscription_id} marked past due",
            invoice_id=invoice_id,
            subscription_id=subscription_id,
        )

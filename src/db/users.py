import logging
from datetime import UTC, datetime
from typing import Any

from supabase import Client

from src.config.supabase_config import get_supabase_client
from src.db.credit_transactions import get_recent_transactions, log_credit_transaction
from src.schemas.common import CreditTransactionType
from src.utils.exceptions import InsufficientCreditsError
from src.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

LEDGER_COLUMNS = (
    "id, email, credit_balance, base_plan_credits, carry_over_credits, carry_over_expires_at, "
    "cloud_credit_balance, membership_tier, membership_expires_at, stripe_customer_id, "
    "stripe_subscription_id, monthly_credits_used, lifetime_credits_used, last_credit_reset"
)


def _first_row(result) -> dict[str, Any] | None:
    if result.data and len(result.data) > 0:
        return result.data[0]
    return None


def get_user_by_id(user_id: str, client: Client | None = None) -> dict[str, Any] | None:
    """
    Get a user's ledger row by primary key

    Args:
        user_id: User ID
        client: Supabase client (defaults to the process-wide client)

    Returns:
        User dictionary if found, None otherwise

    Raises:
        Exception: Database errors propagate; a failed read must not look like a missing user
    """
    client = client or get_supabase_client()
    try:
        result = client.table("users").select(LEDGER_COLUMNS).eq("id", user_id).execute()
        return _first_row(result)
    except Exception as e:
        logger.error(
            "Error getting user by ID %s: %s",
            sanitize_for_logging(user_id),
            sanitize_for_logging(str(e)),
        )
        raise


def get_user_by_stripe_customer(
    customer_id: str, client: Client | None = None
) -> dict[str, Any] | None:
    """Get the user that owns a Stripe customer"""
    if not customer_id:
        return None

    client = client or get_supabase_client()
    result = (
        client.table("users").select(LEDGER_COLUMNS).eq("stripe_customer_id", customer_id).execute()
    )
    user = _first_row(result)
    if user is None:
        logger.warning(f"No user found with stripe_customer_id={customer_id}")
    return user


def get_user_by_subscription_id(
    subscription_id: str, client: Client | None = None
) -> dict[str, Any] | None:
    """Get the user currently holding a Stripe subscription id"""
    if not subscription_id:
        return None

    client = client or get_supabase_client()
    result = (
        client.table("users")
        .select(LEDGER_COLUMNS)
        .eq("stripe_subscription_id", subscription_id)
        .execute()
    )
    return _first_row(result)


def repair_base_plan_credits(user: dict[str, Any], client: Client | None = None) -> dict[str, Any]:
    """
    Normalize ledgers created before base/carry-over tracking existed.

    A row with credits but no base plan is treated as all base plan, so the
    next renewal computes rollover from a consistent split.

    Returns:
        The (possibly updated) user dictionary
    """
    balance = user.get("credit_balance") or 0
    if (user.get("base_plan_credits") or 0) != 0 or balance <= 0:
        return user

    client = client or get_supabase_client()
    client.table("users").update(
        {
            "base_plan_credits": balance,
            "carry_over_credits": 0,
            "updated_at": datetime.now(UTC).isoformat(),
        }
    ).eq("id", user["id"]).eq("base_plan_credits", 0).execute()

    logger.info(
        f"Repaired legacy ledger for user {user['id']}: base_plan_credits set to {balance}, "
        f"carry_over_credits reset to 0"
    )
    return {**user, "base_plan_credits": balance, "carry_over_credits": 0}


def deduct_credits(
    user_id: str,
    amount: int,
    transaction_type: CreditTransactionType = CreditTransactionType.AI_GENERATION,
    description: str = "Credit usage",
    metadata: dict[str, Any] | None = None,
    client: Client | None = None,
) -> dict[str, Any] | None:
    """
    Deduct usage credits and log the transaction

    Only credit_balance moves. base_plan_credits and carry_over_credits describe
    how the balance was granted at the last billing event and are left alone;
    the next renewal derives unused quota from the remaining balance.

    Args:
        user_id: User ID
        amount: Credits to deduct (positive integer)
        transaction_type: Usage category recorded in the transaction log
        description: Description of the usage
        metadata: Optional metadata (project, model, sandbox, ...)
        client: Supabase client (defaults to the process-wide client)

    Returns:
        The logged transaction, or None when nothing was deducted

    Raises:
        ValueError: amount is negative or the user does not exist
        InsufficientCreditsError: the balance cannot cover the amount
        RuntimeError: the balance changed concurrently; caller should retry
    """
    if amount < 0:
        raise ValueError("Credits cannot be negative")

    if amount == 0:
        logger.info(f"Skipping credit deduction of 0 credits for user {user_id}")
        return None

    client = client or get_supabase_client()

    # Fresh read; the optimistic lock below relies on this exact value
    lookup = (
        client.table("users")
        .select("id, credit_balance, monthly_credits_used, lifetime_credits_used")
        .eq("id", user_id)
        .execute()
    )
    user = _first_row(lookup)
    if user is None:
        raise ValueError(f"User {user_id} not found")

    balance_before = user["credit_balance"] or 0
    if balance_before < amount:
        raise InsufficientCreditsError(balance_before, amount)

    balance_after = balance_before - amount

    result = (
        client.table("users")
        .update(
            {
                "credit_balance": balance_after,
                "monthly_credits_used": (user.get("monthly_credits_used") or 0) + amount,
                "lifetime_credits_used": (user.get("lifetime_credits_used") or 0) + amount,
                "updated_at": datetime.now(UTC).isoformat(),
            }
        )
        .eq("id", user_id)
        .eq("credit_balance", balance_before)  # Optimistic lock: only update if balance unchanged
        .execute()
    )

    if not result.data:
        current = client.table("users").select("credit_balance").eq("id", user_id).execute()
        current_balance = current.data[0]["credit_balance"] if current.data else "unknown"
        raise RuntimeError(
            f"Failed to update user balance due to concurrent modification. "
            f"Current balance: {current_balance}, Required: {amount}. Please retry."
        )

    transaction = log_credit_transaction(
        user_id=user_id,
        amount=-amount,
        transaction_type=transaction_type,
        description=description,
        metadata={**(metadata or {}), "balanceBefore": balance_before, "balanceAfter": balance_after},
        client=client,
    )

    if not transaction:
        logger.error(
            f"Failed to log credit transaction for user {user_id}. "
            f"Credits were deducted but transaction not logged. "
            f"Amount: -{amount}, Balance: {balance_before} → {balance_after}"
        )
    else:
        logger.info(
            "Deducted %s credits from user %s. Balance: %s → %s. Transaction logged: %s",
            amount,
            sanitize_for_logging(user_id),
            balance_before,
            balance_after,
            transaction.get("id", "unknown"),
        )

    return transaction


def get_credit_summary(user_id: str, client: Client | None = None) -> dict[str, Any] | None:
    """
    Balance breakdown for a user plus their most recent transactions.

    Returns:
        Summary dictionary, or None when the user does not exist
    """
    client = client or get_supabase_client()
    user = get_user_by_id(user_id, client=client)
    if user is None:
        return None

    return {
        "user_id": user_id,
        "credit_balance": user.get("credit_balance") or 0,
        "base_plan_credits": user.get("base_plan_credits") or 0,
        "carry_over_credits": user.get("carry_over_credits") or 0,
        "carry_over_expires_at": user.get("carry_over_expires_at"),
        "cloud_credit_balance": user.get("cloud_credit_balance") or 0,
        "membership_tier": user.get("membership_tier"),
        "membership_expires_at": user.get("membership_expires_at"),
        "monthly_credits_used": user.get("monthly_credits_used") or 0,
        "lifetime_credits_used": user.get("lifetime_credits_used") or 0,
        "recent_transactions": get_recent_transactions(user_id, limit=10, client=client),
    }

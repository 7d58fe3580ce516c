#!/usr/bin/env python3
"""
Ledger Commit Database Module

Every billing transition lands through one call to the apply_ledger_transition
Postgres function (supabase/migrations). The function runs in a single
transaction, so the balance change, subscription record, deployment flags and
audit entry commit together or not at all.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from postgrest import APIError
from supabase import Client

from src.utils.exceptions import DuplicateTransitionError, LedgerCommitError, StaleLedgerError

logger = logging.getLogger(__name__)

RPC_NAME = "apply_ledger_transition"
UNIQUE_VIOLATION = "23505"
# Raised by apply_ledger_transition when p_expected_balance no longer matches
BALANCE_CHANGED = "BL409"


@dataclass
class LedgerCommit:
    """One unit of work for apply_ledger_transition.

    user_update holds absolute column values; balance_increments holds deltas
    applied on top (purchases add to whatever the balance is at commit time).

    expected_balance pins credit_balance to the value the commit was computed
    from; the function locks the row and refuses the commit if it moved.
    """

    user_id: str
    user_update: dict[str, Any] | None = None
    balance_increments: dict[str, int] | None = None
    subscription: dict[str, Any] | None = None
    cancel_subscription_ids: list[str] = field(default_factory=list)
    deployments_published: bool | None = None
    transaction: dict[str, Any] | None = None
    purchase: dict[str, Any] | None = None
    expected_balance: int | None = None

    @property
    def idempotency_key(self) -> str | None:
        if self.transaction:
            return self.transaction.get("idempotency_key")
        return None

    def to_params(self) -> dict[str, Any]:
        return {
            "p_user_id": self.user_id,
            "p_user_update": _jsonable(self.user_update),
            "p_balance_increments": _jsonable(self.balance_increments),
            "p_subscription": _jsonable(self.subscription),
            "p_cancel_subscription_ids": list(self.cancel_subscription_ids),
            "p_deployments_published": self.deployments_published,
            "p_transaction": _jsonable(self.transaction),
            "p_purchase": _jsonable(self.purchase),
            "p_expected_balance": self.expected_balance,
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def is_unique_violation(error: Exception) -> bool:
    code = getattr(error, "code", None)
    if code == UNIQUE_VIOLATION:
        return True
    message = str(error).lower()
    return "23505" in message or "duplicate key value" in message


def apply_ledger_transition(commit: LedgerCommit, client: Client) -> dict[str, Any]:
    """
    Commit a ledger transition atomically

    Returns:
        {"user": <updated ledger row>, "deployments_updated": <int>}

    Raises:
        DuplicateTransitionError: the idempotency key (or payment id) was already committed
        StaleLedgerError: credit_balance no longer equals expected_balance; nothing was written
        LedgerCommitError: any other database failure; nothing was written
    """
    try:
        result = client.rpc(RPC_NAME, commit.to_params()).execute()
    except APIError as e:
        if is_unique_violation(e):
            logger.warning(
                f"Ledger commit for user {commit.user_id} hit a unique constraint "
                f"(idempotency_key={commit.idempotency_key}); transition already applied"
            )
            raise DuplicateTransitionError(
                f"Transition already committed for user {commit.user_id}",
                idempotency_key=commit.idempotency_key,
            ) from e
        if getattr(e, "code", None) == BALANCE_CHANGED:
            logger.warning(
                f"Ledger for user {commit.user_id} changed since it was read "
                f"(expected credit_balance={commit.expected_balance}); commit refused"
            )
            raise StaleLedgerError(
                f"Credit balance changed for user {commit.user_id}",
                expected_balance=commit.expected_balance,
            ) from e
        logger.error(
            f"Ledger commit failed for user {commit.user_id}: {e}",
            exc_info=True,
        )
        raise LedgerCommitError(f"Ledger commit failed for user {commit.user_id}: {e}") from e

    data = result.data or {}
    if isinstance(data, list):
        data = data[0] if data else {}
    return data

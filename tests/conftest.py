import copy
import os
from collections import defaultdict
from datetime import UTC, datetime

import pytest
from postgrest import APIError

os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("SENTRY_ENABLED", "false")

from src.utils.exceptions import GatewayError  # noqa: E402

# ---- In-memory Supabase stub ------------------------------------------------

# Unique indexes enforced by the stub: table -> tuple of columns.
# Rows with a NULL in any indexed column are exempt, as in Postgres.
UNIQUE_INDEXES = {
    "credit_transactions": [("user_id", "type", "idempotency_key")],
    "cloud_credit_transactions": [("user_id", "type", "idempotency_key")],
    "credit_purchases": [("stripe_payment_id",)],
    "cloud_credit_purchases": [("stripe_payment_id",)],
    "subscriptions": [("stripe_subscription_id",)],
    "stripe_webhook_events": [("event_id",)],
    "stripe_credit_grants": [("stripe_credit_grant_id",)],
}


def _now_iso():
    return datetime.now(UTC).isoformat()


def _unique_violation(table, columns):
    return APIError(
        {
            "code": "23505",
            "message": f'duplicate key value violates unique constraint on "{table}" ({", ".join(columns)})',
            "details": None,
            "hint": None,
        }
    )


class _Result:
    def __init__(self, data=None, count=None):
        self.data = data
        self.count = count

    def execute(self):
        return self


def _field_value(row, field):
    """Resolve plain columns and `metadata->>key` JSON text lookups."""
    if "->>" in field:
        column, key = field.split("->>", 1)
        value = (row.get(column) or {}).get(key)
        if value is None:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)
    return row.get(field)


class _BaseQuery:
    def __init__(self, store, table):
        self.store = store
        self.table = table
        self._filters = []  # list of tuples: (op, field, value)
        self._order = None  # (field, desc)
        self._limit = None

    def eq(self, field, value):
        self._filters.append(("eq", field, value))
        return self

    def gte(self, field, value):
        self._filters.append(("gte", field, value))
        return self

    def lt(self, field, value):
        self._filters.append(("lt", field, value))
        return self

    def order(self, field, desc=False):
        self._order = (field, desc)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _match(self, row):
        for op, field, value in self._filters:
            row_value = _field_value(row, field)
            if op == "eq":
                if row_value != value:
                    return False
            elif op == "gte":
                if row_value is None or row_value < value:
                    return False
            elif op == "lt":
                if row_value is None or row_value >= value:
                    return False
        return True

    def _apply_order_limit(self, rows):
        if self._order:
            field, desc = self._order
            rows = sorted(rows, key=lambda r: r.get(field) or "", reverse=bool(desc))
        if self._limit is not None:
            rows = rows[: self._limit]
        return rows


class _Select(_BaseQuery):
    def select(self, *_cols, count=None):
        return self

    def execute(self):
        rows = [copy.deepcopy(r) for r in self.store[self.table] if self._match(r)]
        return _Result(self._apply_order_limit(rows))


class _Insert:
    def __init__(self, stub, table, payload, upsert=False, on_conflict=None, ignore_duplicates=False):
        self.stub = stub
        self.table = table
        self.payload = payload
        self.upsert = upsert
        self.on_conflict = on_conflict
        self.ignore_duplicates = ignore_duplicates

    def execute(self):
        items = self.payload if isinstance(self.payload, list) else [self.payload]
        written = []
        for item in items:
            row = copy.deepcopy(item)
            if self.upsert and self.on_conflict:
                existing = [
                    r for r in self.stub.tables[self.table] if r.get(self.on_conflict) == row.get(self.on_conflict)
                ]
                if existing:
                    if self.ignore_duplicates:
                        continue
                    existing[0].update(row)
                    written.append(copy.deepcopy(existing[0]))
                    continue
            written.append(copy.deepcopy(self.stub.insert_row(self.table, row)))
        return _Result(written)


class _Update(_BaseQuery):
    def __init__(self, store, table, payload):
        super().__init__(store, table)
        self.payload = payload

    def execute(self):
        updated = []
        for row in self.store[self.table]:
            if self._match(row):
                row.update(copy.deepcopy(self.payload))
                updated.append(copy.deepcopy(row))
        return _Result(updated)


class _Delete(_BaseQuery):
    def execute(self):
        kept, deleted = [], []
        for row in self.store[self.table]:
            (deleted if self._match(row) else kept).append(row)
        self.store[self.table][:] = kept
        return _Result(deleted)


class _TableShim:
    def __init__(self, stub, table):
        self._stub = stub
        self._table = table

    def select(self, *cols, count=None):
        self._stub.calls.append((self._table, "select"))
        return _Select(self._stub.tables, self._table).select(*cols, count=count)

    def insert(self, payload):
        self._stub.calls.append((self._table, "insert"))
        return _Insert(self._stub, self._table, payload)

    def upsert(self, payload, on_conflict=None, ignore_duplicates=False):
        self._stub.calls.append((self._table, "upsert"))
        return _Insert(
            self._stub,
            self._table,
            payload,
            upsert=True,
            on_conflict=on_conflict,
            ignore_duplicates=ignore_duplicates,
        )

    def update(self, payload):
        self._stub.calls.append((self._table, "update"))
        return _Update(self._stub.tables, self._table, payload)

    def delete(self):
        self._stub.calls.append((self._table, "delete"))
        return _Delete(self._stub.tables, self._table)


class _RPCShim:
    def __init__(self, stub, fn_name, params):
        self.stub = stub
        self.fn_name = fn_name
        self.params = params or {}

    def execute(self):
        self.stub.rpc_calls.append((self.fn_name, copy.deepcopy(self.params)))
        if self.stub.rpc_error is not None:
            raise self.stub.rpc_error
        if self.fn_name != "apply_ledger_transition":
            raise APIError({"code": "PGRST202", "message": f"function {self.fn_name} not found"})

        # One transaction: restore every table if any step fails
        snapshot = copy.deepcopy(self.stub.tables)
        try:
            return _Result(self.stub.apply_ledger_transition(**self.params))
        except Exception:
            self.stub.tables.clear()
            self.stub.tables.update(snapshot)
            raise


class SupabaseStub:
    """supabase-py shaped client over dict tables, including the ledger RPC."""

    def __init__(self):
        self.tables = defaultdict(list)
        self.calls = []
        self.rpc_calls = []
        self.rpc_error = None
        self._next_id = 0

    def table(self, name):
        return _TableShim(self, name)

    def rpc(self, fn_name, params=None):
        return _RPCShim(self, fn_name, params)

    # -- helpers used by tests and the RPC emulation --

    def insert_row(self, table, row):
        row = dict(row)
        for columns in UNIQUE_INDEXES.get(table, []):
            key = tuple(row.get(c) for c in columns)
            if any(v is None for v in key):
                continue
            for existing in self.tables[table]:
                if tuple(existing.get(c) for c in columns) == key:
                    raise _unique_violation(table, columns)
        if "id" not in row:
            self._next_id += 1
            row["id"] = self._next_id
        row.setdefault("created_at", _now_iso())
        self.tables[table].append(row)
        return row

    def rows(self, table, **filters):
        return [
            r for r in self.tables[table] if all(r.get(k) == v for k, v in filters.items())
        ]

    def user(self, user_id):
        rows = self.rows("users", id=user_id)
        return rows[0] if rows else None

    def apply_ledger_transition(
        self,
        p_user_id,
        p_user_update=None,
        p_balance_increments=None,
        p_subscription=None,
        p_cancel_subscription_ids=None,
        p_deployments_published=None,
        p_transaction=None,
        p_purchase=None,
        p_expected_balance=None,
    ):
        if p_expected_balance is not None:
            locked = self.user(p_user_id)
            if locked is None:
                raise APIError({"code": "P0002", "message": f"user {p_user_id} not found"})
            if locked.get("credit_balance") != p_expected_balance:
                raise APIError(
                    {
                        "code": "BL409",
                        "message": (
                            f"credit balance for user {p_user_id} changed: "
                            f"expected {p_expected_balance}, found {locked.get('credit_balance')}"
                        ),
                    }
                )

        if p_transaction is not None:
            ledger = p_transaction.get("ledger") or "builder"
            table = "cloud_credit_transactions" if ledger == "cloud" else "credit_transactions"
            self.insert_row(
                table,
                {
                    "user_id": p_user_id,
                    "amount": p_transaction["amount"],
                    "type": p_transaction["type"],
                    "description": p_transaction.get("description"),
                    "metadata": p_transaction.get("metadata") or {},
                    "idempotency_key": p_transaction.get("idempotency_key"),
                },
            )

        if p_purchase is not None:
            ledger = p_purchase.get("ledger") or "builder"
            table = "cloud_credit_purchases" if ledger == "cloud" else "credit_purchases"
            self.insert_row(
                table,
                {
                    "user_id": p_user_id,
                    "credits": p_purchase["credits"],
                    "amount_paid": p_purchase["amount_paid"],
                    "stripe_payment_id": p_purchase["stripe_payment_id"],
                    "status": p_purchase.get("status") or "COMPLETED",
                },
            )

        for subscription_id in p_cancel_subscription_ids or []:
            for row in self.rows("subscriptions", stripe_subscription_id=subscription_id):
                row["status"] = "CANCELED"
                row["updated_at"] = _now_iso()

        if p_user_update is not None or p_balance_increments is not None:
            user = self.user(p_user_id)
            if user is None:
                raise APIError({"code": "P0002", "message": f"user {p_user_id} not found"})
            user.update(p_user_update or {})
            for column, delta in (p_balance_increments or {}).items():
                user[column] = (user.get(column) or 0) + delta
            user["updated_at"] = _now_iso()

        if p_subscription is not None:
            existing = self.rows(
                "subscriptions", stripe_subscription_id=p_subscription["stripe_subscription_id"]
            )
            record = {
                "stripe_current_period_end": p_subscription.get("stripe_current_period_end"),
                "stripe_cancel_at_period_end": bool(p_subscription.get("stripe_cancel_at_period_end")),
                "status": p_subscription.get("status") or "ACTIVE",
                "updated_at": _now_iso(),
            }
            if existing:
                if p_subscription.get("stripe_price_id"):
                    record["stripe_price_id"] = p_subscription["stripe_price_id"]
                existing[0].update(record)
            else:
                self.insert_row(
                    "subscriptions",
                    {
                        "user_id": p_user_id,
                        "stripe_subscription_id": p_subscription["stripe_subscription_id"],
                        "stripe_price_id": p_subscription.get("stripe_price_id") or "dynamic_price",
                        **record,
                    },
                )

        deployments_updated = 0
        if p_deployments_published is not None:
            for row in self.rows("deployments", user_id=p_user_id):
                row["published"] = p_deployments_published
                deployments_updated += 1

        return {"user": copy.deepcopy(self.user(p_user_id)), "deployments_updated": deployments_updated}


# ---- Stripe gateway fake ----------------------------------------------------


class FakeStripeGateway:
    """Records side effects; failures are injected per operation."""

    def __init__(self):
        self.subscriptions = {}
        self.active_by_customer = defaultdict(list)
        self.canceled = []
        self.cancel_attempts = []
        self.metadata_updates = []
        self.retrieve_calls = []
        self.fail_retrieve = 0
        self.fail_cancel = 0
        self.fail_list = False
        self.fail_metadata = False
        self.credit_grants = []
        self.fail_credit_grant = False

    def add_subscription(self, subscription_id, customer_id=None, tier_id=None, user_id=None, period_end=None, active=True):
        subscription = {
            "id": subscription_id,
            "customer": customer_id,
            "status": "active",
            "metadata": {k: v for k, v in {"tierId": tier_id, "userId": user_id}.items() if v},
            "current_period_end": period_end,
        }
        self.subscriptions[subscription_id] = subscription
        if active and customer_id:
            self.active_by_customer[customer_id].append(subscription_id)
        return subscription

    def retrieve_subscription(self, subscription_id, expand=("latest_invoice", "customer")):
        self.retrieve_calls.append(subscription_id)
        if self.fail_retrieve:
            self.fail_retrieve -= 1
            raise GatewayError("Stripe unavailable", code="api_error", operation="retrieve_subscription")
        if subscription_id not in self.subscriptions:
            raise GatewayError(
                f"No such subscription: {subscription_id}",
                code="resource_missing",
                operation="retrieve_subscription",
            )
        return copy.deepcopy(self.subscriptions[subscription_id])

    def list_active_subscriptions(self, customer_id):
        if self.fail_list:
            raise GatewayError("Stripe unavailable", code="api_error", operation="list_active_subscriptions")
        return [
            copy.deepcopy(self.subscriptions[s])
            for s in self.active_by_customer.get(customer_id, [])
            if s in self.subscriptions
        ]

    def cancel_subscription(self, subscription_id):
        self.cancel_attempts.append(subscription_id)
        if self.fail_cancel:
            self.fail_cancel -= 1
            raise GatewayError("Stripe unavailable", code="api_error", operation="cancel_subscription")
        for ids in self.active_by_customer.values():
            if subscription_id in ids:
                ids.remove(subscription_id)
                self.canceled.append(subscription_id)
                return True
        return False

    def update_subscription_metadata(self, subscription_id, metadata):
        if self.fail_metadata:
            raise GatewayError("Stripe unavailable", code="api_error", operation="update_subscription_metadata")
        self.metadata_updates.append((subscription_id, dict(metadata)))
        if subscription_id in self.subscriptions:
            self.subscriptions[subscription_id]["metadata"] = dict(metadata)
        return self.subscriptions.get(subscription_id)

    def create_credit_grant(self, customer_id, amount_cents, name, category="paid", metadata=None):
        if self.fail_credit_grant:
            raise GatewayError("Stripe unavailable", code="api_error", operation="create_credit_grant")
        grant = {
            "id": f"credgr_{len(self.credit_grants) + 1}",
            "customer": customer_id,
            "name": name,
            "category": category,
            "amount": {"type": "monetary", "monetary": {"value": amount_cents, "currency": "usd"}},
            "metadata": dict(metadata or {}),
        }
        self.credit_grants.append(grant)
        return copy.deepcopy(grant)


# ---- Fixtures ---------------------------------------------------------------


@pytest.fixture
def sb():
    return SupabaseStub()


@pytest.fixture
def gateway():
    return FakeStripeGateway()


@pytest.fixture
def make_user(sb):
    def _make_user(user_id="user-1", **overrides):
        row = {
            "id": user_id,
            "email": f"{user_id}@example.com",
            "credit_balance": 0,
            "base_plan_credits": 0,
            "carry_over_credits": 0,
            "carry_over_expires_at": None,
            "cloud_credit_balance": 0,
            "membership_tier": "FREE",
            "membership_expires_at": None,
            "stripe_customer_id": None,
            "stripe_subscription_id": None,
            "monthly_credits_used": 0,
            "lifetime_credits_used": 0,
            "last_credit_reset": None,
        }
        row.update(overrides)
        sb.tables["users"].append(row)
        return row

    return _make_user

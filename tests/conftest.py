"""Pytest configuration and fixtures.

The engine only talks to its collaborators through protocols, so every test
here runs against in-memory fakes: no Plaid, no Supabase.
"""

import os
import threading
import time
from datetime import date, timedelta

import pytest
import pytest_asyncio

# Set test environment before importing the app
os.environ["APP_ENV"] = "testing"

from finsync.exceptions import ProviderError, ProviderErrorKind
from finsync.schemas.plaid import Account, PlaidConnection
from finsync.schemas.sync import SyncResult, SyncScheduleOptions, utcnow
from finsync.schemas.transaction import Transaction
from finsync.services.sync_engine import DataSyncEngine


class InMemoryStore:
    """Dict-backed ``SyncStore``.

    While ``connections_gate`` is cleared, ``get_active_connections`` blocks.
    ``save_delay`` slows every ``save_sync_job`` call down.
    """

    def __init__(self):
        self.connections: dict[str, PlaidConnection] = {}
        self.accounts: dict[str, Account] = {}
        self.transactions: dict[str, Transaction] = {}
        self.goals = {}
        self.goal_updates: list[tuple[str, dict]] = []
        self.goal_progress = []
        self.conflicts = []
        self.saved_jobs = []
        self.metrics = []
        self.written_transactions: list[Transaction] = []
        self.fail_on: set[str] = set()
        self.save_delay = 0.0
        self.connections_gate = threading.Event()
        self.connections_gate.set()
        self._lock = threading.Lock()

    def _maybe_fail(self, method: str):
        if method in self.fail_on:
            raise RuntimeError(f"{method} unavailable")

    # Connections

    def add_connection(self, connection_id: str, user_id: str, **kwargs) -> PlaidConnection:
        connection = PlaidConnection(
            id=connection_id, user_id=user_id, access_token=f"token-{connection_id}", **kwargs
        )
        self.connections[connection_id] = connection
        return connection

    def get_active_connections(self, user_id):
        self.connections_gate.wait(timeout=5)
        self._maybe_fail("get_active_connections")
        return [
            c for c in self.connections.values() if c.user_id == user_id and c.status == "active"
        ]

    def get_active_connection(self, connection_id, user_id):
        self._maybe_fail("get_active_connection")
        connection = self.connections.get(connection_id)
        if connection and connection.user_id == user_id and connection.status == "active":
            return connection
        return None

    def get_stale_connections(self, older_than, limit):
        self._maybe_fail("get_stale_connections")
        stale = [
            c
            for c in self.connections.values()
            if c.status == "active" and (c.last_sync is None or c.last_sync < older_than)
        ]
        stale.sort(key=lambda c: (c.last_sync is not None, c.last_sync or utcnow()))
        return stale[:limit]

    def update_connection_last_sync(self, connection_id, synced_at):
        self._maybe_fail("update_connection_last_sync")
        with self._lock:
            connection = self.connections[connection_id]
            self.connections[connection_id] = connection.model_copy(
                update={"last_sync": synced_at}
            )

    # Accounts and transactions

    def upsert_accounts(self, accounts):
        self._maybe_fail("upsert_accounts")
        with self._lock:
            for account in accounts:
                self.accounts[account.plaid_account_id] = account

    def get_account_balances(self, user_id, account_ids):
        self._maybe_fail("get_account_balances")
        return [
            a.balance_current
            for a in self.accounts.values()
            if a.user_id == user_id and a.plaid_account_id in account_ids
        ]

    def get_transactions_in_window(self, connection_id, start_date, end_date):
        self._maybe_fail("get_transactions_in_window")
        return [
            t
            for t in self.transactions.values()
            if t.connection_id == connection_id and start_date <= t.date <= end_date
        ]

    def upsert_transactions(self, transactions):
        self._maybe_fail("upsert_transactions")
        with self._lock:
            for txn in transactions:
                self.transactions[txn.plaid_transaction_id] = txn
                self.written_transactions.append(txn)

    def flag_transaction_conflict(self, record):
        self._maybe_fail("flag_transaction_conflict")
        self.conflicts.append(record)

    # Goals

    def get_active_goals(self, user_id):
        self._maybe_fail("get_active_goals")
        return [g for g in self.goals.values() if g.user_id == user_id and g.status == "active"]

    def update_goal(self, goal_id, user_id, data):
        self._maybe_fail("update_goal")
        self.goal_updates.append((goal_id, data))
        self.goals[goal_id] = self.goals[goal_id].model_copy(update=data)

    def add_goal_progress(self, entry):
        self._maybe_fail("add_goal_progress")
        self.goal_progress.append(entry)

    # History

    def save_sync_job(self, job):
        if self.save_delay:
            time.sleep(self.save_delay)
        self._maybe_fail("save_sync_job")
        self.saved_jobs.append(job.model_copy(deep=True))

    def record_sync_metric(self, record):
        self._maybe_fail("record_sync_metric")
        self.metrics.append(record)


class FakeProvider:
    """Scriptable ``ProviderClient``.

    ``failures`` maps a connection id to an exception raised on every call;
    ``fail_times`` makes a connection fail with a network error that many
    times before succeeding. While ``gate`` is cleared, ``get_accounts``
    blocks, which holds a job in the running state. ``on_enter`` is called
    with the method name and connection id before each call proceeds.
    """

    def __init__(self):
        self.accounts: dict[str, list[Account]] = {}
        self.transactions: dict[str, list[Transaction]] = {}
        self.failures: dict[str, Exception] = {}
        self.fail_times: dict[str, int] = {}
        self.calls: list[tuple] = []
        self.started: list[str] = []
        self.sync_options = []
        self.gate = threading.Event()
        self.gate.set()
        self.on_enter = None
        self._lock = threading.Lock()

    def hold(self):
        self.gate.clear()

    def release(self):
        self.gate.set()

    def _enter(self, method: str, connection: PlaidConnection, *args):
        with self._lock:
            self.calls.append((method, connection.id, *args))
            if method in ("get_accounts", "sync_transactions"):
                self.started.append(connection.id)
        self.gate.wait(timeout=5)
        if self.on_enter is not None:
            self.on_enter(method, connection.id)

        if connection.id in self.failures:
            raise self.failures[connection.id]
        with self._lock:
            remaining = self.fail_times.get(connection.id, 0)
            if remaining and method in ("get_accounts", "sync_transactions"):
                self.fail_times[connection.id] = remaining - 1
                raise ProviderError("Connection reset by peer", ProviderErrorKind.NETWORK)

    def get_accounts(self, connection):
        self._enter("get_accounts", connection)
        return list(self.accounts.get(connection.id, []))

    def get_transactions(self, connection, start_date, end_date, account_ids=None):
        self._enter("get_transactions", connection, start_date, end_date)
        return [
            t
            for t in self.transactions.get(connection.id, [])
            if start_date <= t.date <= end_date
            and (not account_ids or t.account_id in account_ids)
        ]

    def sync_transactions(self, connection, options):
        self._enter("sync_transactions", connection)
        self.sync_options.append(options)
        return SyncResult(
            success=True,
            accounts_updated=len(self.accounts.get(connection.id, [])),
            transactions_added=len(self.transactions.get(connection.id, [])),
        )


class RecordingCache:
    def __init__(self):
        self.invalidations: list[tuple[str, str]] = []

    def invalidate_cache(self, user_id, scope):
        self.invalidations.append((user_id, scope))


class FakeGoalCalculator:
    def __init__(self, results=None, error: Exception | None = None):
        self.results = results or []
        self.error = error
        self.calls = []

    def calculate_multiple_goals_progress(self, goals):
        self.calls.append([goal.id for goal in goals])
        if self.error:
            raise self.error
        return list(self.results)


def make_account(account_id: str, name: str = "Checking", balance: float = 100.0) -> Account:
    return Account(plaid_account_id=account_id, name=name, type="depository", balance_current=balance)


def make_transaction(
    txn_id: str,
    account_id: str = "acc-1",
    amount: float = 10.0,
    name: str = "Coffee Shop",
    txn_date: date | None = None,
    **kwargs,
) -> Transaction:
    return Transaction(
        plaid_transaction_id=txn_id,
        account_id=account_id,
        amount=amount,
        date=txn_date or utcnow().date(),
        name=name,
        **kwargs,
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def provider():
    provider = FakeProvider()
    yield provider
    provider.release()


@pytest.fixture
def cache():
    return RecordingCache()


@pytest.fixture
def seeded(store, provider):
    """One user with one connection, one account and two recent transactions."""
    store.add_connection("conn-1", "user-1")
    provider.accounts["conn-1"] = [make_account("acc-1")]
    provider.transactions["conn-1"] = [
        make_transaction("txn-1", amount=12.5),
        make_transaction("txn-2", amount=40.0, name="Grocery Store"),
    ]
    return store, provider


@pytest_asyncio.fixture
async def make_engine(store, provider, cache):
    """Build engines with fast timings; every engine is shut down afterwards."""
    engines = []

    def factory(goal_calculator=None, conflict_strategy="plaid_wins", **overrides):
        settings = {
            "interval_seconds": 60,
            "max_concurrent_jobs": 3,
            "retry_base_delay_seconds": 0.01,
            "shutdown_timeout_seconds": 1.0,
            "default_max_retries": 0,
            **overrides,
        }
        engine = DataSyncEngine(
            provider=provider,
            store=store,
            cache=cache,
            goal_calculator=goal_calculator,
            options=SyncScheduleOptions(**settings),
            conflict_strategy=conflict_strategy,
        )
        engines.append(engine)
        return engine

    yield factory

    provider.release()
    store.connections_gate.set()
    for engine in engines:
        await engine.shutdown()


@pytest_asyncio.fixture
async def engine(make_engine):
    return make_engine()


def days_ago(days: int) -> date:
    return utcnow().date() - timedelta(days=days)

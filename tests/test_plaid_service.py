"""Tests for the Plaid provider with a mocked Plaid API client."""

import json
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from plaid.exceptions import ApiException
from urllib3.exceptions import ProtocolError

from finsync.exceptions import ProviderError, ProviderErrorKind
from finsync.schemas.plaid import PlaidConnection
from finsync.schemas.sync import ProviderSyncOptions, utcnow
from finsync.services.plaid_service import PlaidProvider, to_provider_error


def api_error(status, error_code=None, message=None):
    exc = ApiException(status=status, reason="Error")
    if error_code:
        exc.body = json.dumps({"error_code": error_code, "error_message": message or error_code})
    return exc


def plaid_account(account_id, name="Checking", current=100.0):
    return SimpleNamespace(
        account_id=account_id,
        name=name,
        type="depository",
        subtype="checking",
        balances=SimpleNamespace(current=current, available=current, limit=None),
    )


def plaid_transaction(txn_id, amount=10.0, account_id="acc-1", name="Coffee Shop"):
    return SimpleNamespace(
        transaction_id=txn_id,
        account_id=account_id,
        amount=amount,
        date=utcnow().date(),
        name=name,
        merchant_name=None,
        category=["Food and Drink"],
        pending=False,
    )


@pytest.fixture
def connection():
    return PlaidConnection(id="conn-1", user_id="user-1", access_token="access-sandbox-123")


@pytest.fixture
def plaid_client():
    client = MagicMock()
    client.accounts_get.return_value = SimpleNamespace(accounts=[plaid_account("acc-1")])
    client.transactions_get.return_value = SimpleNamespace(
        transactions=[plaid_transaction("t1"), plaid_transaction("t2", amount=25.0)],
        total_transactions=2,
    )
    return client


class TestErrorMapping:
    def test_login_required_is_not_retryable(self):
        error = to_provider_error(api_error(400, "ITEM_LOGIN_REQUIRED", "login required"))

        assert error.kind == ProviderErrorKind.ITEM_LOGIN_REQUIRED
        assert error.error_code == "ITEM_LOGIN_REQUIRED"
        assert error.retryable is False
        assert "login required" in str(error)

    def test_rate_limit_by_status(self):
        error = to_provider_error(api_error(429))

        assert error.kind == ProviderErrorKind.RATE_LIMIT
        assert error.retryable is True

    def test_server_error(self):
        error = to_provider_error(api_error(502))

        assert error.kind == ProviderErrorKind.SERVER
        assert error.retryable is True

    def test_unknown_client_error_is_invalid_request(self):
        error = to_provider_error(api_error(400, "SOMETHING_ODD"))

        assert error.kind == ProviderErrorKind.INVALID_REQUEST
        assert error.retryable is False

    @pytest.mark.parametrize("exc", [ProtocolError("reset"), ConnectionError("refused")])
    def test_transport_errors_are_network(self, exc):
        error = to_provider_error(exc)

        assert error.kind == ProviderErrorKind.NETWORK
        assert error.retryable is True


class TestFetching:
    def test_get_accounts(self, store, connection, plaid_client):
        provider = PlaidProvider(store, client=plaid_client)

        [account] = provider.get_accounts(connection)

        assert account.plaid_account_id == "acc-1"
        assert account.type == "depository"
        assert account.subtype == "checking"
        assert account.balance_current == 100.0
        assert account.user_id == "user-1"
        assert account.connection_id == "conn-1"
        request = plaid_client.accounts_get.call_args.args[0]
        assert request.access_token == "access-sandbox-123"

    def test_api_error_becomes_provider_error(self, store, connection, plaid_client):
        plaid_client.accounts_get.side_effect = api_error(400, "ITEM_LOGIN_REQUIRED")
        provider = PlaidProvider(store, client=plaid_client)

        with pytest.raises(ProviderError) as exc_info:
            provider.get_accounts(connection)

        assert exc_info.value.kind == ProviderErrorKind.ITEM_LOGIN_REQUIRED

    def test_missing_token_requires_login(self, store, plaid_client):
        provider = PlaidProvider(store, client=plaid_client)
        connection = PlaidConnection(id="conn-1", user_id="user-1")

        with pytest.raises(ProviderError) as exc_info:
            provider.get_accounts(connection)

        assert exc_info.value.kind == ProviderErrorKind.ITEM_LOGIN_REQUIRED
        plaid_client.accounts_get.assert_not_called()

    def test_token_resolver_is_used(self, store, connection, plaid_client):
        provider = PlaidProvider(
            store, client=plaid_client, token_resolver=lambda conn: f"resolved-{conn.id}"
        )

        provider.get_accounts(connection)

        assert plaid_client.accounts_get.call_args.args[0].access_token == "resolved-conn-1"

    def test_transactions_follow_pagination(self, store, connection, plaid_client):
        plaid_client.transactions_get.side_effect = [
            SimpleNamespace(
                transactions=[plaid_transaction("t1"), plaid_transaction("t2")],
                total_transactions=3,
            ),
            SimpleNamespace(transactions=[plaid_transaction("t3")], total_transactions=3),
        ]
        provider = PlaidProvider(store, client=plaid_client, page_size=2)
        today = utcnow().date()

        transactions = provider.get_transactions(connection, today - timedelta(days=3), today)

        assert [t.plaid_transaction_id for t in transactions] == ["t1", "t2", "t3"]
        assert plaid_client.transactions_get.call_count == 2
        second_request = plaid_client.transactions_get.call_args_list[1].args[0]
        assert second_request.options.offset == 2
        assert second_request.options.count == 2
        assert transactions[0].user_id == "user-1"
        assert transactions[0].category == ["Food and Drink"]


class TestSyncTransactions:
    def options(self, **kwargs):
        now = utcnow()
        return ProviderSyncOptions(
            force_refresh=True, start_date=now - timedelta(days=30), end_date=now, **kwargs
        )

    def test_persists_accounts_and_new_transactions(self, store, connection, plaid_client):
        provider = PlaidProvider(store, client=plaid_client)

        result = provider.sync_transactions(connection, self.options())

        assert result.success is True
        assert result.accounts_updated == 1
        assert result.transactions_added == 2
        assert set(store.accounts) == {"acc-1"}
        assert set(store.transactions) == {"t1", "t2"}

    def test_repeat_sync_writes_nothing(self, store, connection, plaid_client):
        provider = PlaidProvider(store, client=plaid_client)
        provider.sync_transactions(connection, self.options())
        writes = len(store.written_transactions)

        result = provider.sync_transactions(connection, self.options())

        assert result.transactions_added == 0
        assert result.transactions_updated == 0
        assert len(store.written_transactions) == writes

    def test_changed_transaction_is_updated(self, store, connection, plaid_client):
        provider = PlaidProvider(store, client=plaid_client)
        provider.sync_transactions(connection, self.options())
        plaid_client.transactions_get.return_value = SimpleNamespace(
            transactions=[plaid_transaction("t1", amount=11.0), plaid_transaction("t2", amount=25.0)],
            total_transactions=2,
        )

        result = provider.sync_transactions(connection, self.options())

        assert result.transactions_updated == 1
        assert store.transactions["t1"].amount == 11.0

    def test_account_filter(self, store, connection, plaid_client):
        plaid_client.accounts_get.return_value = SimpleNamespace(
            accounts=[plaid_account("acc-1"), plaid_account("acc-2", "Savings")]
        )
        provider = PlaidProvider(store, client=plaid_client)

        result = provider.sync_transactions(connection, self.options(account_ids=["acc-2"]))

        assert result.accounts_updated == 1
        assert set(store.accounts) == {"acc-2"}
        request = plaid_client.transactions_get.call_args.args[0]
        assert request.options.account_ids == ["acc-2"]

"""Plaid API provider for the sync engine."""

import json
from datetime import date
from typing import Any, Callable

import plaid
from plaid.api import plaid_api
from plaid.exceptions import ApiException
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.transactions_get_request import TransactionsGetRequest
from plaid.model.transactions_get_request_options import TransactionsGetRequestOptions
from urllib3.exceptions import HTTPError as TransportError

from finsync.config import get_settings
from finsync.exceptions import ProviderError, ProviderErrorKind
from finsync.logging_config import get_logger
from finsync.schemas.plaid import Account, PlaidConnection
from finsync.schemas.sync import ProviderSyncOptions, SyncResult, utcnow
from finsync.schemas.transaction import Transaction
from finsync.services.collaborators import SyncStore
from finsync.services.conflict_service import changed_fields

logger = get_logger("plaid")

# Plaid error codes that need the user to re-link or fix the request
_ERROR_CODE_KINDS = {
    "ITEM_LOGIN_REQUIRED": ProviderErrorKind.ITEM_LOGIN_REQUIRED,
    "INVALID_ACCESS_TOKEN": ProviderErrorKind.ITEM_LOGIN_REQUIRED,
    "INVALID_REQUEST": ProviderErrorKind.INVALID_REQUEST,
    "INVALID_FIELD": ProviderErrorKind.INVALID_REQUEST,
    "RATE_LIMIT_EXCEEDED": ProviderErrorKind.RATE_LIMIT,
}


def _get_plaid_client() -> plaid_api.PlaidApi:
    """Create a Plaid API client."""
    settings = get_settings()

    env_map = {
        "sandbox": plaid.Environment.Sandbox,
        "production": plaid.Environment.Production,
    }

    configuration = plaid.Configuration(
        host=env_map.get(settings.plaid_env, plaid.Environment.Sandbox),
        api_key={
            "clientId": settings.plaid_client_id,
            "secret": settings.plaid_secret,
        },
    )

    api_client = plaid.ApiClient(configuration)
    return plaid_api.PlaidApi(api_client)


def to_provider_error(exc: Exception) -> ProviderError:
    """Classify a Plaid SDK or transport failure."""
    if isinstance(exc, ApiException):
        error_code = None
        try:
            body = json.loads(exc.body) if exc.body else {}
            error_code = body.get("error_code")
        except (TypeError, ValueError):
            body = {}

        if error_code in _ERROR_CODE_KINDS:
            kind = _ERROR_CODE_KINDS[error_code]
        elif exc.status == 429:
            kind = ProviderErrorKind.RATE_LIMIT
        elif exc.status is not None and exc.status >= 500:
            kind = ProviderErrorKind.SERVER
        elif exc.status is not None and exc.status >= 400:
            kind = ProviderErrorKind.INVALID_REQUEST
        else:
            kind = ProviderErrorKind.UNKNOWN

        message = body.get("error_message") or exc.reason or "Plaid API error"
        return ProviderError(f"Plaid error {error_code or exc.status}: {message}", kind, error_code)

    if isinstance(exc, (TransportError, OSError)):
        return ProviderError(f"Plaid unreachable: {exc}", ProviderErrorKind.NETWORK)

    return ProviderError(str(exc), ProviderErrorKind.UNKNOWN)


def _enum_value(value: Any) -> str | None:
    if value is None:
        return None
    return str(getattr(value, "value", value))


class PlaidProvider:
    """
    Fetches accounts and transactions from Plaid for one connection.

    ``sync_transactions`` also writes to the store: it is the full-refresh
    path, overwriting balances and upserting transactions by Plaid
    transaction id.
    """

    def __init__(
        self,
        store: SyncStore,
        client: plaid_api.PlaidApi | None = None,
        page_size: int = 500,
        token_resolver: Callable[[PlaidConnection], str] | None = None,
    ):
        self.store = store
        self.client = client or _get_plaid_client()
        self.page_size = page_size
        self.token_resolver = token_resolver or self._connection_token

    @staticmethod
    def _connection_token(connection: PlaidConnection) -> str:
        if not connection.access_token:
            raise ProviderError(
                f"Connection {connection.id} has no access token",
                ProviderErrorKind.ITEM_LOGIN_REQUIRED,
            )
        return connection.access_token

    def get_accounts(self, connection: PlaidConnection) -> list[Account]:
        """
        Fetch current account balances.

        Args:
            connection: The linked item to query.

        Returns:
            Accounts tagged with the connection's user and id.
        """
        request = AccountsGetRequest(access_token=self.token_resolver(connection))
        try:
            response = self.client.accounts_get(request)
        except Exception as e:
            raise to_provider_error(e) from e

        accounts = []
        for acct in response.accounts:
            balances = acct.balances
            accounts.append(
                Account(
                    plaid_account_id=acct.account_id,
                    name=acct.name,
                    type=_enum_value(acct.type),
                    subtype=_enum_value(getattr(acct, "subtype", None)),
                    balance_current=getattr(balances, "current", None),
                    balance_available=getattr(balances, "available", None),
                    balance_limit=getattr(balances, "limit", None),
                    user_id=connection.user_id,
                    connection_id=connection.id,
                )
            )
        return accounts

    def get_transactions(
        self,
        connection: PlaidConnection,
        start_date: date,
        end_date: date,
        account_ids: list[str] | None = None,
    ) -> list[Transaction]:
        """
        Fetch every transaction in a date window, following pagination.

        Args:
            connection: The linked item to query.
            start_date: First day of the window (inclusive).
            end_date: Last day of the window (inclusive).
            account_ids: Optional Plaid account id filter.

        Returns:
            Transactions in Plaid's order.
        """
        access_token = self.token_resolver(connection)
        transactions: list[Transaction] = []
        offset = 0

        while True:
            option_kwargs: dict[str, Any] = {"count": self.page_size, "offset": offset}
            if account_ids:
                option_kwargs["account_ids"] = account_ids
            request = TransactionsGetRequest(
                access_token=access_token,
                start_date=start_date,
                end_date=end_date,
                options=TransactionsGetRequestOptions(**option_kwargs),
            )
            try:
                response = self.client.transactions_get(request)
            except Exception as e:
                raise to_provider_error(e) from e

            page = list(response.transactions)
            for txn in page:
                transactions.append(
                    Transaction(
                        plaid_transaction_id=txn.transaction_id,
                        account_id=txn.account_id,
                        amount=txn.amount,
                        date=txn.date,
                        name=txn.name,
                        merchant_name=txn.merchant_name,
                        category=list(txn.category or []),
                        pending=bool(txn.pending),
                        user_id=connection.user_id,
                        connection_id=connection.id,
                    )
                )

            offset += len(page)
            if not page or offset >= response.total_transactions:
                break

        return transactions

    def sync_transactions(
        self, connection: PlaidConnection, options: ProviderSyncOptions
    ) -> SyncResult:
        """
        Refresh balances and transactions for a window and persist them.

        Only new or changed transactions are written, so repeating the call
        over unchanged upstream data adds and updates nothing.
        """
        result = SyncResult(success=True)

        accounts = self.get_accounts(connection)
        if options.account_ids:
            accounts = [acc for acc in accounts if acc.plaid_account_id in options.account_ids]
        if accounts:
            self.store.upsert_accounts(accounts)
        result.accounts_updated = len(accounts)

        start, end = options.start_date.date(), options.end_date.date()
        incoming = self.get_transactions(connection, start, end, options.account_ids)
        existing = {
            txn.plaid_transaction_id: txn
            for txn in self.store.get_transactions_in_window(connection.id, start, end)
        }

        to_write = []
        for txn in incoming:
            stored = existing.get(txn.plaid_transaction_id)
            if stored is None:
                result.transactions_added += 1
                to_write.append(txn)
            elif changed_fields(stored, txn):
                result.transactions_updated += 1
                to_write.append(txn)
        if to_write:
            self.store.upsert_transactions(to_write)

        result.last_sync_time = utcnow()
        logger.info(
            f"Full sync for connection {connection.id}: {result.accounts_updated} accounts, "
            f"{result.transactions_added} added, {result.transactions_updated} updated"
        )
        return result

"""Plaid connection and account schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


ConnectionStatus = Literal["active", "error", "disconnected"]


class PlaidConnection(BaseModel):
    """A linked Plaid item, owned by the connection store."""

    id: str
    user_id: str
    item_id: str | None = None
    institution_name: str | None = None
    access_token: str | None = None  # Already decrypted by the credential store
    status: ConnectionStatus = "active"
    last_sync: datetime | None = None


class Account(BaseModel):
    """Account balances as reported by the provider."""

    plaid_account_id: str
    name: str
    type: str | None = None
    subtype: str | None = None
    balance_current: float | None = None
    balance_available: float | None = None
    balance_limit: float | None = None
    user_id: str | None = None
    connection_id: str | None = None

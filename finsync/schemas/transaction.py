"""Transaction and conflict schemas."""

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field


ConflictType = Literal["amount_mismatch", "data_mismatch"]


class Transaction(BaseModel):
    """A transaction keyed by its provider-assigned id."""

    plaid_transaction_id: str
    account_id: str
    amount: float
    date: date
    name: str
    merchant_name: str | None = None
    category: list[str] = Field(default_factory=list)
    pending: bool = False
    user_id: str | None = None
    connection_id: str | None = None


class TransactionConflict(BaseModel):
    """A stored transaction that disagrees with the freshly fetched one."""

    existing: Transaction
    incoming: Transaction
    conflict_type: ConflictType
    fields: list[str]


class ConflictReviewRecord(BaseModel):
    """A conflict parked for a human to resolve."""

    transaction_id: str
    user_id: str
    connection_id: str | None = None
    conflict_type: ConflictType
    status: Literal["pending"] = "pending"
    fields: list[str]
    local_values: dict[str, Any]
    incoming_values: dict[str, Any]

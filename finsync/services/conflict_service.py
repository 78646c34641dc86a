"""Conflict detection and resolution between stored and fetched transactions.

Records are matched on ``plaid_transaction_id``. A matched pair whose
compared fields differ is a conflict; the engine's configured strategy
decides which values are written:

- ``plaid_wins``: the fetched record overwrites the stored one.
- ``database_wins``: the stored record is kept and the update is dropped.
- ``merge``: provider-authoritative fields (amount, date, pending) come from
  the fetched record; user-editable fields (name, merchant, category) keep
  the stored value unless it is empty.
- ``manual``: the stored record is kept and a review record is produced.

Resolution is pure: this module never touches the store. The executor
persists ``ReconcileOutcome.to_upsert`` and ``pending_review``.
"""

from dataclasses import dataclass, field

from finsync.logging_config import get_logger
from finsync.schemas.sync import ConflictStrategy
from finsync.schemas.transaction import (
    ConflictReviewRecord,
    ConflictType,
    Transaction,
    TransactionConflict,
)

logger = get_logger("conflicts")

COMPARED_FIELDS = ("amount", "date", "name", "merchant_name", "category", "pending")
PROVIDER_FIELDS = ("amount", "date", "pending")
USER_EDITABLE_FIELDS = ("name", "merchant_name", "category")

# Amounts closer than half a cent are equal
AMOUNT_TOLERANCE = 0.005


def changed_fields(existing: Transaction, incoming: Transaction) -> list[str]:
    """Names of compared fields whose values differ."""
    changed = []
    for name in COMPARED_FIELDS:
        old = getattr(existing, name)
        new = getattr(incoming, name)
        if name == "amount":
            if abs(old - new) >= AMOUNT_TOLERANCE:
                changed.append(name)
        elif old != new:
            changed.append(name)
    return changed


def detect_conflicts(
    existing: dict[str, Transaction], incoming: list[Transaction]
) -> list[TransactionConflict]:
    """Flag every incoming transaction that disagrees with its stored copy."""
    conflicts = []
    for txn in incoming:
        stored = existing.get(txn.plaid_transaction_id)
        if stored is None:
            continue
        fields = changed_fields(stored, txn)
        if not fields:
            continue
        conflict_type: ConflictType = (
            "amount_mismatch" if "amount" in fields else "data_mismatch"
        )
        conflicts.append(
            TransactionConflict(
                existing=stored,
                incoming=txn,
                conflict_type=conflict_type,
                fields=fields,
            )
        )
    return conflicts


@dataclass
class ReconcileOutcome:
    """What the executor should write after reconciliation."""

    to_upsert: list[Transaction] = field(default_factory=list)
    transactions_added: int = 0
    transactions_updated: int = 0
    conflicts: list[TransactionConflict] = field(default_factory=list)
    pending_review: list[ConflictReviewRecord] = field(default_factory=list)


class ConflictResolver:
    """Applies one resolution strategy to fetched transactions."""

    def __init__(self, strategy: ConflictStrategy = "plaid_wins"):
        self.strategy = strategy

    def reconcile(
        self, existing: list[Transaction], incoming: list[Transaction]
    ) -> ReconcileOutcome:
        """
        Decide which fetched transactions to write.

        New transactions are always written. Unchanged ones are skipped, which
        keeps a re-run over identical upstream data free of writes.

        Args:
            existing: Stored transactions in the sync window.
            incoming: Transactions fetched from the provider for the same window.

        Returns:
            The records to upsert, add/update counts, and detected conflicts.
        """
        existing_by_id = {txn.plaid_transaction_id: txn for txn in existing}
        outcome = ReconcileOutcome()

        for txn in incoming:
            if txn.plaid_transaction_id not in existing_by_id:
                outcome.to_upsert.append(txn)
                outcome.transactions_added += 1

        outcome.conflicts = detect_conflicts(existing_by_id, incoming)
        logger.debug(
            f"Conflict detection: {len(existing)} stored, {len(incoming)} fetched, "
            f"{len(outcome.conflicts)} conflicts"
        )

        for conflict in outcome.conflicts:
            resolved = self.resolve(conflict)
            if isinstance(resolved, ConflictReviewRecord):
                outcome.pending_review.append(resolved)
            elif resolved is not None and changed_fields(conflict.existing, resolved):
                outcome.to_upsert.append(resolved)
                outcome.transactions_updated += 1

        return outcome

    def resolve(
        self, conflict: TransactionConflict
    ) -> Transaction | ConflictReviewRecord | None:
        """Return the record to write, a review record, or None to keep local."""
        txn_id = conflict.existing.plaid_transaction_id

        if self.strategy == "plaid_wins":
            logger.debug(f"Conflict resolved: provider wins for transaction {txn_id}")
            return conflict.incoming

        if self.strategy == "database_wins":
            logger.debug(f"Conflict resolved: database wins for transaction {txn_id}")
            return None

        if self.strategy == "merge":
            return self.merge(conflict)

        return self.review_record(conflict)

    @staticmethod
    def merge(conflict: TransactionConflict) -> Transaction:
        """Field-level merge of a conflicting pair."""
        existing, incoming = conflict.existing, conflict.incoming
        update = {name: getattr(incoming, name) for name in PROVIDER_FIELDS}
        for name in USER_EDITABLE_FIELDS:
            local = getattr(existing, name)
            update[name] = local if local else getattr(incoming, name)
        return existing.model_copy(update=update)

    @staticmethod
    def review_record(conflict: TransactionConflict) -> ConflictReviewRecord:
        existing, incoming = conflict.existing, conflict.incoming
        return ConflictReviewRecord(
            transaction_id=existing.plaid_transaction_id,
            user_id=existing.user_id or incoming.user_id or "",
            connection_id=existing.connection_id or incoming.connection_id,
            conflict_type=conflict.conflict_type,
            fields=conflict.fields,
            local_values=existing.model_dump(mode="json", include=set(conflict.fields)),
            incoming_values=incoming.model_dump(mode="json", include=set(conflict.fields)),
        )

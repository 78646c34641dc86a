"""Merging per-connection sync results into one job-level result."""

from collections.abc import Iterable

from finsync.schemas.sync import EPOCH, SyncResult


def merge_sync_results(results: Iterable[SyncResult]) -> SyncResult:
    """
    Aggregate per-connection results.

    ``success`` is the AND of all inputs, counts are summed, error lists are
    concatenated and ``last_sync_time`` is the latest input time. Merging
    nothing yields a successful, empty result stamped at the epoch.
    """
    merged = SyncResult(success=True, last_sync_time=EPOCH)

    for result in results:
        merged.success = merged.success and result.success
        merged.accounts_updated += result.accounts_updated
        merged.transactions_added += result.transactions_added
        merged.transactions_updated += result.transactions_updated
        if result.goals_updated is not None:
            merged.goals_updated = (merged.goals_updated or 0) + result.goals_updated
        merged.goal_calculation_errors.extend(result.goal_calculation_errors)
        merged.errors.extend(result.errors)
        if result.last_sync_time > merged.last_sync_time:
            merged.last_sync_time = result.last_sync_time

    # A result that carries errors never reports success
    if merged.errors:
        merged.success = False

    return merged

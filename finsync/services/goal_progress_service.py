"""Goal progress recalculation run after a successful sync."""

from finsync.exceptions import GoalCalculationError
from finsync.logging_config import get_logger
from finsync.schemas.goal import (
    AUTOMATIC_TRACKING_METHODS,
    Goal,
    GoalProgressEntry,
    GoalProgressResult,
    GoalProgressSummary,
    ProgressDelta,
)
from finsync.services.collaborators import GoalProgressCalculator, SyncStore

logger = get_logger("goals")

# Changes smaller than a cent are not written back
MIN_PROGRESS_CHANGE = 0.01


class GoalProgressService:
    """Recomputes automatically tracked goals and writes the new amounts."""

    def __init__(self, store: SyncStore, calculator: GoalProgressCalculator | None = None):
        self.store = store
        self.calculator = calculator

    def calculate_for_user(self, user_id: str) -> GoalProgressSummary:
        """
        Recalculate progress for the user's active, automatically tracked goals.

        Failures are reported in ``errors``; this method does not raise.
        """
        try:
            return self._calculate(user_id)
        except Exception as e:
            error = GoalCalculationError(
                f"Goal progress calculation failed for user {user_id}: {e}"
            )
            logger.error(str(error))
            return GoalProgressSummary(goals_updated=0, errors=[str(error)])

    def _calculate(self, user_id: str) -> GoalProgressSummary:
        if self.calculator is None:
            logger.debug("No goal progress calculator configured")
            return GoalProgressSummary()

        goals = self.store.get_active_goals(user_id)
        automatic_goals = [
            goal for goal in goals if goal.tracking_method in AUTOMATIC_TRACKING_METHODS
        ]
        if not automatic_goals:
            logger.debug(f"No goals with automatic tracking for user {user_id}")
            return GoalProgressSummary()

        goals_by_id = {goal.id: goal for goal in automatic_goals}
        results = self.calculator.calculate_multiple_goals_progress(automatic_goals)

        summary = GoalProgressSummary()
        for result in results:
            goal = goals_by_id.get(result.goal_id)
            if goal is None:
                summary.errors.append(f"Goal {result.goal_id} not found during progress update")
                continue

            if abs(result.current_amount - goal.current_amount) < MIN_PROGRESS_CHANGE:
                continue

            try:
                self.store.update_goal(
                    goal.id, user_id, {"current_amount": result.current_amount}
                )
                for delta in result.progress_entries:
                    if abs(delta.amount) < MIN_PROGRESS_CHANGE:
                        continue
                    self.store.add_goal_progress(
                        GoalProgressEntry(
                            goal_id=goal.id,
                            user_id=user_id,
                            amount=abs(delta.amount),
                            progress_type="manual_add" if delta.amount >= 0 else "manual_subtract",
                            description=delta.description or "Automatic progress calculation",
                        )
                    )
            except Exception as e:
                message = f"Failed to update goal {goal.id}: {e}"
                logger.error(message)
                summary.errors.append(message)
                continue

            summary.goals_updated += 1
            logger.info(
                f"Updated goal {goal.id}: {goal.current_amount:.2f} -> {result.current_amount:.2f}"
            )

        logger.info(
            f"Goal progress calculation completed for user {user_id}: "
            f"{summary.goals_updated} goals updated"
        )
        return summary


class AccountBalanceGoalCalculator:
    """
    Tracks ``account_balance`` goals as the summed current balance of their
    tracking accounts.

    Goals tracked any other way, or with no tracking accounts, are skipped.
    """

    def __init__(self, store: SyncStore):
        self.store = store

    def calculate_multiple_goals_progress(self, goals: list[Goal]) -> list[GoalProgressResult]:
        results = []
        for goal in goals:
            if goal.tracking_method != "account_balance" or not goal.tracking_account_ids:
                continue

            balances = self.store.get_account_balances(goal.user_id, goal.tracking_account_ids)
            current = round(sum(b for b in balances if b is not None), 2)
            delta = round(current - goal.current_amount, 2)
            entries = []
            if abs(delta) >= MIN_PROGRESS_CHANGE:
                entries.append(ProgressDelta(amount=delta, description="Account balance change"))
            results.append(
                GoalProgressResult(
                    goal_id=goal.id, current_amount=current, progress_entries=entries
                )
            )
        return results

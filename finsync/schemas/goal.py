"""Goal schemas consumed by the post-sync goal progress step."""

from typing import Literal

from pydantic import BaseModel, Field


TrackingMethod = Literal["manual", "account_balance", "transaction_category"]
ProgressType = Literal["manual_add", "manual_subtract", "automatic", "adjustment"]

# Goals the calculator can recompute without user input
AUTOMATIC_TRACKING_METHODS = ("account_balance", "transaction_category")


class Goal(BaseModel):
    id: str
    user_id: str
    title: str
    target_amount: float
    current_amount: float = 0.0
    status: Literal["active", "completed", "paused", "cancelled"] = "active"
    tracking_method: TrackingMethod = "manual"
    tracking_account_ids: list[str] = Field(default_factory=list)


class ProgressDelta(BaseModel):
    amount: float
    description: str | None = None


class GoalProgressResult(BaseModel):
    """Output of the goal progress calculator for one goal."""

    goal_id: str
    current_amount: float
    progress_entries: list[ProgressDelta] = Field(default_factory=list)


class GoalProgressEntry(BaseModel):
    """A progress row written back to the goal store."""

    goal_id: str
    user_id: str
    amount: float
    progress_type: ProgressType
    description: str


class GoalProgressSummary(BaseModel):
    goals_updated: int = 0
    errors: list[str] = Field(default_factory=list)

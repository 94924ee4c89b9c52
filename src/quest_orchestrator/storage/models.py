"""Storage models shared by the engines, API and persistence backends."""

from __future__ import annotations

import datetime as dt
import re
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from quest_orchestrator.quests.metrics import MetricParams, MetricType


class QuestStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED_PROVISIONAL = "COMPLETED_PROVISIONAL"
    COMPLETED_VERIFIED = "COMPLETED_VERIFIED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


TERMINAL_QUEST_STATUSES = frozenset(
    {QuestStatus.COMPLETED_VERIFIED, QuestStatus.FAILED, QuestStatus.EXPIRED}
)
OPEN_QUEST_STATUSES = frozenset({QuestStatus.ACTIVE, QuestStatus.COMPLETED_PROVISIONAL})

GOAL_WORKSHOP_CREATOR = "goal_workshop"
REPLACED_BY_NEW_PLAN = "Replaced by a new plan for this goal."


class FoodType(str, Enum):
    KIBBLE = "kibble"
    BONE = "bone"
    STEAK = "steak"
    SALMON = "salmon"
    TRUFFLE = "truffle"


class WorkflowStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


Confidence = Literal["HIGH", "MEDIUM", "LOW"]
ActionStatus = Literal["OPEN", "DISMISSED", "APPROVED", "COMPLETED"]
Mood = Literal["happy", "content", "worried", "sad"]


def normalize_merchant_key(merchant_name: str | None, name: str = "") -> str:
    """Stable grouping key: "STARBUCKS #1234 NYC" and "Starbucks" both map near "starbucks"."""
    raw = (merchant_name or name or "").lower().strip()
    raw = re.sub(r"\s*#\d+", "", raw)
    raw = re.sub(r"\s*\d{4,}", "", raw)
    raw = re.sub(r"\s+(llc|inc|corp|ltd)\.?$", "", raw)
    raw = re.sub(r"[^a-z0-9\s]", "", raw)
    return re.sub(r"\s+", " ", raw).strip()


class Transaction(BaseModel):
    """One signed ledger entry. Negative amounts are spend."""

    id: str
    user_id: str
    provider: str = "plaid"
    provider_txn_id: str | None = None
    date: dt.date
    amount: float
    currency: str = "USD"
    name: str
    merchant_name: str | None = None
    merchant_key: str | None = None
    category_primary: str | None = None
    category_detailed: str | None = None
    pending: bool = False
    pending_transaction_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Quest(BaseModel):
    """Persisted quest record."""

    id: str
    user_id: str
    status: QuestStatus = QuestStatus.ACTIVE
    title: str = Field(min_length=1, max_length=120)
    description: str = ""
    window_start: dt.date
    window_end: dt.date
    metric: MetricParams
    reward_food_type: FoodType
    happiness_delta: int = Field(ge=1, le=20)
    created_by: str = "agent"
    goal_id: str | None = None
    created_at: dt.datetime
    updated_at: dt.datetime

    @model_validator(mode="after")
    def _check_window(self) -> "Quest":
        if self.window_end < self.window_start:
            raise ValueError("window_end must not be before window_start")
        return self

    @property
    def metric_type(self) -> MetricType:
        return MetricType(self.metric.type)


class QuestProgressSnapshot(BaseModel):
    """Append-only audit row written on every evaluation."""

    id: str
    quest_id: str
    as_of: dt.datetime
    confirmed_value: float
    pending_value: float
    status: QuestStatus
    explanation: str


class RewardState(BaseModel):
    """Per-user pet state mutated by verified quest completions."""

    user_id: str
    happiness: int = Field(default=70, ge=0, le=100)
    mood: Mood = "content"
    food_credits: int = Field(default=10, ge=0)
    last_reward_food: FoodType | None = None
    last_reward_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None


class RewardGrant(BaseModel):
    """Reward to apply inside an evaluation commit."""

    user_id: str
    food_type: FoodType
    happiness_delta: int


class WorkflowExecution(BaseModel):
    """Observability row for one workflow run attempt."""

    execution_id: str
    workflow_id: str
    workflow_name: str
    run_id: str
    status: WorkflowStatus
    current_step: str | None = None
    error: str | None = None
    input_summary: Any = None
    output_summary: Any = None
    step_attempts: dict[str, int] = Field(default_factory=dict)
    started_at: dt.datetime
    completed_at: dt.datetime | None = None


class IdempotencyRecord(BaseModel):
    """Claim placeholder; ``result`` holds serialised JSON once the run completes."""

    key: str
    result: str | None = None
    created_at: dt.datetime


class UserProfile(BaseModel):
    id: str
    timezone: str = "America/New_York"
    created_at: dt.datetime


class Insight(BaseModel):
    id: str
    user_id: str
    date: dt.date
    title: str = Field(max_length=80)
    blurb: str = Field(max_length=280)
    confidence: Confidence = "MEDIUM"
    metrics: dict[str, Any] = Field(default_factory=dict)
    created_at: dt.datetime


class ActionItem(BaseModel):
    id: str
    user_id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = True
    status: ActionStatus = "OPEN"
    created_at: dt.datetime


class IngestionResult(BaseModel):
    inserted: int = 0
    updated: int = 0
    pending_linked: int = 0

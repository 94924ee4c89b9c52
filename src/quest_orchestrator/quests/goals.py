"""Savings-goal planning: turn a goal into weekly category spend-cap quests.

Each template category gets a share of the weekly savings target weighted by
how much the user usually spends there. Caps never drop below
``MIN_CAP_FLOOR`` or ``MIN_CAP_RATIO`` of the usual weekly spend, and are
rounded to the nearest $5.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from quest_orchestrator.quests.metrics import CategorySpendCap
from quest_orchestrator.storage.base import QuestStore
from quest_orchestrator.storage.models import GOAL_WORKSHOP_CREATOR, FoodType, Quest

SPEND_LOOKBACK_DAYS = 90
LOOKBACK_WEEKS = 13
DEFAULT_DAYS_TO_DEADLINE = 56
MAX_WINDOW_DAYS = 7
MIN_CAP_FLOOR = 15.0
MIN_CAP_RATIO = 0.55
CAP_ROUNDING = 5


class SavingsGoal(BaseModel):
    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=100)
    target_amount: float = Field(gt=0)
    saved_so_far: float = Field(default=0.0, ge=0)
    deadline: date | None = None
    status: Literal["ACTIVE", "PAUSED", "COMPLETED"] = "ACTIVE"

    @property
    def remaining(self) -> float:
        return max(0.0, self.target_amount - self.saved_so_far)


@dataclass(frozen=True)
class GoalQuestTemplate:
    category: str
    title: str
    tip: str
    reward: FoodType
    happiness_delta: int
    fallback_weekly_spend: float


GOAL_QUEST_TEMPLATES: tuple[GoalQuestTemplate, ...] = (
    GoalQuestTemplate(
        category="Food & Drink",
        title="Cook-at-Home Week",
        tip="Swap at least two takeout orders for home meals.",
        reward=FoodType.BONE,
        happiness_delta=6,
        fallback_weekly_spend=70.0,
    ),
    GoalQuestTemplate(
        category="Shopping",
        title="Impulse Pause Challenge",
        tip="Use a 24-hour wait before non-essential buys.",
        reward=FoodType.STEAK,
        happiness_delta=8,
        fallback_weekly_spend=60.0,
    ),
    GoalQuestTemplate(
        category="Entertainment",
        title="Low-Cost Fun Week",
        tip="Choose free or low-cost plans for weekend activities.",
        reward=FoodType.KIBBLE,
        happiness_delta=5,
        fallback_weekly_spend=45.0,
    ),
)


def goal_window(today: date, deadline: date | None) -> tuple[date, date]:
    """One week from today, cut short by an earlier deadline but never before today."""
    end = today + timedelta(days=MAX_WINDOW_DAYS - 1)
    if deadline is not None and deadline < end:
        end = max(deadline, today)
    return today, end


def weeks_to_deadline(today: date, deadline: date | None) -> int:
    days = DEFAULT_DAYS_TO_DEADLINE if deadline is None else max(1, (deadline - today).days)
    return max(1, math.ceil(days / 7))


def weekly_category_spend(store: QuestStore, user_id: str, today: date) -> dict[str, float]:
    """Average weekly posted outflow per template category over the lookback."""
    start = today - timedelta(days=SPEND_LOOKBACK_DAYS)
    spend: dict[str, float] = {}
    for template in GOAL_QUEST_TEMPLATES:
        rows = store.get_transactions(user_id, start, today, category=template.category)
        total = sum(-txn.amount for txn in rows if txn.amount < 0)
        spend[template.category] = max(0.0, total / LOOKBACK_WEEKS)
    return spend


def round_cap(value: float) -> int:
    return max(int(MIN_CAP_FLOOR), math.floor(value / CAP_ROUNDING + 0.5) * CAP_ROUNDING)


def plan_goal_quests(
    goal: SavingsGoal,
    weekly_spend: dict[str, float],
    *,
    now: datetime,
) -> list[Quest]:
    """Build one CATEGORY_SPEND_CAP quest per template; empty when nothing is left to save."""
    if goal.status != "ACTIVE" or goal.remaining <= 0:
        return []

    today = now.date()
    weekly_savings = goal.remaining / weeks_to_deadline(today, goal.deadline)
    window_start, window_end = goal_window(today, goal.deadline)

    bases = []
    for template in GOAL_QUEST_TEMPLATES:
        observed = weekly_spend.get(template.category, 0.0)
        bases.append(observed if observed > 0 else template.fallback_weekly_spend)
    weights = [base + 1 for base in bases]
    total_weight = sum(weights)

    quests = []
    for template, base, weight in zip(GOAL_QUEST_TEMPLATES, bases, weights):
        reduction = weekly_savings * weight / total_weight
        min_cap = max(MIN_CAP_FLOOR, base * MIN_CAP_RATIO)
        cap = round_cap(max(min_cap, base - reduction))
        quests.append(
            Quest(
                id=str(uuid4()),
                user_id=goal.user_id,
                title=template.title,
                description=(
                    f"{template.tip} Keep {template.category} spending under ${cap} "
                    f"this week to move toward {goal.name}."
                ),
                window_start=window_start,
                window_end=window_end,
                metric=CategorySpendCap(category=template.category, cap=cap),
                reward_food_type=template.reward,
                happiness_delta=template.happiness_delta,
                created_by=GOAL_WORKSHOP_CREATOR,
                goal_id=goal.id,
                created_at=now,
                updated_at=now,
            )
        )
    return quests

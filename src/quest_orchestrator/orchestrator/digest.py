"""Daily digest generation.

The agent asks the configured LLM for a ``DailyDigestOutput`` and falls back
to a deterministic payload built from the user's 7-day and 30-day spend when
no adapter is configured or the model call fails validation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from quest_orchestrator.orchestrator.llm import LLMAdapter
from quest_orchestrator.quests.evaluation import round_cents
from quest_orchestrator.quests.metrics import MetricParams, MetricType, parse_metric
from quest_orchestrator.storage.base import QuestStore
from quest_orchestrator.storage.models import Confidence, FoodType, QuestStatus

logger = logging.getLogger(__name__)

ActionType = Literal["SUBSCRIPTION_REVIEW", "BUDGET_SUGGESTION", "SAVINGS_TIP", "SPENDING_ALERT"]

DAILY_SYSTEM_PROMPT = (
    "You are Scotty, a friendly budgeting companion. From the spending summary, "
    "return 1-3 short insights, at most one quest that can be verified from bank "
    "transactions alone, and at most one optional action. Respond with JSON only."
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class DigestInsight(BaseModel):
    title: str = Field(min_length=1, max_length=80)
    blurb: str = Field(max_length=280)
    confidence: Confidence = "MEDIUM"
    metrics: dict[str, Any] = Field(default_factory=dict)


class DigestQuest(BaseModel):
    title: str = Field(min_length=1, max_length=120)
    metric_type: MetricType
    metric_params: dict[str, Any] = Field(default_factory=dict)
    reward_food_type: FoodType
    happiness_delta: int = Field(ge=1, le=20)
    window_hours: int = Field(ge=1, le=168)

    @model_validator(mode="after")
    def _check_metric(self) -> "DigestQuest":
        self.metric()
        return self

    def metric(self) -> MetricParams:
        return parse_metric(self.metric_type, self.metric_params)


class DigestAction(BaseModel):
    type: ActionType
    payload: dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = True


class DailyDigestOutput(BaseModel):
    insights: list[DigestInsight] = Field(min_length=1, max_length=3)
    quest: DigestQuest | None = None
    action: DigestAction | None = None


class SpendSummary(BaseModel):
    start: date
    end: date
    total_spent: float
    total_income: float
    transaction_count: int
    by_category: dict[str, float] = Field(default_factory=dict)

    def top_category(self) -> tuple[str, float] | None:
        if not self.by_category:
            return None
        return min(self.by_category.items(), key=lambda item: (-item[1], item[0]))


def build_spend_summary(store: QuestStore, user_id: str, start: date, end: date) -> SpendSummary:
    """Posted spend and income over ``[start, end]``, grouped by primary category."""
    spent = 0.0
    income = 0.0
    by_category: dict[str, float] = {}
    transactions = store.get_transactions(user_id, start, end)
    for txn in transactions:
        if txn.amount < 0:
            spent += abs(txn.amount)
            category = txn.category_primary or "Other"
            by_category[category] = by_category.get(category, 0.0) + abs(txn.amount)
        else:
            income += txn.amount
    return SpendSummary(
        start=start,
        end=end,
        total_spent=round_cents(spent),
        total_income=round_cents(income),
        transaction_count=len(transactions),
        by_category={name: round_cents(total) for name, total in by_category.items()},
    )


def fallback_payload(summary_7d: SpendSummary, summary_30d: SpendSummary) -> DailyDigestOutput:
    insights: list[DigestInsight] = []
    week_total = summary_7d.total_spent
    if week_total < summary_30d.total_spent / 4:
        insights.append(
            DigestInsight(
                title="Great Week!",
                blurb=(
                    f"You've spent ${week_total:.2f} this week, which is below your "
                    "30-day average pace. Keep it up!"
                ),
                confidence="HIGH",
                metrics={"window": "7d", "total_spent": week_total},
            )
        )
    else:
        insights.append(
            DigestInsight(
                title="Weekly Summary",
                blurb=(
                    f"You've spent ${week_total:.2f} over the past 7 days across "
                    f"{summary_7d.transaction_count} transactions."
                ),
                confidence="HIGH",
                metrics={"window": "7d", "total_spent": week_total},
            )
        )

    quest: DigestQuest | None = None
    top = summary_7d.top_category()
    if top is not None:
        category, amount = top
        insights.append(
            DigestInsight(
                title=f"Top Spending: {category}"[:80],
                blurb=f"{category} is your top category at ${amount:.2f} this week."[:280],
                confidence="HIGH",
                metrics={"category": category, "amount": amount},
            )
        )
        # Aim 20% under the recent daily average.
        cap = round_cents(amount / 7 * 0.8)
        quest = DigestQuest(
            title=f"Keep {category} under ${cap:.2f} today"[:120],
            metric_type=MetricType.CATEGORY_SPEND_CAP,
            metric_params={"category": category, "cap": cap, "window": "daily"},
            reward_food_type=FoodType.BONE,
            happiness_delta=5,
            window_hours=24,
        )
    return DailyDigestOutput(insights=insights, quest=quest, action=None)


def enforce_daily_policies(
    output: DailyDigestOutput, *, has_active_quest: bool
) -> DailyDigestOutput:
    """At most one ACTIVE quest per user: drop the proposal when one exists."""
    if has_active_quest and output.quest is not None:
        return output.model_copy(update={"quest": None})
    return output


def build_context_prompt(summary_7d: SpendSummary, summary_30d: SpendSummary) -> str:
    lines = [
        f"Last 7 days: spent ${summary_7d.total_spent:.2f} over "
        f"{summary_7d.transaction_count} transactions.",
        f"Last 30 days: spent ${summary_30d.total_spent:.2f}.",
        "7-day spend by category:",
    ]
    for name, total in sorted(summary_7d.by_category.items(), key=lambda item: -item[1]):
        lines.append(f"- {name}: ${total:.2f}")
    return "\n".join(lines)


class DigestAgent:
    """Produce the validated daily payload for one user."""

    def __init__(
        self,
        store: QuestStore,
        *,
        llm_adapter: LLMAdapter | None = None,
        llm_timeout_s: float = 20.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.llm_adapter = llm_adapter
        self.llm_timeout_s = llm_timeout_s
        self.clock = clock

    async def generate_daily_payload(self, user_id: str) -> DailyDigestOutput:
        today = self.clock().date()
        summary_7d = build_spend_summary(self.store, user_id, today - timedelta(days=7), today)
        summary_30d = build_spend_summary(self.store, user_id, today - timedelta(days=30), today)
        has_active_quest = bool(self.store.list_quests(user_id, statuses=[QuestStatus.ACTIVE]))

        output: DailyDigestOutput | None = None
        if self.llm_adapter is not None:
            try:
                output = await asyncio.to_thread(
                    self.llm_adapter.generate_structured,
                    system_prompt=DAILY_SYSTEM_PROMPT,
                    user_prompt=build_context_prompt(summary_7d, summary_30d),
                    response_model=DailyDigestOutput,
                    timeout_s=self.llm_timeout_s,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "digest event=llm_fallback user_id=%s reason=%s",
                    user_id,
                    exc,
                )
        if output is None:
            output = fallback_payload(summary_7d, summary_30d)
        return enforce_daily_policies(output, has_active_quest=has_active_quest)

"""Concrete workflows composed from the engine, the evaluator and collaborators.

Idempotency keys are derived from the logical occurrence (user and day for
the digest, delivery id for webhooks), so duplicate cron fires and webhook
retries collapse into one effective run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from quest_orchestrator.config.settings import Settings
from quest_orchestrator.orchestrator.digest import DailyDigestOutput, DigestAgent
from quest_orchestrator.orchestrator.llm import LLMAdapter
from quest_orchestrator.orchestrator.providers import (
    BankDataProvider,
    InMemoryNotificationProvider,
    NoopRecurringChargeDetector,
    NotificationPayload,
    NotificationProvider,
    QueuedBankDataProvider,
    RecurringChargeDetector,
)
from quest_orchestrator.quests.evaluation import QuestEvaluator
from quest_orchestrator.quests.goals import SavingsGoal, plan_goal_quests, weekly_category_spend
from quest_orchestrator.quests.metrics import MetricType, parse_metric
from quest_orchestrator.storage.base import QuestStore
from quest_orchestrator.storage.models import (
    ActionItem,
    IngestionResult,
    Insight,
    Quest,
    QuestStatus,
    RewardState,
    Transaction,
    WorkflowExecution,
)
from quest_orchestrator.workflow.engine import (
    RetryPolicy,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowEngine,
    WorkflowStep,
)

logger = logging.getLogger(__name__)

DAILY_DIGEST_WORKFLOW_ID = "daily_digest"
TRANSACTION_UPDATE_WORKFLOW_ID = "transaction_update"
GOAL_QUESTS_WORKFLOW_ID = "create_goal_quests"
GOAL_WORKSHOP_WORKFLOW_ID = "goal_workshop"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def last_window_day(now: datetime, window_hours: int) -> date:
    """Last calendar day covered by a window of ``window_hours`` starting today."""
    day_start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
    return (day_start + timedelta(hours=window_hours) - timedelta(microseconds=1)).date()


class GoalRequest(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    metric_type: MetricType
    metric_params: dict[str, Any] = Field(default_factory=dict)
    days: int = Field(ge=1, le=30)

    @model_validator(mode="after")
    def _check_metric(self) -> "GoalRequest":
        parse_metric(self.metric_type, self.metric_params)
        return self


class AppOpenPayload(BaseModel):
    insights: list[Insight]
    active_quest: Quest | None
    optional_actions: list[ActionItem]
    reward_state: RewardState


class Orchestrator:
    """Entry points for cron, webhook and app-open triggers."""

    def __init__(
        self,
        store: QuestStore,
        *,
        engine: WorkflowEngine,
        evaluator: QuestEvaluator,
        digest_agent: DigestAgent,
        bank: BankDataProvider,
        notifications: NotificationProvider,
        recurring: RecurringChargeDetector,
        digest_timeout_s: float = 30.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.engine = engine
        self.evaluator = evaluator
        self.digest_agent = digest_agent
        self.bank = bank
        self.notifications = notifications
        self.recurring = recurring
        self.digest_timeout_s = digest_timeout_s
        self.clock = clock

    async def run_daily_digest(self, user_id: str) -> dict[str, Any]:
        key = f"daily_digest:{user_id}:{self.clock().date().isoformat()}"

        async def ensure_user_exists(state: dict[str, Any], context: WorkflowContext) -> Any:
            self.store.ensure_user(state["user_id"])
            return state

        async def sync_transactions(state: dict[str, Any], context: WorkflowContext) -> Any:
            fetched = await self.bank.sync_transactions(state["user_id"])
            if fetched:
                result = await asyncio.to_thread(self.store.ingest_transactions, fetched)
                logger.info(
                    "digest event=synced run_id=%s user_id=%s inserted=%d pending_linked=%d",
                    context.workflow_id,
                    state["user_id"],
                    result.inserted,
                    result.pending_linked,
                )
            return state

        async def detect_recurring(state: dict[str, Any], context: WorkflowContext) -> Any:
            await self.recurring.refresh(state["user_id"])
            return state

        async def generate_payload(state: dict[str, Any], context: WorkflowContext) -> Any:
            output = await self.digest_agent.generate_daily_payload(state["user_id"])
            return {**state, "output": output}

        async def persist_insights(state: dict[str, Any], context: WorkflowContext) -> Any:
            output: DailyDigestOutput = state["output"]
            now = self.clock()
            self.store.save_insights(
                Insight(
                    id=str(uuid4()),
                    user_id=state["user_id"],
                    date=now.date(),
                    title=insight.title,
                    blurb=insight.blurb,
                    confidence=insight.confidence,
                    metrics=insight.metrics,
                    created_at=now,
                )
                for insight in output.insights
            )
            return state

        async def persist_quest(state: dict[str, Any], context: WorkflowContext) -> Any:
            proposal = state["output"].quest
            if proposal is None:
                return state
            now = self.clock()
            quest = self.store.create_quest(
                Quest(
                    id=str(uuid4()),
                    user_id=state["user_id"],
                    title=proposal.title,
                    window_start=now.date(),
                    window_end=last_window_day(now, proposal.window_hours),
                    metric=proposal.metric(),
                    reward_food_type=proposal.reward_food_type,
                    happiness_delta=proposal.happiness_delta,
                    created_by="agent",
                    created_at=now,
                    updated_at=now,
                )
            )
            logger.info(
                "digest event=quest_created run_id=%s user_id=%s quest_id=%s metric=%s",
                context.workflow_id,
                quest.user_id,
                quest.id,
                quest.metric_type.value,
            )
            return state

        async def persist_action(state: dict[str, Any], context: WorkflowContext) -> Any:
            action = state["output"].action
            if action is not None:
                self.store.create_action_item(
                    ActionItem(
                        id=str(uuid4()),
                        user_id=state["user_id"],
                        type=action.type,
                        payload=action.payload,
                        requires_approval=action.requires_approval,
                        created_at=self.clock(),
                    )
                )
            return state

        async def send_notification(state: dict[str, Any], context: WorkflowContext) -> Any:
            output: DailyDigestOutput = state["output"]
            if await self.notifications.enforce_daily_limit(state["user_id"]):
                body = output.insights[0].blurb if output.insights else ""
                await self.notifications.schedule(
                    state["user_id"],
                    NotificationPayload(
                        title="Scotty has your daily update!",
                        body=body or "Check in with Scotty today!",
                    ),
                )
            return {"success": True, "idempotency_key": key}

        definition = WorkflowDefinition(
            id=DAILY_DIGEST_WORKFLOW_ID,
            name="Daily Digest Workflow",
            idempotency_key=lambda _: key,
            steps=[
                WorkflowStep("ensure_user_exists", ensure_user_exists),
                WorkflowStep(
                    "sync_transactions",
                    sync_transactions,
                    retry_policy=RetryPolicy(max_attempts=3, backoff_s=1.0, exponential=True),
                ),
                WorkflowStep("detect_recurring", detect_recurring),
                WorkflowStep(
                    "generate_payload",
                    generate_payload,
                    retry_policy=RetryPolicy(max_attempts=2, backoff_s=2.0, exponential=True),
                    timeout_s=self.digest_timeout_s,
                ),
                WorkflowStep("persist_insights", persist_insights),
                WorkflowStep("persist_quest", persist_quest),
                WorkflowStep("persist_action", persist_action),
                WorkflowStep(
                    "send_notification",
                    send_notification,
                    retry_policy=RetryPolicy(max_attempts=2, backoff_s=0.5),
                ),
            ],
        )
        return await self.engine.execute(definition, {"user_id": user_id})

    async def handle_transaction_update(
        self,
        user_id: str,
        transactions: Sequence[Transaction],
        webhook_event_id: str | None = None,
    ) -> dict[str, Any]:
        foreign = [txn.id for txn in transactions if txn.user_id != user_id]
        if foreign:
            raise ValueError(f"Transactions {foreign} do not belong to user {user_id}")
        if webhook_event_id:
            key = f"webhook:{webhook_event_id}"
        else:
            key = f"webhook:{user_id}:{int(self.clock().timestamp() * 1000)}"

        async def ingest_transactions(state: dict[str, Any], context: WorkflowContext) -> Any:
            self.store.ensure_user(state["user_id"])
            result = await asyncio.to_thread(
                self.store.ingest_transactions, state["transactions"]
            )
            return {**state, "ingestion": result}

        async def evaluate_quests(state: dict[str, Any], context: WorkflowContext) -> Any:
            ingestion: IngestionResult = state["ingestion"]
            results = await asyncio.to_thread(
                self.evaluator.evaluate_user_quests, state["user_id"]
            )
            return {
                "ingested": ingestion.inserted,
                "quest_results": [result.model_dump(mode="json") for result in results],
            }

        definition = WorkflowDefinition(
            id=TRANSACTION_UPDATE_WORKFLOW_ID,
            name="Transaction Update Workflow",
            idempotency_key=lambda _: key,
            steps=[
                WorkflowStep("ingest_transactions", ingest_transactions),
                WorkflowStep("evaluate_quests", evaluate_quests),
            ],
        )
        return await self.engine.execute(
            definition, {"user_id": user_id, "transactions": list(transactions)}
        )

    async def create_goal_quests(self, user_id: str, goal: GoalRequest) -> dict[str, Any]:
        """Queue one FUTURE_QUEST action per day of the goal, starting today."""
        today = self.clock().date()
        key = f"goal_quests:{user_id}:{goal.title}:{today.isoformat()}"

        async def queue_quests(state: dict[str, Any], context: WorkflowContext) -> Any:
            now = self.clock()
            for offset in range(goal.days):
                self.store.create_action_item(
                    ActionItem(
                        id=str(uuid4()),
                        user_id=user_id,
                        type="FUTURE_QUEST",
                        payload={
                            "title": f"{goal.title} - Day {offset + 1}",
                            "metric_type": goal.metric_type.value,
                            "metric_params": goal.metric_params,
                            "scheduled_date": (today + timedelta(days=offset)).isoformat(),
                        },
                        requires_approval=False,
                        created_at=now,
                    )
                )
            return {"queued": goal.days}

        definition = WorkflowDefinition(
            id=GOAL_QUESTS_WORKFLOW_ID,
            name="Create Goal Quests Workflow",
            idempotency_key=lambda _: key,
            steps=[WorkflowStep("queue_quests", queue_quests)],
        )
        return await self.engine.execute(
            definition, {"user_id": user_id, "goal": goal.model_dump(mode="json")}
        )

    async def generate_goal_quests(self, user_id: str, goal: SavingsGoal) -> dict[str, Any]:
        """Plan weekly spend-cap quests for a savings goal, replacing its earlier plan."""
        if goal.user_id != user_id:
            raise ValueError(f"Goal {goal.id} does not belong to user {user_id}")
        today = self.clock().date()
        key = f"goal_workshop:{user_id}:{goal.id}:{today.isoformat()}:{goal.remaining:.2f}"

        async def load_spend(state: dict[str, Any], context: WorkflowContext) -> Any:
            spend = await asyncio.to_thread(weekly_category_spend, self.store, user_id, today)
            return {**state, "weekly_spend": spend}

        async def write_quests(state: dict[str, Any], context: WorkflowContext) -> Any:
            now = self.clock()
            quests = plan_goal_quests(goal, state["weekly_spend"], now=now)
            if not quests:
                return {"goal_id": goal.id, "quest_ids": [], "replaced": []}
            self.store.ensure_user(user_id)
            replaced = await asyncio.to_thread(
                self.store.replace_goal_quests, user_id, goal.id, quests, now=now
            )
            logger.info(
                "goal_workshop event=planned run_id=%s user_id=%s goal_id=%s created=%d "
                "replaced=%d",
                context.workflow_id,
                user_id,
                goal.id,
                len(quests),
                len(replaced),
            )
            return {
                "goal_id": goal.id,
                "quest_ids": [quest.id for quest in quests],
                "replaced": replaced,
            }

        definition = WorkflowDefinition(
            id=GOAL_WORKSHOP_WORKFLOW_ID,
            name="Goal Workshop Workflow",
            idempotency_key=lambda _: key,
            steps=[
                WorkflowStep("load_spend", load_spend),
                WorkflowStep("write_quests", write_quests),
            ],
        )
        return await self.engine.execute(
            definition, {"user_id": user_id, "goal": goal.model_dump(mode="json")}
        )

    async def run_daily_digest_all(self) -> dict[str, Any]:
        processed = 0
        errors: list[str] = []
        for user_id in self.store.list_user_ids():
            try:
                await self.run_daily_digest(user_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("digest event=user_failed user_id=%s reason=%s", user_id, exc)
                errors.append(f"User {user_id}: {exc}")
                continue
            processed += 1
        return {"processed": processed, "errors": errors}

    async def get_app_open_payload(self, user_id: str) -> AppOpenPayload:
        """Home-screen payload; runs today's digest on demand when it has not run yet."""
        today = self.clock().date()
        insights = self.store.list_insights(user_id, today)
        if not insights:
            try:
                await self.run_daily_digest(user_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "digest event=on_demand_failed user_id=%s reason=%s", user_id, exc
                )
            insights = self.store.list_insights(user_id, today)

        active = self.store.list_quests(user_id, statuses=[QuestStatus.ACTIVE])
        return AppOpenPayload(
            insights=insights,
            active_quest=active[0] if active else None,
            optional_actions=self.store.list_action_items(user_id, status="OPEN", limit=1),
            reward_state=self.store.get_reward_state(user_id),
        )

    def get_workflow_history(self, workflow_id: str, limit: int = 10) -> list[WorkflowExecution]:
        return self.engine.get_execution_history(workflow_id, limit)


def build_orchestrator(
    store: QuestStore,
    settings: Settings,
    *,
    llm_adapter: LLMAdapter | None = None,
    bank: BankDataProvider | None = None,
    notifications: NotificationProvider | None = None,
    recurring: RecurringChargeDetector | None = None,
    clock: Callable[[], datetime] = _utc_now,
) -> Orchestrator:
    engine = WorkflowEngine(
        store,
        stale_after_s=settings.idempotency_stale_after_s,
        result_ttl_s=settings.idempotency_result_ttl_s,
        clock=clock,
    )
    return Orchestrator(
        store,
        engine=engine,
        evaluator=QuestEvaluator(store, clock=clock),
        digest_agent=DigestAgent(
            store,
            llm_adapter=llm_adapter,
            llm_timeout_s=settings.llm_timeout_s,
            clock=clock,
        ),
        bank=bank or QueuedBankDataProvider(),
        notifications=notifications
        or InMemoryNotificationProvider(daily_limit=settings.notification_daily_limit, clock=clock),
        recurring=recurring or NoopRecurringChargeDetector(),
        digest_timeout_s=settings.digest_timeout_s,
        clock=clock,
    )

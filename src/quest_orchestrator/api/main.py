"""FastAPI app entrypoint for quest-orchestrator."""

from __future__ import annotations

import datetime as dt
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from quest_orchestrator.config.settings import Settings, get_settings
from quest_orchestrator.orchestrator.llm import build_llm_adapter
from quest_orchestrator.orchestrator.workflows import (
    AppOpenPayload,
    GoalRequest,
    Orchestrator,
    build_orchestrator,
)
from quest_orchestrator.quests.evaluation import EvaluationResult, QuestNotFoundError
from quest_orchestrator.quests.goals import SavingsGoal
from quest_orchestrator.storage.base import QuestStore
from quest_orchestrator.storage.models import (
    Quest,
    QuestProgressSnapshot,
    QuestStatus,
    RewardState,
    Transaction,
    WorkflowExecution,
)
from quest_orchestrator.storage.sqlite import SqliteQuestStore
from quest_orchestrator.workflow.engine import WorkflowExecutionError


class WebhookTransaction(BaseModel):
    id: str | None = None
    provider: str = "plaid"
    provider_txn_id: str | None = None
    date: dt.date
    amount: float
    currency: str = "USD"
    name: str = Field(min_length=1)
    merchant_name: str | None = None
    category_primary: str | None = None
    category_detailed: str | None = None
    pending: bool = False
    pending_transaction_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_transaction(self, user_id: str) -> Transaction:
        txn_id = self.id
        if txn_id is None:
            txn_id = (
                f"{self.provider}:{self.provider_txn_id}"
                if self.provider_txn_id
                else str(uuid4())
            )
        return Transaction(
            user_id=user_id,
            **self.model_dump(exclude={"id"}),
            id=txn_id,
        )


class TransactionWebhookRequest(BaseModel):
    user_id: str = Field(min_length=1)
    webhook_event_id: str | None = None
    transactions: list[WebhookTransaction]


class DailyDigestRequest(BaseModel):
    user_id: str | None = None


class GoalQuestsRequest(GoalRequest):
    user_id: str = Field(min_length=1)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: QuestStore | None,
    orchestrator_override: Orchestrator | None,
) -> None:
    if not hasattr(app.state, "storage"):
        if storage_override is None:
            app.state.storage = SqliteQuestStore(settings.resolved_database_path())
        else:
            app.state.storage = storage_override
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "orchestrator"):
        app.state.orchestrator = orchestrator_override or build_orchestrator(
            app.state.storage,
            settings,
            llm_adapter=build_llm_adapter(settings),
        )


def create_app(
    *,
    storage: QuestStore | None = None,
    settings_override: Settings | None = None,
    orchestrator: Orchestrator | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            orchestrator_override=orchestrator,
        )
        yield

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            orchestrator_override=orchestrator,
        )

    def _get_storage(request: Request) -> QuestStore:
        if not hasattr(request.app.state, "storage"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                storage_override=storage,
                orchestrator_override=orchestrator,
            )
        return request.app.state.storage

    def _get_orchestrator(request: Request) -> Orchestrator:
        _get_storage(request)
        return request.app.state.orchestrator

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/quests/active", response_model=Quest | None)
    def get_active_quest(request: Request, user_id: str = Query(min_length=1)) -> Quest | None:
        active = _get_storage(request).list_quests(user_id, statuses=[QuestStatus.ACTIVE])
        return active[0] if active else None

    @app.get("/quests/{quest_id}", response_model=Quest)
    def get_quest(quest_id: str, request: Request) -> Quest:
        quest = _get_storage(request).get_quest(quest_id)
        if quest is None:
            raise HTTPException(status_code=404, detail="Quest not found")
        return quest

    @app.get("/quests/{quest_id}/snapshots", response_model=list[QuestProgressSnapshot])
    def list_quest_snapshots(quest_id: str, request: Request) -> list[QuestProgressSnapshot]:
        store = _get_storage(request)
        if store.get_quest(quest_id) is None:
            raise HTTPException(status_code=404, detail="Quest not found")
        return store.list_snapshots(quest_id)

    @app.post("/quests/{quest_id}/evaluate", response_model=EvaluationResult)
    def evaluate_quest(quest_id: str, request: Request) -> EvaluationResult:
        try:
            return _get_orchestrator(request).evaluator.evaluate_quest(quest_id)
        except QuestNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Quest not found") from exc

    @app.post("/users/{user_id}/quests/evaluate", response_model=list[EvaluationResult])
    def evaluate_user_quests(user_id: str, request: Request) -> list[EvaluationResult]:
        return _get_orchestrator(request).evaluator.evaluate_user_quests(user_id)

    @app.post("/webhooks/transactions")
    async def transactions_webhook(
        payload: TransactionWebhookRequest, request: Request
    ) -> dict[str, Any]:
        transactions = [txn.to_transaction(payload.user_id) for txn in payload.transactions]
        try:
            return await _get_orchestrator(request).handle_transaction_update(
                payload.user_id,
                transactions,
                webhook_event_id=payload.webhook_event_id,
            )
        except WorkflowExecutionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.post("/admin/daily-digest")
    async def run_daily_digest(payload: DailyDigestRequest, request: Request) -> dict[str, Any]:
        runner = _get_orchestrator(request)
        if payload.user_id is None:
            return await runner.run_daily_digest_all()
        try:
            return await runner.run_daily_digest(payload.user_id)
        except WorkflowExecutionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.get("/home/daily", response_model=AppOpenPayload)
    async def home_daily(request: Request, user_id: str = Query(min_length=1)) -> AppOpenPayload:
        return await _get_orchestrator(request).get_app_open_payload(user_id)

    @app.get("/rewards/{user_id}", response_model=RewardState)
    def get_reward_state(user_id: str, request: Request) -> RewardState:
        return _get_storage(request).get_reward_state(user_id)

    @app.post("/goals/quests")
    async def create_goal_quests(payload: GoalQuestsRequest, request: Request) -> dict[str, Any]:
        goal = GoalRequest.model_validate(payload.model_dump(exclude={"user_id"}))
        try:
            return await _get_orchestrator(request).create_goal_quests(payload.user_id, goal)
        except WorkflowExecutionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.post("/goals/workshop")
    async def plan_goal_quests(goal: SavingsGoal, request: Request) -> dict[str, Any]:
        try:
            return await _get_orchestrator(request).generate_goal_quests(goal.user_id, goal)
        except WorkflowExecutionError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.get("/workflows/{workflow_id}/executions", response_model=list[WorkflowExecution])
    def list_workflow_executions(
        workflow_id: str,
        request: Request,
        limit: int = Query(default=10, ge=1, le=100),
    ) -> list[WorkflowExecution]:
        return _get_orchestrator(request).get_workflow_history(workflow_id, limit)

    return app


app = create_app()

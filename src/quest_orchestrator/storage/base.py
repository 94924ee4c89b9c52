"""Storage interface shared by the quest engine, workflow engine and API."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date, datetime
from typing import Any, Protocol

from quest_orchestrator.storage.models import (
    ActionItem,
    IdempotencyRecord,
    IngestionResult,
    Insight,
    Quest,
    QuestProgressSnapshot,
    QuestStatus,
    RewardGrant,
    RewardState,
    Transaction,
    UserProfile,
    WorkflowExecution,
    WorkflowStatus,
)


class QuestStore(Protocol):
    def migrate(self) -> None: ...

    # Users

    def ensure_user(self, user_id: str, *, timezone: str | None = None) -> UserProfile: ...

    def get_user(self, user_id: str) -> UserProfile | None: ...

    def list_user_ids(self) -> list[str]: ...

    # Transactions

    def ingest_transactions(self, transactions: Iterable[Transaction]) -> IngestionResult: ...

    def get_transactions(
        self,
        user_id: str,
        start: date,
        end: date,
        *,
        include_pending: bool = False,
        category: str | None = None,
        merchant_key: str | None = None,
    ) -> list[Transaction]: ...

    # Quests

    def create_quest(self, quest: Quest) -> Quest: ...

    def replace_goal_quests(
        self,
        user_id: str,
        goal_id: str,
        quests: Sequence[Quest],
        *,
        now: datetime,
    ) -> list[str]:
        """Close the goal's open workshop quests as EXPIRED and insert ``quests``.

        Runs as one transaction. Returns the ids of the quests that were replaced.
        """
        ...

    def get_quest(self, quest_id: str) -> Quest | None: ...

    def list_quests(
        self,
        user_id: str,
        statuses: Iterable[QuestStatus] | None = None,
    ) -> list[Quest]: ...

    def list_open_quest_ids(self) -> list[str]: ...

    def list_snapshots(self, quest_id: str) -> list[QuestProgressSnapshot]: ...

    def commit_evaluation(
        self,
        *,
        quest_id: str,
        status: QuestStatus,
        snapshot: QuestProgressSnapshot,
        reward: RewardGrant | None,
    ) -> RewardState | None:
        """Write status, snapshot and reward together, or none of them.

        The reward is skipped when the stored quest is already COMPLETED_VERIFIED,
        so racing evaluations grant it once. Returns the new reward state, if any.
        """
        ...

    # Rewards

    def get_reward_state(self, user_id: str) -> RewardState: ...

    # Insights and action items

    def save_insights(self, insights: Iterable[Insight]) -> int: ...

    def list_insights(self, user_id: str, day: date) -> list[Insight]: ...

    def create_action_item(self, item: ActionItem) -> ActionItem: ...

    def list_action_items(
        self,
        user_id: str,
        *,
        status: str = "OPEN",
        limit: int | None = None,
    ) -> list[ActionItem]: ...

    # Idempotency

    def claim_idempotency_key(self, key: str, *, now: datetime | None = None) -> bool: ...

    def get_idempotency_record(self, key: str) -> IdempotencyRecord | None: ...

    def reclaim_stale_idempotency_key(
        self,
        key: str,
        *,
        stale_before: datetime,
        now: datetime | None = None,
    ) -> bool:
        """Replace an unfinished claim created before ``stale_before``."""
        ...

    def expire_idempotency_result(
        self,
        key: str,
        *,
        expired_before: datetime,
        now: datetime | None = None,
    ) -> bool:
        """Replace a finished record created before ``expired_before`` with a fresh claim."""
        ...

    def complete_idempotency_key(self, key: str, result: str) -> None: ...

    def release_idempotency_key(self, key: str) -> None: ...

    def purge_idempotency_results(self, *, expired_before: datetime) -> int: ...

    # Workflow execution log

    def create_workflow_execution(self, execution: WorkflowExecution) -> None: ...

    def set_workflow_current_step(self, execution_id: str, step_name: str) -> None: ...

    def finish_workflow_execution(
        self,
        execution_id: str,
        *,
        status: WorkflowStatus,
        error: str | None,
        output_summary: Any,
        step_attempts: dict[str, int],
        completed_at: datetime,
    ) -> WorkflowExecution: ...

    def get_workflow_execution(self, execution_id: str) -> WorkflowExecution | None: ...

    def list_workflow_executions(
        self, workflow_id: str, *, limit: int = 10
    ) -> list[WorkflowExecution]: ...

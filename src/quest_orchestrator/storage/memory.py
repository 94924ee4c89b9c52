"""In-memory storage backend for tests only."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime
from typing import Any
from uuid import uuid4

from quest_orchestrator.quests import rewards
from quest_orchestrator.storage.models import (
    GOAL_WORKSHOP_CREATOR,
    OPEN_QUEST_STATUSES,
    REPLACED_BY_NEW_PLAN,
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
    normalize_merchant_key,
)


class InMemoryQuestStore:
    """Simple in-memory implementation for unit tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: dict[str, UserProfile] = {}
        self._transactions: dict[str, Transaction] = {}
        # posted provider id -> pending row it settled
        self._settled_by: dict[str, str] = {}
        self._quests: dict[str, Quest] = {}
        self._snapshots: list[QuestProgressSnapshot] = []
        self._rewards: dict[str, RewardState] = {}
        self._insights: list[Insight] = []
        self._actions: list[ActionItem] = []
        self._idempotency: dict[str, IdempotencyRecord] = {}
        self._executions: dict[str, WorkflowExecution] = {}

    def migrate(self) -> None:
        return None

    def ensure_user(self, user_id: str, *, timezone: str | None = None) -> UserProfile:
        with self._lock:
            existing = self._users.get(user_id)
            if existing is not None:
                return existing
            profile = UserProfile(id=user_id, created_at=datetime.now(UTC))
            if timezone:
                profile = profile.model_copy(update={"timezone": timezone})
            self._users[user_id] = profile
            return profile

    def get_user(self, user_id: str) -> UserProfile | None:
        return self._users.get(user_id)

    def list_user_ids(self) -> list[str]:
        return sorted(self._users)

    def ingest_transactions(self, transactions: Iterable[Transaction]) -> IngestionResult:
        result = IngestionResult()
        with self._lock:
            for txn in transactions:
                if not txn.pending and txn.pending_transaction_id:
                    if (txn.provider_txn_id or txn.id) in self._settled_by:
                        continue
                    linked = self._settle_pending(txn)
                    if linked:
                        result.pending_linked += 1
                        result.updated += linked
                        continue
                if txn.provider_txn_id and self._has_provider_txn(txn.provider_txn_id):
                    continue
                if txn.id in self._transactions:
                    continue
                self._transactions[txn.id] = txn.model_copy(
                    update={"merchant_key": normalize_merchant_key(txn.merchant_name, txn.name)}
                )
                result.inserted += 1
        return result

    def get_transactions(
        self,
        user_id: str,
        start: date,
        end: date,
        *,
        include_pending: bool = False,
        category: str | None = None,
        merchant_key: str | None = None,
    ) -> list[Transaction]:
        wanted_key = normalize_merchant_key(merchant_key) if merchant_key else None
        rows = []
        for txn in self._transactions.values():
            if txn.user_id != user_id or not start <= txn.date <= end:
                continue
            if txn.pending and not include_pending:
                continue
            if category and (txn.category_primary or "").lower() != category.lower():
                continue
            if wanted_key is not None and txn.merchant_key != wanted_key:
                continue
            rows.append(txn)
        return sorted(rows, key=lambda item: item.date, reverse=True)

    def create_quest(self, quest: Quest) -> Quest:
        with self._lock:
            if quest.id in self._quests:
                raise ValueError(f"Quest {quest.id} already exists")
            self._quests[quest.id] = quest
        return quest

    def replace_goal_quests(
        self,
        user_id: str,
        goal_id: str,
        quests: Sequence[Quest],
        *,
        now: datetime,
    ) -> list[str]:
        with self._lock:
            if any(quest.id in self._quests for quest in quests):
                raise ValueError("Goal quest ids must be new")
            replaced = [
                quest.id
                for quest in self._quests.values()
                if quest.user_id == user_id
                and quest.goal_id == goal_id
                and quest.created_by == GOAL_WORKSHOP_CREATOR
                and quest.status in OPEN_QUEST_STATUSES
            ]
            for quest_id in replaced:
                self._quests[quest_id] = self._quests[quest_id].model_copy(
                    update={"status": QuestStatus.EXPIRED, "updated_at": now}
                )
                self._snapshots.append(
                    QuestProgressSnapshot(
                        id=str(uuid4()),
                        quest_id=quest_id,
                        as_of=now,
                        confirmed_value=0.0,
                        pending_value=0.0,
                        status=QuestStatus.EXPIRED,
                        explanation=REPLACED_BY_NEW_PLAN,
                    )
                )
            for quest in quests:
                self._quests[quest.id] = quest
            return replaced

    def get_quest(self, quest_id: str) -> Quest | None:
        return self._quests.get(quest_id)

    def list_quests(
        self,
        user_id: str,
        statuses: Iterable[QuestStatus] | None = None,
    ) -> list[Quest]:
        allowed = set(statuses) if statuses is not None else None
        quests = [
            quest
            for quest in self._quests.values()
            if quest.user_id == user_id and (allowed is None or quest.status in allowed)
        ]
        return sorted(quests, key=lambda item: item.created_at, reverse=True)

    def list_open_quest_ids(self) -> list[str]:
        return [
            quest.id for quest in self._quests.values() if quest.status in OPEN_QUEST_STATUSES
        ]

    def list_snapshots(self, quest_id: str) -> list[QuestProgressSnapshot]:
        return [item for item in self._snapshots if item.quest_id == quest_id]

    def commit_evaluation(
        self,
        *,
        quest_id: str,
        status: QuestStatus,
        snapshot: QuestProgressSnapshot,
        reward: RewardGrant | None,
    ) -> RewardState | None:
        with self._lock:
            current = self._quests.get(quest_id)
            if current is None:
                raise KeyError(f"Quest {quest_id} does not exist")
            # Compute everything before touching state so a failure leaves no partial write.
            updated_quest = current.model_copy(
                update={"status": status, "updated_at": snapshot.as_of}
            )
            new_reward: RewardState | None = None
            if reward is not None and current.status is not QuestStatus.COMPLETED_VERIFIED:
                base = self._rewards.get(reward.user_id)
                if base is None:
                    base = rewards.default_reward_state(reward.user_id)
                new_reward = rewards.apply_reward(base, reward, at=snapshot.as_of)
            self._quests[quest_id] = updated_quest
            self._snapshots.append(snapshot)
            if new_reward is not None:
                self._rewards[new_reward.user_id] = new_reward
            return new_reward

    def get_reward_state(self, user_id: str) -> RewardState:
        return self._rewards.get(user_id) or rewards.default_reward_state(user_id)

    def save_insights(self, insights: Iterable[Insight]) -> int:
        saved = 0
        with self._lock:
            for insight in insights:
                duplicate = any(
                    existing.user_id == insight.user_id
                    and existing.date == insight.date
                    and existing.title == insight.title
                    for existing in self._insights
                )
                if duplicate:
                    continue
                self._insights.append(insight)
                saved += 1
        return saved

    def list_insights(self, user_id: str, day: date) -> list[Insight]:
        return [item for item in self._insights if item.user_id == user_id and item.date == day]

    def create_action_item(self, item: ActionItem) -> ActionItem:
        with self._lock:
            self._actions.append(item)
        return item

    def list_action_items(
        self,
        user_id: str,
        *,
        status: str = "OPEN",
        limit: int | None = None,
    ) -> list[ActionItem]:
        items = [
            item for item in self._actions if item.user_id == user_id and item.status == status
        ]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items if limit is None else items[:limit]

    def claim_idempotency_key(self, key: str, *, now: datetime | None = None) -> bool:
        with self._lock:
            if key in self._idempotency:
                return False
            self._idempotency[key] = IdempotencyRecord(
                key=key, created_at=now or datetime.now(UTC)
            )
            return True

    def get_idempotency_record(self, key: str) -> IdempotencyRecord | None:
        return self._idempotency.get(key)

    def reclaim_stale_idempotency_key(
        self,
        key: str,
        *,
        stale_before: datetime,
        now: datetime | None = None,
    ) -> bool:
        with self._lock:
            current = self._idempotency.get(key)
            if current is None or current.result is not None:
                return False
            if current.created_at >= stale_before:
                return False
            self._idempotency[key] = IdempotencyRecord(
                key=key, created_at=now or datetime.now(UTC)
            )
            return True

    def expire_idempotency_result(
        self,
        key: str,
        *,
        expired_before: datetime,
        now: datetime | None = None,
    ) -> bool:
        with self._lock:
            current = self._idempotency.get(key)
            if current is None or current.result is None:
                return False
            if current.created_at >= expired_before:
                return False
            self._idempotency[key] = IdempotencyRecord(
                key=key, created_at=now or datetime.now(UTC)
            )
            return True

    def complete_idempotency_key(self, key: str, result: str) -> None:
        with self._lock:
            current = self._idempotency.get(key)
            if current is None:
                raise KeyError(f"Idempotency key {key} is not claimed")
            self._idempotency[key] = current.model_copy(update={"result": result})

    def release_idempotency_key(self, key: str) -> None:
        with self._lock:
            current = self._idempotency.get(key)
            if current is not None and current.result is None:
                del self._idempotency[key]

    def purge_idempotency_results(self, *, expired_before: datetime) -> int:
        with self._lock:
            expired = [
                key
                for key, record in self._idempotency.items()
                if record.result is not None and record.created_at < expired_before
            ]
            for key in expired:
                del self._idempotency[key]
        return len(expired)

    def create_workflow_execution(self, execution: WorkflowExecution) -> None:
        with self._lock:
            self._executions[execution.execution_id] = execution

    def set_workflow_current_step(self, execution_id: str, step_name: str) -> None:
        self._update_execution(execution_id, {"current_step": step_name})

    def finish_workflow_execution(
        self,
        execution_id: str,
        *,
        status: WorkflowStatus,
        error: str | None,
        output_summary: Any,
        step_attempts: dict[str, int],
        completed_at: datetime,
    ) -> WorkflowExecution:
        update: dict[str, Any] = {
            "status": status,
            "error": error,
            "output_summary": output_summary,
            "step_attempts": dict(step_attempts),
            "completed_at": completed_at,
        }
        if status is WorkflowStatus.COMPLETED:
            update["current_step"] = None
        return self._update_execution(execution_id, update)

    def get_workflow_execution(self, execution_id: str) -> WorkflowExecution | None:
        return self._executions.get(execution_id)

    def list_workflow_executions(
        self, workflow_id: str, *, limit: int = 10
    ) -> list[WorkflowExecution]:
        rows = [item for item in self._executions.values() if item.workflow_id == workflow_id]
        rows.sort(key=lambda item: item.started_at, reverse=True)
        return rows[:limit]

    def _update_execution(self, execution_id: str, update: dict[str, Any]) -> WorkflowExecution:
        with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                raise KeyError(f"Workflow execution {execution_id} does not exist")
            updated = current.model_copy(update=update)
            self._executions[execution_id] = updated
            return updated

    def _has_provider_txn(self, provider_txn_id: str) -> bool:
        return any(txn.provider_txn_id == provider_txn_id for txn in self._transactions.values())

    def _settle_pending(self, posted: Transaction) -> int:
        linked = 0
        for txn_id, txn in list(self._transactions.items()):
            if (
                txn.provider_txn_id == posted.pending_transaction_id
                and txn.user_id == posted.user_id
                and txn.pending
            ):
                self._transactions[txn_id] = txn.model_copy(
                    update={"pending": False, "amount": posted.amount, "date": posted.date}
                )
                self._settled_by[posted.provider_txn_id or posted.id] = txn_id
                linked += 1
        return linked

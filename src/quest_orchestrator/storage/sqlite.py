"""SQLite-backed storage with automatic table migration.

Every public method opens its own connection and runs inside one
transaction. Writers take ``BEGIN IMMEDIATE`` so concurrent evaluations
serialise on the database write lock instead of interleaving
read-modify-write sequences.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from quest_orchestrator.quests.metrics import parse_metric
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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        timezone TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        provider_txn_id TEXT UNIQUE,
        date TEXT NOT NULL,
        amount REAL NOT NULL,
        currency TEXT NOT NULL,
        name TEXT NOT NULL,
        merchant_name TEXT,
        merchant_key TEXT,
        category_primary TEXT,
        category_detailed TEXT,
        pending INTEGER NOT NULL DEFAULT 0,
        pending_transaction_id TEXT,
        settled_by_txn_id TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_transactions_user_date
    ON transactions(user_id, date)
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_settled_by
    ON transactions(settled_by_txn_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS quests (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        window_start TEXT NOT NULL,
        window_end TEXT NOT NULL CHECK (window_end >= window_start),
        metric_type TEXT NOT NULL,
        metric_params TEXT NOT NULL,
        reward_food_type TEXT NOT NULL,
        happiness_delta INTEGER NOT NULL CHECK (happiness_delta BETWEEN 1 AND 20),
        created_by TEXT NOT NULL,
        goal_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_quests_user_status
    ON quests(user_id, status)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_quests_goal
    ON quests(user_id, goal_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS quest_progress_snapshots (
        id TEXT PRIMARY KEY,
        quest_id TEXT NOT NULL REFERENCES quests(id),
        as_of TEXT NOT NULL,
        confirmed_value REAL NOT NULL,
        pending_value REAL NOT NULL,
        status TEXT NOT NULL,
        explanation TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_snapshots_quest
    ON quest_progress_snapshots(quest_id, as_of)
    """,
    """
    CREATE TABLE IF NOT EXISTS reward_states (
        user_id TEXT PRIMARY KEY,
        happiness INTEGER NOT NULL CHECK (happiness BETWEEN 0 AND 100),
        mood TEXT NOT NULL,
        food_credits INTEGER NOT NULL CHECK (food_credits >= 0),
        last_reward_food TEXT,
        last_reward_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS insights (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        date TEXT NOT NULL,
        title TEXT NOT NULL,
        blurb TEXT NOT NULL,
        confidence TEXT NOT NULL,
        metrics TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        UNIQUE (user_id, date, title)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS action_items (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        type TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}',
        requires_approval INTEGER NOT NULL DEFAULT 1,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_keys (
        key TEXT PRIMARY KEY,
        result TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_executions (
        execution_id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        workflow_name TEXT NOT NULL,
        run_id TEXT NOT NULL,
        status TEXT NOT NULL,
        current_step TEXT,
        error TEXT,
        input_summary TEXT,
        output_summary TEXT,
        step_attempts TEXT NOT NULL DEFAULT '{}',
        started_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_workflow_executions_workflow
    ON workflow_executions(workflow_id, started_at DESC)
    """,
)


class SqliteQuestStore:
    """Persist quests, evidence and workflow bookkeeping in one SQLite file."""

    def __init__(self, database_path: str | Path, *, busy_timeout_s: float = 5.0) -> None:
        if not str(database_path):
            raise ValueError("QUEST_ORCHESTRATOR_DATABASE_PATH is required")
        self.database_path = Path(database_path)
        self.busy_timeout_s = busy_timeout_s
        self._lock = threading.Lock()

    def migrate(self) -> None:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # Users

    def ensure_user(self, user_id: str, *, timezone: str | None = None) -> UserProfile:
        with self._lock, self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO users (id, timezone, created_at) VALUES (?, ?, ?)",
                (user_id, timezone or "America/New_York", _ts(datetime.now(UTC))),
            )
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> UserProfile | None:
        with self._lock, self._connect(write=False) as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row is not None else None

    def list_user_ids(self) -> list[str]:
        with self._lock, self._connect(write=False) as conn:
            rows = conn.execute("SELECT id FROM users ORDER BY id").fetchall()
        return [row["id"] for row in rows]

    # Transactions

    def ingest_transactions(self, transactions: Iterable[Transaction]) -> IngestionResult:
        result = IngestionResult()
        now = _ts(datetime.now(UTC))
        with self._lock, self._connect() as conn:
            for txn in transactions:
                if not txn.pending and txn.pending_transaction_id:
                    posted_key = txn.provider_txn_id or txn.id
                    settled = conn.execute(
                        "SELECT 1 FROM transactions WHERE settled_by_txn_id = ?",
                        (posted_key,),
                    ).fetchone()
                    if settled is not None:
                        continue
                    cursor = conn.execute(
                        """
                        UPDATE transactions
                        SET pending = 0, amount = ?, date = ?, settled_by_txn_id = ?,
                            updated_at = ?
                        WHERE provider_txn_id = ? AND user_id = ? AND pending = 1
                        """,
                        (
                            txn.amount,
                            txn.date.isoformat(),
                            posted_key,
                            now,
                            txn.pending_transaction_id,
                            txn.user_id,
                        ),
                    )
                    if cursor.rowcount > 0:
                        result.pending_linked += 1
                        result.updated += cursor.rowcount
                        continue
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO transactions (
                        id,
                        user_id,
                        provider,
                        provider_txn_id,
                        date,
                        amount,
                        currency,
                        name,
                        merchant_name,
                        merchant_key,
                        category_primary,
                        category_detailed,
                        pending,
                        pending_transaction_id,
                        metadata,
                        updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        txn.id,
                        txn.user_id,
                        txn.provider,
                        txn.provider_txn_id,
                        txn.date.isoformat(),
                        txn.amount,
                        txn.currency,
                        txn.name,
                        txn.merchant_name,
                        normalize_merchant_key(txn.merchant_name, txn.name),
                        txn.category_primary,
                        txn.category_detailed,
                        int(txn.pending),
                        txn.pending_transaction_id,
                        json.dumps(txn.metadata),
                        now,
                    ),
                )
                result.inserted += cursor.rowcount
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
        sql = "SELECT * FROM transactions WHERE user_id = ? AND date >= ? AND date <= ?"
        params: list[Any] = [user_id, start.isoformat(), end.isoformat()]
        if not include_pending:
            sql += " AND pending = 0"
        if category:
            sql += " AND LOWER(category_primary) = LOWER(?)"
            params.append(category)
        if merchant_key:
            sql += " AND merchant_key = ?"
            params.append(normalize_merchant_key(merchant_key))
        sql += " ORDER BY date DESC, id"
        with self._lock, self._connect(write=False) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    # Quests

    def create_quest(self, quest: Quest) -> Quest:
        with self._lock, self._connect() as conn:
            self._insert_quest(conn, quest)
        return quest

    def replace_goal_quests(
        self,
        user_id: str,
        goal_id: str,
        quests: Sequence[Quest],
        *,
        now: datetime,
    ) -> list[str]:
        with self._lock, self._connect() as conn:
            open_values = sorted(status.value for status in OPEN_QUEST_STATUSES)
            rows = conn.execute(
                """
                SELECT id FROM quests
                WHERE user_id = ? AND goal_id = ? AND created_by = ? AND status IN (?, ?)
                """,
                (user_id, goal_id, GOAL_WORKSHOP_CREATOR, *open_values),
            ).fetchall()
            replaced = [row["id"] for row in rows]
            for quest_id in replaced:
                conn.execute(
                    "UPDATE quests SET status = ?, updated_at = ? WHERE id = ?",
                    (QuestStatus.EXPIRED.value, _ts(now), quest_id),
                )
                conn.execute(
                    """
                    INSERT INTO quest_progress_snapshots (
                        id, quest_id, as_of, confirmed_value, pending_value, status, explanation
                    ) VALUES (?, ?, ?, 0, 0, ?, ?)
                    """,
                    (
                        str(uuid4()),
                        quest_id,
                        _ts(now),
                        QuestStatus.EXPIRED.value,
                        REPLACED_BY_NEW_PLAN,
                    ),
                )
            for quest in quests:
                self._insert_quest(conn, quest)
        return replaced

    def get_quest(self, quest_id: str) -> Quest | None:
        with self._lock, self._connect(write=False) as conn:
            row = conn.execute("SELECT * FROM quests WHERE id = ?", (quest_id,)).fetchone()
        return self._row_to_quest(row) if row is not None else None

    def list_quests(
        self,
        user_id: str,
        statuses: Iterable[QuestStatus] | None = None,
    ) -> list[Quest]:
        sql = "SELECT * FROM quests WHERE user_id = ?"
        params: list[Any] = [user_id]
        if statuses is not None:
            values = [QuestStatus(status).value for status in statuses]
            if not values:
                return []
            sql += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        sql += " ORDER BY created_at DESC"
        with self._lock, self._connect(write=False) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_quest(row) for row in rows]

    def list_open_quest_ids(self) -> list[str]:
        values = sorted(status.value for status in OPEN_QUEST_STATUSES)
        with self._lock, self._connect(write=False) as conn:
            rows = conn.execute(
                "SELECT id FROM quests WHERE status IN (?, ?) ORDER BY created_at",
                values,
            ).fetchall()
        return [row["id"] for row in rows]

    def list_snapshots(self, quest_id: str) -> list[QuestProgressSnapshot]:
        with self._lock, self._connect(write=False) as conn:
            rows = conn.execute(
                "SELECT * FROM quest_progress_snapshots WHERE quest_id = ? ORDER BY as_of, rowid",
                (quest_id,),
            ).fetchall()
        return [
            QuestProgressSnapshot(
                id=row["id"],
                quest_id=row["quest_id"],
                as_of=_parse_datetime(row["as_of"]),
                confirmed_value=row["confirmed_value"],
                pending_value=row["pending_value"],
                status=QuestStatus(row["status"]),
                explanation=row["explanation"],
            )
            for row in rows
        ]

    def commit_evaluation(
        self,
        *,
        quest_id: str,
        status: QuestStatus,
        snapshot: QuestProgressSnapshot,
        reward: RewardGrant | None,
    ) -> RewardState | None:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT status FROM quests WHERE id = ?", (quest_id,)).fetchone()
            if row is None:
                raise KeyError(f"Quest {quest_id} does not exist")
            already_verified = row["status"] == QuestStatus.COMPLETED_VERIFIED.value
            conn.execute(
                "UPDATE quests SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, _ts(snapshot.as_of), quest_id),
            )
            new_reward: RewardState | None = None
            if reward is not None and not already_verified:
                row = conn.execute(
                    "SELECT * FROM reward_states WHERE user_id = ?", (reward.user_id,)
                ).fetchone()
                base = (
                    self._row_to_reward(row)
                    if row is not None
                    else rewards.default_reward_state(reward.user_id)
                )
                new_reward = rewards.apply_reward(base, reward, at=snapshot.as_of)
                self._upsert_reward(conn, new_reward)
            conn.execute(
                """
                INSERT INTO quest_progress_snapshots (
                    id,
                    quest_id,
                    as_of,
                    confirmed_value,
                    pending_value,
                    status,
                    explanation
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.id,
                    snapshot.quest_id,
                    _ts(snapshot.as_of),
                    snapshot.confirmed_value,
                    snapshot.pending_value,
                    snapshot.status.value,
                    snapshot.explanation,
                ),
            )
        return new_reward

    # Rewards

    def get_reward_state(self, user_id: str) -> RewardState:
        with self._lock, self._connect(write=False) as conn:
            row = conn.execute(
                "SELECT * FROM reward_states WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return rewards.default_reward_state(user_id)
        return self._row_to_reward(row)

    # Insights and action items

    def save_insights(self, insights: Iterable[Insight]) -> int:
        saved = 0
        with self._lock, self._connect() as conn:
            for insight in insights:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO insights (
                        id, user_id, date, title, blurb, confidence, metrics, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        insight.id,
                        insight.user_id,
                        insight.date.isoformat(),
                        insight.title,
                        insight.blurb,
                        insight.confidence,
                        json.dumps(insight.metrics),
                        _ts(insight.created_at),
                    ),
                )
                saved += cursor.rowcount
        return saved

    def list_insights(self, user_id: str, day: date) -> list[Insight]:
        with self._lock, self._connect(write=False) as conn:
            rows = conn.execute(
                "SELECT * FROM insights WHERE user_id = ? AND date = ? ORDER BY created_at, rowid",
                (user_id, day.isoformat()),
            ).fetchall()
        return [
            Insight(
                id=row["id"],
                user_id=row["user_id"],
                date=date.fromisoformat(row["date"]),
                title=row["title"],
                blurb=row["blurb"],
                confidence=row["confidence"],
                metrics=json.loads(row["metrics"] or "{}"),
                created_at=_parse_datetime(row["created_at"]),
            )
            for row in rows
        ]

    def create_action_item(self, item: ActionItem) -> ActionItem:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO action_items (
                    id, user_id, type, payload, requires_approval, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.id,
                    item.user_id,
                    item.type,
                    json.dumps(item.payload),
                    int(item.requires_approval),
                    item.status,
                    _ts(item.created_at),
                ),
            )
        return item

    def list_action_items(
        self,
        user_id: str,
        *,
        status: str = "OPEN",
        limit: int | None = None,
    ) -> list[ActionItem]:
        sql = "SELECT * FROM action_items WHERE user_id = ? AND status = ? ORDER BY created_at DESC"
        params: list[Any] = [user_id, status]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock, self._connect(write=False) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            ActionItem(
                id=row["id"],
                user_id=row["user_id"],
                type=row["type"],
                payload=json.loads(row["payload"] or "{}"),
                requires_approval=bool(row["requires_approval"]),
                status=row["status"],
                created_at=_parse_datetime(row["created_at"]),
            )
            for row in rows
        ]

    # Idempotency

    def claim_idempotency_key(self, key: str, *, now: datetime | None = None) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO idempotency_keys (key, result, created_at)
                VALUES (?, NULL, ?)
                """,
                (key, _ts(now or datetime.now(UTC))),
            )
            claimed = cursor.rowcount == 1
        return claimed

    def get_idempotency_record(self, key: str) -> IdempotencyRecord | None:
        with self._lock, self._connect(write=False) as conn:
            row = conn.execute(
                "SELECT * FROM idempotency_keys WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return IdempotencyRecord(
            key=row["key"],
            result=row["result"],
            created_at=_parse_datetime(row["created_at"]),
        )

    def reclaim_stale_idempotency_key(
        self,
        key: str,
        *,
        stale_before: datetime,
        now: datetime | None = None,
    ) -> bool:
        # A single conditional UPDATE: only one concurrent reclaimer sees rowcount 1.
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE idempotency_keys
                SET created_at = ?
                WHERE key = ? AND result IS NULL AND created_at < ?
                """,
                (_ts(now or datetime.now(UTC)), key, _ts(stale_before)),
            )
            reclaimed = cursor.rowcount == 1
        return reclaimed

    def expire_idempotency_result(
        self,
        key: str,
        *,
        expired_before: datetime,
        now: datetime | None = None,
    ) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE idempotency_keys
                SET result = NULL, created_at = ?
                WHERE key = ? AND result IS NOT NULL AND created_at < ?
                """,
                (_ts(now or datetime.now(UTC)), key, _ts(expired_before)),
            )
            expired = cursor.rowcount == 1
        return expired

    def complete_idempotency_key(self, key: str, result: str) -> None:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "UPDATE idempotency_keys SET result = ? WHERE key = ?", (result, key)
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Idempotency key {key} is not claimed")

    def release_idempotency_key(self, key: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM idempotency_keys WHERE key = ? AND result IS NULL", (key,))

    def purge_idempotency_results(self, *, expired_before: datetime) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM idempotency_keys WHERE result IS NOT NULL AND created_at < ?",
                (_ts(expired_before),),
            )
            purged = cursor.rowcount
        return purged

    # Workflow execution log

    def create_workflow_execution(self, execution: WorkflowExecution) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_executions (
                    execution_id,
                    workflow_id,
                    workflow_name,
                    run_id,
                    status,
                    current_step,
                    error,
                    input_summary,
                    output_summary,
                    step_attempts,
                    started_at,
                    completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.execution_id,
                    execution.workflow_id,
                    execution.workflow_name,
                    execution.run_id,
                    execution.status.value,
                    execution.current_step,
                    execution.error,
                    json.dumps(execution.input_summary),
                    json.dumps(execution.output_summary),
                    json.dumps(execution.step_attempts),
                    _ts(execution.started_at),
                    _ts(execution.completed_at) if execution.completed_at else None,
                ),
            )

    def set_workflow_current_step(self, execution_id: str, step_name: str) -> None:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "UPDATE workflow_executions SET current_step = ? WHERE execution_id = ?",
                (step_name, execution_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Workflow execution {execution_id} does not exist")

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
        clear_step = status is WorkflowStatus.COMPLETED
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE workflow_executions
                SET status = ?,
                    error = ?,
                    output_summary = ?,
                    step_attempts = ?,
                    completed_at = ?,
                    current_step = CASE WHEN ? THEN NULL ELSE current_step END
                WHERE execution_id = ?
                """,
                (
                    status.value,
                    error,
                    json.dumps(output_summary),
                    json.dumps(step_attempts),
                    _ts(completed_at),
                    int(clear_step),
                    execution_id,
                ),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Workflow execution {execution_id} does not exist")
            row = conn.execute(
                "SELECT * FROM workflow_executions WHERE execution_id = ?", (execution_id,)
            ).fetchone()
        return self._row_to_execution(row)

    def get_workflow_execution(self, execution_id: str) -> WorkflowExecution | None:
        with self._lock, self._connect(write=False) as conn:
            row = conn.execute(
                "SELECT * FROM workflow_executions WHERE execution_id = ?", (execution_id,)
            ).fetchone()
        return self._row_to_execution(row) if row is not None else None

    def list_workflow_executions(
        self, workflow_id: str, *, limit: int = 10
    ) -> list[WorkflowExecution]:
        with self._lock, self._connect(write=False) as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM workflow_executions
                WHERE workflow_id = ?
                ORDER BY started_at DESC, rowid DESC
                LIMIT ?
                """,
                (workflow_id, limit),
            ).fetchall()
        return [self._row_to_execution(row) for row in rows]

    @contextmanager
    def _connect(self, *, write: bool = True) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(
            self.database_path, timeout=self.busy_timeout_s, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @staticmethod
    def _upsert_reward(conn: sqlite3.Connection, state: RewardState) -> None:
        conn.execute(
            """
            INSERT INTO reward_states (
                user_id,
                happiness,
                mood,
                food_credits,
                last_reward_food,
                last_reward_at,
                updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                happiness = excluded.happiness,
                mood = excluded.mood,
                food_credits = excluded.food_credits,
                last_reward_food = excluded.last_reward_food,
                last_reward_at = excluded.last_reward_at,
                updated_at = excluded.updated_at
            """,
            (
                state.user_id,
                state.happiness,
                state.mood,
                state.food_credits,
                state.last_reward_food.value if state.last_reward_food else None,
                _ts(state.last_reward_at) if state.last_reward_at else None,
                _ts(state.updated_at) if state.updated_at else None,
            ),
        )

    @staticmethod
    def _row_to_user(row: Any) -> UserProfile:
        return UserProfile(
            id=row["id"],
            timezone=row["timezone"],
            created_at=_parse_datetime(row["created_at"]),
        )

    @staticmethod
    def _insert_quest(conn: sqlite3.Connection, quest: Quest) -> None:
        conn.execute(
            """
            INSERT INTO quests (
                id,
                user_id,
                status,
                title,
                description,
                window_start,
                window_end,
                metric_type,
                metric_params,
                reward_food_type,
                happiness_delta,
                created_by,
                goal_id,
                created_at,
                updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                quest.id,
                quest.user_id,
                quest.status.value,
                quest.title,
                quest.description,
                quest.window_start.isoformat(),
                quest.window_end.isoformat(),
                quest.metric_type.value,
                json.dumps(quest.metric.params()),
                quest.reward_food_type.value,
                quest.happiness_delta,
                quest.created_by,
                quest.goal_id,
                _ts(quest.created_at),
                _ts(quest.updated_at),
            ),
        )

    @staticmethod
    def _row_to_transaction(row: Any) -> Transaction:
        return Transaction(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            provider_txn_id=row["provider_txn_id"],
            date=date.fromisoformat(row["date"]),
            amount=row["amount"],
            currency=row["currency"],
            name=row["name"],
            merchant_name=row["merchant_name"],
            merchant_key=row["merchant_key"],
            category_primary=row["category_primary"],
            category_detailed=row["category_detailed"],
            pending=bool(row["pending"]),
            pending_transaction_id=row["pending_transaction_id"],
            metadata=json.loads(row["metadata"] or "{}"),
        )

    @staticmethod
    def _row_to_quest(row: Any) -> Quest:
        return Quest(
            id=row["id"],
            user_id=row["user_id"],
            status=QuestStatus(row["status"]),
            title=row["title"],
            description=row["description"],
            window_start=date.fromisoformat(row["window_start"]),
            window_end=date.fromisoformat(row["window_end"]),
            metric=parse_metric(row["metric_type"], json.loads(row["metric_params"])),
            reward_food_type=row["reward_food_type"],
            happiness_delta=row["happiness_delta"],
            created_by=row["created_by"],
            goal_id=row["goal_id"],
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )

    @staticmethod
    def _row_to_reward(row: Any) -> RewardState:
        return RewardState(
            user_id=row["user_id"],
            happiness=row["happiness"],
            mood=row["mood"],
            food_credits=row["food_credits"],
            last_reward_food=row["last_reward_food"],
            last_reward_at=(
                _parse_datetime(row["last_reward_at"]) if row["last_reward_at"] else None
            ),
            updated_at=_parse_datetime(row["updated_at"]) if row["updated_at"] else None,
        )

    @staticmethod
    def _row_to_execution(row: Any) -> WorkflowExecution:
        return WorkflowExecution(
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            workflow_name=row["workflow_name"],
            run_id=row["run_id"],
            status=WorkflowStatus(row["status"]),
            current_step=row["current_step"],
            error=row["error"],
            input_summary=json.loads(row["input_summary"]) if row["input_summary"] else None,
            output_summary=json.loads(row["output_summary"]) if row["output_summary"] else None,
            step_attempts=json.loads(row["step_attempts"] or "{}"),
            started_at=_parse_datetime(row["started_at"]),
            completed_at=_parse_datetime(row["completed_at"]) if row["completed_at"] else None,
        )


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so text comparison matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str):
        return datetime.fromisoformat(raw)
    raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

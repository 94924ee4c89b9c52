from __future__ import annotations

import sqlite3
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import FIXED_NOW, TODAY, FakeClock, build_quest, build_transaction
from quest_orchestrator.quests.evaluation import QuestEvaluator
from quest_orchestrator.quests.goals import SavingsGoal, plan_goal_quests
from quest_orchestrator.quests.metrics import CategorySpendCap, MetricType
from quest_orchestrator.storage.models import (
    ActionItem,
    FoodType,
    Insight,
    QuestProgressSnapshot,
    QuestStatus,
    RewardGrant,
    WorkflowExecution,
    WorkflowStatus,
)
from quest_orchestrator.storage.sqlite import SqliteQuestStore


@pytest.fixture
def sqlite_store(tmp_path: Path) -> SqliteQuestStore:
    store = SqliteQuestStore(tmp_path / "nested" / "quests.db")
    store.migrate()
    return store


def _snapshot(quest_id: str, snapshot_id: str, status: QuestStatus) -> QuestProgressSnapshot:
    return QuestProgressSnapshot(
        id=snapshot_id,
        quest_id=quest_id,
        as_of=FIXED_NOW,
        confirmed_value=0.0,
        pending_value=0.0,
        status=status,
        explanation="test",
    )


def test_migrate_is_repeatable(sqlite_store: SqliteQuestStore) -> None:
    sqlite_store.migrate()

    assert sqlite_store.database_path.exists()
    assert sqlite_store.list_user_ids() == []


def test_rejects_empty_database_path() -> None:
    with pytest.raises(ValueError, match="DATABASE_PATH is required"):
        SqliteQuestStore("")


def test_ensure_user_is_idempotent(sqlite_store: SqliteQuestStore) -> None:
    first = sqlite_store.ensure_user("user-1", timezone="Europe/Berlin")
    second = sqlite_store.ensure_user("user-1")

    assert first.timezone == "Europe/Berlin"
    assert second == first
    assert sqlite_store.list_user_ids() == ["user-1"]


def test_quest_round_trip_restores_metric_variant(sqlite_store: SqliteQuestStore) -> None:
    quest = build_quest(
        metric_type=MetricType.CATEGORY_SPEND_CAP,
        metric_params={"category": "Dining", "cap": 15},
    )
    sqlite_store.create_quest(quest)

    loaded = sqlite_store.get_quest(quest.id)

    assert loaded == quest
    assert isinstance(loaded.metric, CategorySpendCap)
    assert sqlite_store.list_open_quest_ids() == [quest.id]
    assert sqlite_store.list_quests("user-1", statuses=[QuestStatus.FAILED]) == []
    assert sqlite_store.get_quest("missing") is None


def test_posted_transaction_settles_pending_row(sqlite_store: SqliteQuestStore) -> None:
    pending = build_transaction(amount=-20.0, pending=True, provider_txn_id="p-1", name="Cafe")
    posted = build_transaction(
        amount=-22.5,
        day=TODAY + timedelta(days=1),
        provider_txn_id="t-1",
        pending_transaction_id="p-1",
        name="Cafe",
    )

    first = sqlite_store.ingest_transactions([pending])
    second = sqlite_store.ingest_transactions([posted])

    assert first.inserted == 1
    assert second.inserted == 0
    assert second.pending_linked == 1
    rows = sqlite_store.get_transactions(
        "user-1", TODAY, TODAY + timedelta(days=2), include_pending=True
    )
    assert len(rows) == 1
    assert rows[0].pending is False
    assert rows[0].amount == -22.5
    assert rows[0].date == TODAY + timedelta(days=1)


def test_redelivered_posted_transaction_is_not_inserted(
    sqlite_store: SqliteQuestStore,
) -> None:
    pending = build_transaction(amount=-30.0, pending=True, provider_txn_id="pend-1")
    posted = build_transaction(
        amount=-30.0, provider_txn_id="post-1", pending_transaction_id="pend-1"
    )

    sqlite_store.ingest_transactions([pending])
    sqlite_store.ingest_transactions([posted])
    resent = sqlite_store.ingest_transactions([posted.model_copy(update={"id": "txn-resent"})])

    assert resent.inserted == 0
    assert resent.pending_linked == 0
    rows = sqlite_store.get_transactions("user-1", TODAY, TODAY, include_pending=True)
    assert [(row.provider_txn_id, row.amount, row.pending) for row in rows] == [
        ("pend-1", -30.0, False)
    ]


def test_duplicate_provider_transaction_is_ignored(sqlite_store: SqliteQuestStore) -> None:
    txn = build_transaction(provider_txn_id="t-1", merchant_name="STARBUCKS #99")

    sqlite_store.ingest_transactions([txn])
    repeat = sqlite_store.ingest_transactions([txn.model_copy(update={"id": "other-id"})])

    assert repeat.inserted == 0
    rows = sqlite_store.get_transactions("user-1", TODAY, TODAY, merchant_key="Starbucks")
    assert len(rows) == 1
    assert rows[0].merchant_key == "starbucks"


def test_pending_rows_hidden_by_default(sqlite_store: SqliteQuestStore) -> None:
    sqlite_store.ingest_transactions(
        [
            build_transaction(amount=-5.0, category_primary="Dining"),
            build_transaction(amount=-7.0, category_primary="Dining", pending=True),
        ]
    )

    posted = sqlite_store.get_transactions("user-1", TODAY, TODAY, category="dining")
    everything = sqlite_store.get_transactions(
        "user-1", TODAY, TODAY, include_pending=True, category="DINING"
    )

    assert [txn.amount for txn in posted] == [-5.0]
    assert len(everything) == 2


def test_commit_evaluation_rolls_back_as_a_unit(sqlite_store: SqliteQuestStore) -> None:
    quest = build_quest(
        metric_type=MetricType.TRANSFER_AMOUNT,
        metric_params={"target_amount": 50},
    )
    sqlite_store.create_quest(quest)
    grant = RewardGrant(user_id="user-1", food_type=FoodType.SALMON, happiness_delta=10)

    reward = sqlite_store.commit_evaluation(
        quest_id=quest.id,
        status=QuestStatus.COMPLETED_PROVISIONAL,
        snapshot=_snapshot(quest.id, "snap-1", QuestStatus.COMPLETED_PROVISIONAL),
        reward=None,
    )
    assert reward is None

    # Reusing the snapshot id makes the final insert fail after status and reward are written.
    with pytest.raises(sqlite3.IntegrityError):
        sqlite_store.commit_evaluation(
            quest_id=quest.id,
            status=QuestStatus.COMPLETED_VERIFIED,
            snapshot=_snapshot(quest.id, "snap-1", QuestStatus.COMPLETED_VERIFIED),
            reward=grant,
        )

    assert sqlite_store.get_quest(quest.id).status is QuestStatus.COMPLETED_PROVISIONAL
    assert sqlite_store.get_reward_state("user-1").food_credits == 10
    assert len(sqlite_store.list_snapshots(quest.id)) == 1


def test_commit_evaluation_grants_reward_once(sqlite_store: SqliteQuestStore) -> None:
    quest = build_quest(
        metric_type=MetricType.TRANSFER_AMOUNT,
        metric_params={"target_amount": 50},
    )
    sqlite_store.create_quest(quest)
    grant = RewardGrant(user_id="user-1", food_type=FoodType.SALMON, happiness_delta=10)

    first = sqlite_store.commit_evaluation(
        quest_id=quest.id,
        status=QuestStatus.COMPLETED_VERIFIED,
        snapshot=_snapshot(quest.id, "snap-1", QuestStatus.COMPLETED_VERIFIED),
        reward=grant,
    )
    second = sqlite_store.commit_evaluation(
        quest_id=quest.id,
        status=QuestStatus.COMPLETED_VERIFIED,
        snapshot=_snapshot(quest.id, "snap-2", QuestStatus.COMPLETED_VERIFIED),
        reward=grant,
    )

    assert first is not None
    assert first.happiness == 80
    assert first.mood == "happy"
    assert second is None
    state = sqlite_store.get_reward_state("user-1")
    assert state.food_credits == 13
    assert state.last_reward_food is FoodType.SALMON


def test_commit_evaluation_unknown_quest(sqlite_store: SqliteQuestStore) -> None:
    with pytest.raises(KeyError):
        sqlite_store.commit_evaluation(
            quest_id="missing",
            status=QuestStatus.FAILED,
            snapshot=_snapshot("missing", "snap-1", QuestStatus.FAILED),
            reward=None,
        )


def test_evaluator_runs_against_sqlite(sqlite_store: SqliteQuestStore) -> None:
    clock = FakeClock()
    quest = build_quest(
        metric_type=MetricType.NO_MERCHANT_CHARGE,
        metric_params={"merchant_key": "uber"},
        window_start=TODAY - timedelta(days=2),
        window_end=TODAY - timedelta(days=1),
    )
    sqlite_store.create_quest(quest)
    sqlite_store.ingest_transactions([build_transaction(amount=-9.0, name="Lyft ride")])
    evaluator = QuestEvaluator(sqlite_store, clock=clock)

    first = evaluator.evaluate_quest(quest.id)
    second = evaluator.evaluate_quest(quest.id)

    assert first.new_status is QuestStatus.COMPLETED_VERIFIED
    assert first.reward_granted is True
    assert second.reward_granted is False
    assert sqlite_store.get_reward_state("user-1").food_credits == 13
    assert len(sqlite_store.list_snapshots(quest.id)) == 2


def test_insights_are_unique_per_user_day_title(sqlite_store: SqliteQuestStore) -> None:
    insight = Insight(
        id="i-1",
        user_id="user-1",
        date=TODAY,
        title="Weekly Summary",
        blurb="You spent $10.00.",
        created_at=FIXED_NOW,
    )

    saved = sqlite_store.save_insights([insight])
    repeated = sqlite_store.save_insights([insight.model_copy(update={"id": "i-2"})])

    assert saved == 1
    assert repeated == 0
    assert [item.title for item in sqlite_store.list_insights("user-1", TODAY)] == [
        "Weekly Summary"
    ]


def test_action_items_filtered_by_status(sqlite_store: SqliteQuestStore) -> None:
    for index, status in enumerate(["OPEN", "DISMISSED", "OPEN"]):
        sqlite_store.create_action_item(
            ActionItem(
                id=f"a-{index}",
                user_id="user-1",
                type="SAVINGS_TIP",
                payload={"index": index},
                status=status,
                created_at=FIXED_NOW + timedelta(minutes=index),
            )
        )

    open_items = sqlite_store.list_action_items("user-1")
    latest = sqlite_store.list_action_items("user-1", limit=1)

    assert [item.id for item in open_items] == ["a-2", "a-0"]
    assert [item.id for item in latest] == ["a-2"]
    assert latest[0].payload == {"index": 2}


def test_idempotency_claim_complete_and_release(sqlite_store: SqliteQuestStore) -> None:
    assert sqlite_store.claim_idempotency_key("k-1", now=FIXED_NOW) is True
    assert sqlite_store.claim_idempotency_key("k-1", now=FIXED_NOW) is False

    sqlite_store.complete_idempotency_key("k-1", '{"ok": true}')
    sqlite_store.release_idempotency_key("k-1")

    record = sqlite_store.get_idempotency_record("k-1")
    assert record is not None
    assert record.result == '{"ok": true}'
    assert record.created_at == FIXED_NOW

    sqlite_store.claim_idempotency_key("k-2", now=FIXED_NOW)
    sqlite_store.release_idempotency_key("k-2")
    assert sqlite_store.get_idempotency_record("k-2") is None

    with pytest.raises(KeyError):
        sqlite_store.complete_idempotency_key("never-claimed", "{}")


def test_stale_claim_is_reclaimed_once(sqlite_store: SqliteQuestStore) -> None:
    old = FIXED_NOW - timedelta(minutes=10)
    sqlite_store.claim_idempotency_key("k-1", now=old)
    stale_before = FIXED_NOW - timedelta(minutes=2)

    assert sqlite_store.reclaim_stale_idempotency_key(
        "k-1", stale_before=stale_before, now=FIXED_NOW
    )
    assert not sqlite_store.reclaim_stale_idempotency_key(
        "k-1", stale_before=stale_before, now=FIXED_NOW
    )
    assert sqlite_store.get_idempotency_record("k-1").created_at == FIXED_NOW


def test_expired_results_can_be_reset_or_purged(sqlite_store: SqliteQuestStore) -> None:
    old = FIXED_NOW - timedelta(hours=2)
    for key in ("k-1", "k-2"):
        sqlite_store.claim_idempotency_key(key, now=old)
        sqlite_store.complete_idempotency_key(key, "{}")
    sqlite_store.claim_idempotency_key("k-3", now=old)
    cutoff = FIXED_NOW - timedelta(hours=1)

    assert sqlite_store.expire_idempotency_result("k-1", expired_before=cutoff, now=FIXED_NOW)
    assert sqlite_store.get_idempotency_record("k-1").result is None
    assert sqlite_store.purge_idempotency_results(expired_before=cutoff) == 1
    assert sqlite_store.get_idempotency_record("k-2") is None
    # Unfinished claims are never purged.
    assert sqlite_store.get_idempotency_record("k-3") is not None


def test_workflow_execution_log(sqlite_store: SqliteQuestStore) -> None:
    for index in range(3):
        sqlite_store.create_workflow_execution(
            WorkflowExecution(
                execution_id=f"e-{index}",
                workflow_id="daily_digest",
                workflow_name="Daily Digest Workflow",
                run_id=f"r-{index}",
                status=WorkflowStatus.RUNNING,
                input_summary={"user_id": "user-1"},
                started_at=FIXED_NOW + timedelta(seconds=index),
            )
        )
    sqlite_store.set_workflow_current_step("e-2", "persist_quest")

    finished = sqlite_store.finish_workflow_execution(
        "e-2",
        status=WorkflowStatus.COMPLETED,
        error=None,
        output_summary={"success": True},
        step_attempts={"persist_quest": 1},
        completed_at=FIXED_NOW + timedelta(seconds=5),
    )
    failed = sqlite_store.finish_workflow_execution(
        "e-1",
        status=WorkflowStatus.FAILED,
        error="boom",
        output_summary=None,
        step_attempts={"sync_transactions": 3},
        completed_at=FIXED_NOW + timedelta(seconds=5),
    )

    assert finished.current_step is None
    assert finished.output_summary == {"success": True}
    assert finished.input_summary == {"user_id": "user-1"}
    assert failed.error == "boom"
    assert failed.step_attempts == {"sync_transactions": 3}
    history = sqlite_store.list_workflow_executions("daily_digest", limit=2)
    assert [item.execution_id for item in history] == ["e-2", "e-1"]
    with pytest.raises(KeyError):
        sqlite_store.set_workflow_current_step("missing", "step")


def test_goal_quests_are_replaced_in_one_transaction(sqlite_store: SqliteQuestStore) -> None:
    goal = SavingsGoal(id="goal-1", user_id="user-1", name="Bike", target_amount=300)
    first = plan_goal_quests(goal, {}, now=FIXED_NOW)
    second = plan_goal_quests(goal, {}, now=FIXED_NOW)

    assert sqlite_store.replace_goal_quests("user-1", "goal-1", first, now=FIXED_NOW) == []
    stored = sqlite_store.get_quest(first[0].id)
    assert stored.goal_id == "goal-1"
    assert stored.created_by == "goal_workshop"

    # A clashing id aborts the whole replacement.
    with pytest.raises(sqlite3.IntegrityError):
        sqlite_store.replace_goal_quests("user-1", "goal-1", [*second, first[0]], now=FIXED_NOW)
    assert sqlite_store.get_quest(first[0].id).status is QuestStatus.ACTIVE
    assert sqlite_store.get_quest(second[0].id) is None

    replaced = sqlite_store.replace_goal_quests("user-1", "goal-1", second, now=FIXED_NOW)

    assert sorted(replaced) == sorted(quest.id for quest in first)
    assert sqlite_store.get_quest(first[0].id).status is QuestStatus.EXPIRED
    [snapshot] = sqlite_store.list_snapshots(first[0].id)
    assert snapshot.status is QuestStatus.EXPIRED
    assert snapshot.explanation == "Replaced by a new plan for this goal."
    active = sqlite_store.list_quests("user-1", statuses=[QuestStatus.ACTIVE])
    assert sorted(quest.id for quest in active) == sorted(quest.id for quest in second)

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any
from uuid import uuid4

import pytest

from quest_orchestrator.quests.metrics import MetricType, parse_metric
from quest_orchestrator.storage.memory import InMemoryQuestStore
from quest_orchestrator.storage.models import FoodType, Quest, QuestStatus, Transaction

FIXED_NOW = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)
TODAY = FIXED_NOW.date()


class FakeClock:
    """Deterministic clock that tests advance by hand."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryQuestStore:
    return InMemoryQuestStore()


def build_transaction(
    *,
    user_id: str = "user-1",
    amount: float = -10.0,
    day: date = TODAY,
    name: str = "Coffee",
    **overrides: Any,
) -> Transaction:
    txn_id = overrides.pop("id", None) or f"txn-{uuid4()}"
    return Transaction(
        id=txn_id,
        user_id=user_id,
        date=day,
        amount=amount,
        name=name,
        **overrides,
    )


def build_quest(
    *,
    metric_type: MetricType,
    metric_params: dict[str, Any],
    user_id: str = "user-1",
    window_start: date = TODAY,
    window_end: date = TODAY,
    status: QuestStatus = QuestStatus.ACTIVE,
    happiness_delta: int = 5,
    created_at: datetime = FIXED_NOW,
) -> Quest:
    return Quest(
        id=f"quest-{uuid4()}",
        user_id=user_id,
        status=status,
        title="Test quest",
        window_start=window_start,
        window_end=window_end,
        metric=parse_metric(metric_type, metric_params),
        reward_food_type=FoodType.BONE,
        happiness_delta=happiness_delta,
        created_at=created_at,
        updated_at=created_at,
    )


@pytest.fixture
def make_transaction() -> Callable[..., Transaction]:
    return build_transaction


@pytest.fixture
def make_quest() -> Callable[..., Quest]:
    return build_quest

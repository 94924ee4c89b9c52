"""Storage backends and models."""

from quest_orchestrator.storage.base import QuestStore
from quest_orchestrator.storage.memory import InMemoryQuestStore
from quest_orchestrator.storage.models import (
    ActionItem,
    Insight,
    Quest,
    QuestProgressSnapshot,
    QuestStatus,
    RewardState,
    Transaction,
    WorkflowExecution,
)
from quest_orchestrator.storage.sqlite import SqliteQuestStore

__all__ = [
    "ActionItem",
    "InMemoryQuestStore",
    "Insight",
    "Quest",
    "QuestProgressSnapshot",
    "QuestStatus",
    "QuestStore",
    "RewardState",
    "SqliteQuestStore",
    "Transaction",
    "WorkflowExecution",
]

"""Workflow composition: daily digest, transaction webhook and goal quests."""

from quest_orchestrator.orchestrator.workflows import (
    AppOpenPayload,
    GoalRequest,
    Orchestrator,
    build_orchestrator,
)

__all__ = ["AppOpenPayload", "GoalRequest", "Orchestrator", "build_orchestrator"]

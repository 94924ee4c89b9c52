"""Workflow engine."""

from quest_orchestrator.workflow.engine import (
    RetryPolicy,
    StepTimeoutError,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowEngine,
    WorkflowExecutionError,
    WorkflowStep,
)

__all__ = [
    "RetryPolicy",
    "StepTimeoutError",
    "WorkflowContext",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowExecutionError",
    "WorkflowStep",
]

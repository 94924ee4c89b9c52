"""Idempotent multi-step workflow engine.

A run is guarded by an idempotency key claimed in the store before any step
executes. Steps run strictly in order, each receiving the previous step's
output, with per-step retry, backoff and timeout. Every run that executes
steps leaves one row in the execution log.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from pydantic_core import to_jsonable_python

from quest_orchestrator.storage.base import QuestStore
from quest_orchestrator.storage.models import WorkflowExecution, WorkflowStatus

logger = logging.getLogger(__name__)

SUMMARY_STRING_LIMIT = 100


class StepTimeoutError(TimeoutError):
    def __init__(self, step_name: str, timeout_s: float) -> None:
        super().__init__(f"Step '{step_name}' timed out after {timeout_s:.2f}s")
        self.step_name = step_name
        self.timeout_s = timeout_s


class WorkflowExecutionError(RuntimeError):
    """A step exhausted its attempts; the idempotency claim has been released."""

    def __init__(self, workflow_id: str, step_name: str, cause: BaseException) -> None:
        super().__init__(f"Workflow {workflow_id} failed at step {step_name}: {cause}")
        self.workflow_id = workflow_id
        self.step_name = step_name
        self.cause = cause


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    backoff_s: float = 0.0
    exponential: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_s < 0:
            raise ValueError("backoff_s must not be negative")

    def delay_after(self, attempt: int) -> float:
        """Sleep before the attempt following ``attempt`` (1-based)."""
        if self.exponential:
            return self.backoff_s * 2 ** (attempt - 1)
        return self.backoff_s


@dataclass(frozen=True)
class WorkflowContext:
    workflow_id: str
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


StepFn = Callable[[Any, WorkflowContext], Awaitable[Any]]


@dataclass(frozen=True)
class WorkflowStep:
    name: str
    execute: StepFn
    retry_policy: RetryPolicy | None = None
    timeout_s: float | None = None


@dataclass(frozen=True)
class WorkflowDefinition:
    id: str
    name: str
    steps: Sequence[WorkflowStep]
    idempotency_key: Callable[[Any], str]


def _utc_now() -> datetime:
    return datetime.now(UTC)


def summarize(value: Any) -> Any:
    """Shallow, size-bounded view of a step payload for the execution log."""
    jsonable = to_jsonable_python(value, fallback=str)
    if isinstance(jsonable, dict):
        return {key: _summarize_value(item) for key, item in jsonable.items()}
    return jsonable


def _summarize_value(value: Any) -> Any:
    if isinstance(value, str) and len(value) > SUMMARY_STRING_LIMIT:
        return value[:SUMMARY_STRING_LIMIT] + "..."
    if isinstance(value, list):
        return f"[list({len(value)})]"
    if isinstance(value, dict):
        return "{...}"
    return value


def _input_user_id(workflow_input: Any) -> str | None:
    if isinstance(workflow_input, Mapping):
        raw = workflow_input.get("user_id")
    else:
        raw = getattr(workflow_input, "user_id", None)
    return str(raw) if raw is not None else None


class WorkflowEngine:
    """Run workflow definitions at most once per idempotency key."""

    def __init__(
        self,
        store: QuestStore,
        *,
        stale_after_s: float = 120.0,
        result_ttl_s: float | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if stale_after_s <= 0:
            raise ValueError("stale_after_s must be positive")
        if result_ttl_s is not None and result_ttl_s <= 0:
            raise ValueError("result_ttl_s must be positive when set")
        self.store = store
        self.stale_after_s = stale_after_s
        self.result_ttl_s = result_ttl_s
        self.clock = clock

    async def execute(self, definition: WorkflowDefinition, workflow_input: Any) -> Any:
        """Run ``definition`` unless its key already has a result or a live claim.

        Returns the cached result for a completed key and ``{}`` while another
        caller holds an unexpired claim.
        """
        key = definition.idempotency_key(workflow_input)
        claimed, existing = self._acquire(definition, key)
        if not claimed:
            return existing
        return await self._run(definition, key, workflow_input)

    def get_execution_history(
        self, workflow_id: str, limit: int = 10
    ) -> list[WorkflowExecution]:
        return self.store.list_workflow_executions(workflow_id, limit=limit)

    def purge_expired_results(self) -> int:
        if self.result_ttl_s is None:
            return 0
        cutoff = self.clock() - timedelta(seconds=self.result_ttl_s)
        purged = self.store.purge_idempotency_results(expired_before=cutoff)
        if purged:
            logger.info("workflow event=purged_results count=%d", purged)
        return purged

    def _acquire(self, definition: WorkflowDefinition, key: str) -> tuple[bool, Any]:
        now = self.clock()
        if self.store.claim_idempotency_key(key, now=now):
            return True, None

        record = self.store.get_idempotency_record(key)
        if record is None:
            # Released by a failed run between our claim attempt and the read.
            if self.store.claim_idempotency_key(key, now=now):
                return True, None
            return False, {}

        if record.result is not None:
            if self.result_ttl_s is not None:
                expired_before = now - timedelta(seconds=self.result_ttl_s)
                if record.created_at < expired_before:
                    if self.store.expire_idempotency_result(
                        key, expired_before=expired_before, now=now
                    ):
                        logger.info(
                            "workflow event=result_expired workflow_id=%s key=%s",
                            definition.id,
                            key,
                        )
                        return True, None
                    return False, {}
            logger.info("workflow event=cache_hit workflow_id=%s key=%s", definition.id, key)
            return False, json.loads(record.result)

        stale_before = now - timedelta(seconds=self.stale_after_s)
        if record.created_at >= stale_before:
            logger.info("workflow event=in_flight workflow_id=%s key=%s", definition.id, key)
            return False, {}
        if self.store.reclaim_stale_idempotency_key(key, stale_before=stale_before, now=now):
            logger.warning(
                "workflow event=stale_claim_reclaimed workflow_id=%s key=%s claimed_at=%s",
                definition.id,
                key,
                record.created_at.isoformat(),
            )
            return True, None
        return False, {}

    async def _run(self, definition: WorkflowDefinition, key: str, workflow_input: Any) -> Any:
        run_id = str(uuid4())
        execution_id = str(uuid4())
        context = WorkflowContext(workflow_id=run_id, user_id=_input_user_id(workflow_input))
        self.store.create_workflow_execution(
            WorkflowExecution(
                execution_id=execution_id,
                workflow_id=definition.id,
                workflow_name=definition.name,
                run_id=run_id,
                status=WorkflowStatus.RUNNING,
                input_summary=summarize(workflow_input),
                started_at=self.clock(),
            )
        )
        logger.info(
            "workflow event=start workflow_id=%s run_id=%s key=%s steps=%d",
            definition.id,
            run_id,
            key,
            len(definition.steps),
        )

        attempts: dict[str, int] = {}
        current = workflow_input
        step_name = ""
        try:
            for step in definition.steps:
                step_name = step.name
                self.store.set_workflow_current_step(execution_id, step.name)
                current = await self._run_step(step, current, context, attempts)
            output = to_jsonable_python(current)
            serialized = json.dumps(output)
        except Exception as exc:  # noqa: BLE001
            self.store.finish_workflow_execution(
                execution_id,
                status=WorkflowStatus.FAILED,
                error=str(exc),
                output_summary=None,
                step_attempts=attempts,
                completed_at=self.clock(),
            )
            self.store.release_idempotency_key(key)
            logger.error(
                "workflow event=failed workflow_id=%s run_id=%s step=%s reason=%s",
                definition.id,
                run_id,
                step_name,
                exc,
            )
            raise WorkflowExecutionError(definition.id, step_name, exc) from exc

        self.store.finish_workflow_execution(
            execution_id,
            status=WorkflowStatus.COMPLETED,
            error=None,
            output_summary=summarize(output),
            step_attempts=attempts,
            completed_at=self.clock(),
        )
        self.store.complete_idempotency_key(key, serialized)
        logger.info(
            "workflow event=completed workflow_id=%s run_id=%s key=%s step_attempts=%s",
            definition.id,
            run_id,
            key,
            attempts,
        )
        return output

    async def _run_step(
        self,
        step: WorkflowStep,
        step_input: Any,
        context: WorkflowContext,
        attempts: dict[str, int],
    ) -> Any:
        policy = step.retry_policy or RetryPolicy()
        last_error: Exception | None = None
        for attempt in range(1, policy.max_attempts + 1):
            attempts[step.name] = attempt
            try:
                return await self._attempt(step, step_input, context)
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "workflow_step event=attempt_failed run_id=%s step=%s attempt=%d/%d reason=%s",
                    context.workflow_id,
                    step.name,
                    attempt,
                    policy.max_attempts,
                    exc,
                )
                if attempt < policy.max_attempts:
                    delay = policy.delay_after(attempt)
                    if delay > 0:
                        await asyncio.sleep(delay)
        if last_error is None:
            raise RuntimeError(f"Step '{step.name}' failed with unknown error")
        raise last_error

    @staticmethod
    async def _attempt(step: WorkflowStep, step_input: Any, context: WorkflowContext) -> Any:
        if step.timeout_s is None:
            return await step.execute(step_input, context)
        deadline = asyncio.timeout(step.timeout_s)
        try:
            async with deadline:
                return await step.execute(step_input, context)
        except TimeoutError as exc:
            # A TimeoutError raised inside the step is not a step timeout.
            if deadline.expired():
                raise StepTimeoutError(step.name, step.timeout_s) from exc
            raise

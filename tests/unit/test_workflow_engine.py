from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from conftest import FakeClock
from quest_orchestrator.storage.memory import InMemoryQuestStore
from quest_orchestrator.storage.models import WorkflowStatus
from quest_orchestrator.workflow.engine import (
    RetryPolicy,
    StepTimeoutError,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowEngine,
    WorkflowExecutionError,
    WorkflowStep,
    summarize,
)


def _definition(*steps: WorkflowStep, workflow_id: str = "demo") -> WorkflowDefinition:
    return WorkflowDefinition(
        id=workflow_id,
        name="Demo Workflow",
        steps=list(steps),
        idempotency_key=lambda payload: f"demo:{payload['user_id']}",
    )


def _counting_steps(calls: list[str]) -> list[WorkflowStep]:
    async def load(state: dict[str, Any], context: WorkflowContext) -> dict[str, Any]:
        calls.append("load")
        return {**state, "loaded": 2}

    async def double(state: dict[str, Any], context: WorkflowContext) -> dict[str, Any]:
        calls.append("double")
        return {"user_id": state["user_id"], "total": state["loaded"] * 2}

    return [WorkflowStep("load", load), WorkflowStep("double", double)]


def test_steps_chain_outputs_and_log_completion(clock: FakeClock) -> None:
    store = InMemoryQuestStore()
    engine = WorkflowEngine(store, clock=clock)
    calls: list[str] = []

    result = asyncio.run(engine.execute(_definition(*_counting_steps(calls)), {"user_id": "u1"}))

    assert result == {"user_id": "u1", "total": 4}
    assert calls == ["load", "double"]
    [execution] = engine.get_execution_history("demo")
    assert execution.status is WorkflowStatus.COMPLETED
    assert execution.current_step is None
    assert execution.step_attempts == {"load": 1, "double": 1}
    assert execution.input_summary == {"user_id": "u1"}
    assert execution.completed_at == clock()


def test_completed_key_returns_cached_result(clock: FakeClock) -> None:
    store = InMemoryQuestStore()
    engine = WorkflowEngine(store, clock=clock)
    calls: list[str] = []
    definition = _definition(*_counting_steps(calls))

    first = asyncio.run(engine.execute(definition, {"user_id": "u1"}))
    clock.advance(hours=6)
    second = asyncio.run(engine.execute(definition, {"user_id": "u1"}))

    assert second == first
    assert calls == ["load", "double"]
    assert len(engine.get_execution_history("demo")) == 1


def test_retry_until_success_records_attempts(clock: FakeClock) -> None:
    store = InMemoryQuestStore()
    engine = WorkflowEngine(store, clock=clock)
    attempts: list[int] = []

    async def flaky(state: dict[str, Any], context: WorkflowContext) -> dict[str, Any]:
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("bank api unavailable")
        return {"synced": True}

    definition = _definition(
        WorkflowStep("sync", flaky, retry_policy=RetryPolicy(max_attempts=3, backoff_s=0.0))
    )

    result = asyncio.run(engine.execute(definition, {"user_id": "u1"}))

    assert result == {"synced": True}
    assert engine.get_execution_history("demo")[0].step_attempts == {"sync": 3}


def test_exhausted_step_fails_run_and_releases_key(clock: FakeClock) -> None:
    store = InMemoryQuestStore()
    engine = WorkflowEngine(store, clock=clock)
    calls: list[str] = []

    async def ok(state: dict[str, Any], context: WorkflowContext) -> dict[str, Any]:
        calls.append("ok")
        return state

    async def boom(state: dict[str, Any], context: WorkflowContext) -> dict[str, Any]:
        calls.append("boom")
        raise RuntimeError("kaboom")

    definition = _definition(
        WorkflowStep("ok", ok),
        WorkflowStep("boom", boom, retry_policy=RetryPolicy(max_attempts=2)),
    )

    with pytest.raises(WorkflowExecutionError) as exc_info:
        asyncio.run(engine.execute(definition, {"user_id": "u1"}))

    error = exc_info.value
    assert str(error) == "Workflow demo failed at step boom: kaboom"
    assert error.step_name == "boom"
    assert isinstance(error.cause, RuntimeError)
    assert calls == ["ok", "boom", "boom"]
    [execution] = engine.get_execution_history("demo")
    assert execution.status is WorkflowStatus.FAILED
    assert execution.current_step == "boom"
    assert execution.error == "kaboom"
    assert execution.step_attempts == {"ok": 1, "boom": 2}
    assert store.get_idempotency_record("demo:u1") is None

    # The released key lets a later trigger run the workflow again.
    with pytest.raises(WorkflowExecutionError):
        asyncio.run(engine.execute(definition, {"user_id": "u1"}))
    assert calls.count("ok") == 2


def test_live_claim_returns_empty_result(clock: FakeClock) -> None:
    store = InMemoryQuestStore()
    engine = WorkflowEngine(store, stale_after_s=120, clock=clock)
    calls: list[str] = []
    store.claim_idempotency_key("demo:u1", now=clock() - timedelta(seconds=30))

    result = asyncio.run(engine.execute(_definition(*_counting_steps(calls)), {"user_id": "u1"}))

    assert result == {}
    assert calls == []
    assert engine.get_execution_history("demo") == []


def test_stale_claim_is_taken_over(clock: FakeClock) -> None:
    store = InMemoryQuestStore()
    engine = WorkflowEngine(store, stale_after_s=120, clock=clock)
    calls: list[str] = []
    store.claim_idempotency_key("demo:u1", now=clock() - timedelta(minutes=5))

    result = asyncio.run(engine.execute(_definition(*_counting_steps(calls)), {"user_id": "u1"}))

    assert result == {"user_id": "u1", "total": 4}
    assert calls == ["load", "double"]
    assert store.get_idempotency_record("demo:u1").result is not None


def test_step_timeout_is_reported(clock: FakeClock) -> None:
    store = InMemoryQuestStore()
    engine = WorkflowEngine(store, clock=clock)

    async def slow(state: dict[str, Any], context: WorkflowContext) -> dict[str, Any]:
        await asyncio.sleep(5)
        return state

    definition = _definition(WorkflowStep("generate_payload", slow, timeout_s=0.01))

    with pytest.raises(WorkflowExecutionError) as exc_info:
        asyncio.run(engine.execute(definition, {"user_id": "u1"}))

    assert isinstance(exc_info.value.cause, StepTimeoutError)
    assert "Step 'generate_payload' timed out after 0.01s" in str(exc_info.value)


def test_context_carries_user_and_run_id(clock: FakeClock) -> None:
    store = InMemoryQuestStore()
    engine = WorkflowEngine(store, clock=clock)
    seen: list[WorkflowContext] = []

    async def capture(state: dict[str, Any], context: WorkflowContext) -> dict[str, Any]:
        seen.append(context)
        return {"ok": True}

    asyncio.run(engine.execute(_definition(WorkflowStep("capture", capture)), {"user_id": "u7"}))

    [context] = seen
    assert context.user_id == "u7"
    assert context.workflow_id == engine.get_execution_history("demo")[0].run_id


def test_result_ttl_allows_rerun_and_purge(clock: FakeClock) -> None:
    store = InMemoryQuestStore()
    engine = WorkflowEngine(store, result_ttl_s=60, clock=clock)
    calls: list[str] = []
    definition = _definition(*_counting_steps(calls))

    asyncio.run(engine.execute(definition, {"user_id": "u1"}))
    clock.advance(seconds=30)
    asyncio.run(engine.execute(definition, {"user_id": "u1"}))
    assert calls.count("load") == 1

    clock.advance(seconds=60)
    asyncio.run(engine.execute(definition, {"user_id": "u1"}))
    assert calls.count("load") == 2

    asyncio.run(engine.execute(definition, {"user_id": "u2"}))
    clock.advance(seconds=120)
    assert engine.purge_expired_results() == 2
    assert store.get_idempotency_record("demo:u2") is None


def test_purge_is_noop_without_ttl(clock: FakeClock) -> None:
    engine = WorkflowEngine(InMemoryQuestStore(), clock=clock)

    assert engine.purge_expired_results() == 0


def test_retry_policy_backoff() -> None:
    linear = RetryPolicy(max_attempts=3, backoff_s=0.5)
    exponential = RetryPolicy(max_attempts=3, backoff_s=1.0, exponential=True)

    assert [linear.delay_after(n) for n in (1, 2)] == [0.5, 0.5]
    assert [exponential.delay_after(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(backoff_s=-1)


def test_engine_rejects_invalid_windows() -> None:
    with pytest.raises(ValueError):
        WorkflowEngine(InMemoryQuestStore(), stale_after_s=0)
    with pytest.raises(ValueError):
        WorkflowEngine(InMemoryQuestStore(), result_ttl_s=-5)


def test_summarize_bounds_payload_size() -> None:
    summary = summarize(
        {"user_id": "u1", "note": "x" * 150, "transactions": [1, 2, 3], "meta": {"a": 1}}
    )

    assert summary == {
        "user_id": "u1",
        "note": "x" * 100 + "...",
        "transactions": "[list(3)]",
        "meta": "{...}",
    }


def test_exponential_backoff_retry_completes(clock: FakeClock) -> None:
    store = InMemoryQuestStore()
    engine = WorkflowEngine(store, clock=clock)
    attempts: list[int] = []

    async def flaky(state: dict[str, Any], context: WorkflowContext) -> dict[str, Any]:
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("try again")
        return {"done": True}

    policy = RetryPolicy(max_attempts=3, backoff_s=0.01, exponential=True)
    definition = _definition(WorkflowStep("flaky", flaky, retry_policy=policy))

    assert asyncio.run(engine.execute(definition, {"user_id": "u1"})) == {"done": True}
    [execution] = engine.get_execution_history("demo")
    assert execution.status is WorkflowStatus.COMPLETED
    assert execution.step_attempts == {"flaky": 3}


def test_timeout_raised_inside_step_keeps_its_message(clock: FakeClock) -> None:
    engine = WorkflowEngine(InMemoryQuestStore(), clock=clock)

    async def socket_read(state: dict[str, Any], context: WorkflowContext) -> dict[str, Any]:
        raise TimeoutError("bank socket read timed out")

    definition = _definition(WorkflowStep("sync", socket_read, timeout_s=5.0))

    with pytest.raises(WorkflowExecutionError) as exc_info:
        asyncio.run(engine.execute(definition, {"user_id": "u1"}))

    cause = exc_info.value.cause
    assert isinstance(cause, TimeoutError)
    assert not isinstance(cause, StepTimeoutError)
    assert str(exc_info.value) == "Workflow demo failed at step sync: bank socket read timed out"

from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from types import SimpleNamespace
from typing import Any

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session

from conftest import TEST_POLL_INTERVAL_SECONDS, no_sleep
from fees.domain.models import WorkflowInstance, WorkflowSignal, WorkflowStep, now_utc
from fees.domain.state_machine import WorkflowStatus
from fees.workflow.engine import (
    RetryPolicy,
    WorkflowAlreadyStartedError,
    WorkflowClosedError,
    WorkflowContext,
    WorkflowEngine,
    WorkflowNotFoundError,
)


async def collecting_workflow(ctx: WorkflowContext, payload: dict[str, Any]) -> dict[str, Any]:
    seen: list[str] = []
    while True:
        message = await ctx.select("a", "b", "stop")
        if message.signal_name == "stop":
            break
        seen.append(message.payload["v"])
    return {"seen": seen}


async def summing_workflow(ctx: WorkflowContext, payload: dict[str, Any]) -> dict[str, Any]:
    values: list[int] = []
    while True:
        message = await ctx.select("add", "done")
        if message.signal_name == "done":
            break
        values.append(int(message.payload["n"]))
    total = await ctx.execute_activity("sum", values)
    return {"total": total}


async def slow_workflow(ctx: WorkflowContext, payload: dict[str, Any]) -> dict[str, Any]:
    await ctx.execute_activity("slow")
    return {}


def make_engine(sum_calls: list[list[int]] | None = None, **kwargs: Any) -> WorkflowEngine:
    kwargs.setdefault("poll_interval_seconds", TEST_POLL_INTERVAL_SECONDS)
    kwargs.setdefault("sleep", no_sleep)
    engine = WorkflowEngine(**kwargs)
    calls = sum_calls if sum_calls is not None else []

    def sum_activity(values: list[int]) -> int:
        calls.append(list(values))
        return sum(values)

    engine.register_workflow("collecting", collecting_workflow)
    engine.register_workflow("closable", collecting_workflow, closing_signals=("stop",))
    engine.register_workflow("summing", summing_workflow)
    engine.register_workflow("slow", slow_workflow)
    engine.register_activity("sum", sum_activity)
    engine.register_activity("slow", lambda: time.sleep(0.3))
    return engine


def test_backoff_doubles_up_to_the_cap() -> None:
    policy = RetryPolicy()
    wait = policy.wait_strategy()
    delays = [wait(SimpleNamespace(attempt_number=attempt)) for attempt in range(1, 8)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    stop = policy.stop_strategy()
    assert not stop(SimpleNamespace(attempt_number=2))
    assert stop(SimpleNamespace(attempt_number=3))
    assert policy.maximum_attempts == 3
    assert policy.start_to_close_timeout == 30.0


def test_duplicate_start_is_rejected(db_engine: Engine) -> None:
    async def scenario() -> None:
        engine = make_engine()
        await engine.start_instance("k-1", "collecting", {})
        with pytest.raises(WorkflowAlreadyStartedError):
            await engine.start_instance("k-1", "collecting", {})
        assert engine.running_keys == ["k-1"]
        await engine.stop()

    asyncio.run(scenario())


def test_signal_unknown_and_completed_instances(db_engine: Engine) -> None:
    async def scenario() -> None:
        engine = make_engine()
        with pytest.raises(WorkflowNotFoundError):
            await engine.signal_instance("missing", "a", {"v": "x"})

        await engine.start_instance("k-2", "collecting", {})
        await engine.signal_instance("k-2", "stop")
        instance = await engine.wait_for_instance("k-2", timeout=5.0)
        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.completed_at is not None

        with pytest.raises(WorkflowClosedError):
            await engine.signal_instance("k-2", "a", {"v": "late"})
        assert engine.count_signals("k-2") == 1
        await engine.stop()

    asyncio.run(scenario())


def test_select_follows_journal_order_across_channels(db_engine: Engine) -> None:
    async def scenario() -> None:
        engine = make_engine()
        await engine.start_instance("k-3", "collecting", {})
        await engine.signal_instance("k-3", "a", {"v": "a1"})
        await engine.signal_instance("k-3", "b", {"v": "b1"})
        await engine.signal_instance("k-3", "a", {"v": "a2"})
        await engine.signal_instance("k-3", "stop")
        await engine.signal_instance("k-3", "b", {"v": "after-stop"})

        instance = await engine.wait_for_instance("k-3", timeout=5.0)
        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.result == {"seen": ["a1", "b1", "a2"]}
        await engine.stop()

    asyncio.run(scenario())


def test_activity_result_is_recorded(db_engine: Engine) -> None:
    async def scenario() -> None:
        calls: list[list[int]] = []
        engine = make_engine(calls)
        await engine.start_instance("k-4", "summing", {})
        for n in (1, 2, 3):
            await engine.signal_instance("k-4", "add", {"n": n})
        await engine.signal_instance("k-4", "done")

        instance = await engine.wait_for_instance("k-4", timeout=5.0)
        assert instance.result == {"total": 6}
        assert calls == [[1, 2, 3]]
        step = engine.load_step("k-4", 1)
        assert step is not None
        assert step.activity_name == "sum"
        assert step.attempts == 1
        assert step.result == 6
        await engine.stop()

    asyncio.run(scenario())


def test_activity_timeout_fails_instance(db_engine: Engine) -> None:
    async def scenario() -> None:
        delays: list[float] = []

        async def record_sleep(seconds: float) -> None:
            delays.append(seconds)

        engine = make_engine(
            retry_policy=RetryPolicy(maximum_attempts=2, start_to_close_timeout=0.05),
            sleep=record_sleep,
        )
        await engine.start_instance("k-5", "slow", {})
        instance = await engine.wait_for_instance("k-5", timeout=5.0)

        assert instance.status == WorkflowStatus.FAILED
        assert instance.last_error is not None
        assert "activity slow failed after 2 attempt(s)" in instance.last_error
        assert delays == [1.0]
        assert engine.load_step("k-5", 1) is None
        await engine.stop()

    asyncio.run(scenario())


def test_recovery_resumes_running_instance_with_same_signals(db_engine: Engine) -> None:
    async def first_run() -> None:
        engine = make_engine()
        await engine.start_instance("k-6", "summing", {})
        await engine.signal_instance("k-6", "add", {"n": 1})
        await engine.signal_instance("k-6", "add", {"n": 2})
        await asyncio.sleep(TEST_POLL_INTERVAL_SECONDS * 3)
        await engine.stop()

    async def second_run() -> WorkflowInstance:
        engine = make_engine()
        await engine.signal_instance("k-6", "add", {"n": 3})
        await engine.signal_instance("k-6", "done")
        assert await engine.start() == 1
        instance = await engine.wait_for_instance("k-6", timeout=5.0)
        await engine.stop()
        return instance

    asyncio.run(first_run())
    with Session(db_engine) as session:
        stored = session.get(WorkflowInstance, "k-6")
        assert stored is not None
        assert stored.status == WorkflowStatus.RUNNING

    instance = asyncio.run(second_run())
    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.result == {"total": 6}


def test_recovery_replays_recorded_step_without_rerunning(db_engine: Engine) -> None:
    with Session(db_engine) as session:
        session.add(WorkflowInstance(key="k-7", workflow_type="summing", input={}))
        session.commit()
        session.add(WorkflowSignal(instance_key="k-7", signal_name="add", payload={"n": 5}))
        session.add(WorkflowSignal(instance_key="k-7", signal_name="done", payload={}))
        session.add(WorkflowStep(instance_key="k-7", step_seq=1, activity_name="sum", attempts=1, result=999))
        session.commit()

    calls: list[list[int]] = []

    async def scenario() -> WorkflowInstance:
        engine = make_engine(calls)
        assert await engine.start() == 1
        instance = await engine.wait_for_instance("k-7", timeout=5.0)
        await engine.stop()
        return instance

    instance = asyncio.run(scenario())

    assert instance.result == {"total": 999}
    assert calls == []


def test_list_instances_filters_by_status(db_engine: Engine) -> None:
    async def scenario() -> None:
        engine = make_engine()
        await engine.start_instance("k-8", "collecting", {})
        await engine.start_instance("k-9", "collecting", {})
        await engine.signal_instance("k-9", "stop")
        await engine.wait_for_instance("k-9", timeout=5.0)

        running = engine.list_instances(status=WorkflowStatus.RUNNING)
        completed = engine.list_instances(status=WorkflowStatus.COMPLETED)
        assert [item.key for item in running] == ["k-8"]
        assert [item.key for item in completed] == ["k-9"]
        assert len(engine.list_instances(limit=1)) == 1
        await engine.stop()

    asyncio.run(scenario())


def test_closing_signal_refuses_later_signals(db_engine: Engine) -> None:
    async def scenario() -> None:
        engine = make_engine()
        with pytest.raises(WorkflowNotFoundError):
            await engine.ensure_accepting_signals("missing")

        await engine.start_instance("k-10", "closable", {})
        await engine.ensure_accepting_signals("k-10")
        await engine.signal_instance("k-10", "a", {"v": "a1"})
        await engine.signal_instance("k-10", "stop")

        with pytest.raises(WorkflowClosedError):
            await engine.ensure_accepting_signals("k-10")
        with pytest.raises(WorkflowClosedError):
            await engine.signal_instance("k-10", "a", {"v": "late"})
        with pytest.raises(WorkflowClosedError):
            await engine.signal_instance("k-10", "stop")

        instance = await engine.wait_for_instance("k-10", timeout=5.0)
        assert instance.result == {"seen": ["a1"]}
        assert instance.closing_at is not None
        assert engine.count_signals("k-10") == 2
        await engine.stop()

    asyncio.run(scenario())


def test_leased_instance_is_not_resumed_until_lease_expires(db_engine: Engine) -> None:
    with Session(db_engine) as session:
        session.add(
            WorkflowInstance(
                key="k-11",
                workflow_type="collecting",
                input={},
                owner_id="crashed-worker",
                lease_expires_at=now_utc() + timedelta(minutes=5),
            )
        )
        session.add(WorkflowSignal(instance_key="k-11", signal_name="a", payload={"v": "a1"}))
        session.add(WorkflowSignal(instance_key="k-11", signal_name="stop", payload={}))
        session.commit()

    async def scenario() -> WorkflowInstance:
        engine = make_engine(owner_id="worker-b")
        assert await engine.start() == 0
        assert engine.running_keys == []

        with Session(db_engine) as session:
            row = session.get(WorkflowInstance, "k-11")
            assert row is not None
            row.lease_expires_at = now_utc() - timedelta(seconds=1)
            session.add(row)
            session.commit()

        assert await engine.resume_orphaned() == 1
        instance = await engine.wait_for_instance("k-11", timeout=5.0)
        await engine.stop()
        return instance

    instance = asyncio.run(scenario())
    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.owner_id == "worker-b"
    assert instance.result == {"seen": ["a1"]}


def test_outcome_from_replaced_owner_is_discarded(db_engine: Engine) -> None:
    async def scenario() -> None:
        engine = make_engine(owner_id="worker-a")
        await engine.start_instance("k-12", "collecting", {})
        with Session(db_engine) as session:
            row = session.get(WorkflowInstance, "k-12")
            assert row is not None
            assert row.owner_id == "worker-a"
            row.owner_id = "worker-b"
            session.add(row)
            session.commit()

        await engine.signal_instance("k-12", "stop")
        with pytest.raises(TimeoutError):
            await engine.wait_for_instance("k-12", timeout=0.5)
        await engine.stop()

    asyncio.run(scenario())
    with Session(db_engine) as session:
        stored = session.get(WorkflowInstance, "k-12")
    assert stored is not None
    assert stored.status == WorkflowStatus.RUNNING
    assert stored.owner_id == "worker-b"
    assert stored.result is None


def test_lost_lease_stops_local_run(db_engine: Engine) -> None:
    async def scenario() -> None:
        engine = make_engine(owner_id="worker-a", lease_seconds=0.3)
        await engine.start(recover=False)
        await engine.start_instance("k-13", "collecting", {})
        assert engine.running_keys == ["k-13"]

        with Session(db_engine) as session:
            row = session.get(WorkflowInstance, "k-13")
            assert row is not None
            row.owner_id = "worker-b"
            row.lease_expires_at = now_utc() + timedelta(minutes=5)
            session.add(row)
            session.commit()

        await asyncio.sleep(0.5)
        assert engine.running_keys == []
        await engine.stop()

    asyncio.run(scenario())


def test_clean_stop_releases_leases(db_engine: Engine) -> None:
    async def scenario() -> None:
        engine = make_engine(owner_id="worker-a")
        await engine.start_instance("k-14", "collecting", {})
        await engine.stop()

    asyncio.run(scenario())
    with Session(db_engine) as session:
        stored = session.get(WorkflowInstance, "k-14")
    assert stored is not None
    assert stored.status == WorkflowStatus.RUNNING
    assert stored.owner_id is None
    assert stored.lease_expires_at is None


def test_recording_a_step_twice_keeps_the_first_result(db_engine: Engine) -> None:
    with Session(db_engine) as session:
        session.add(WorkflowInstance(key="k-15", workflow_type="summing", input={}))
        session.commit()

    engine = make_engine()
    assert engine.record_step("k-15", 1, "sum", 1, 6) == 6
    assert engine.record_step("k-15", 1, "sum", 1, 7) == 6
    step = engine.load_step("k-15", 1)
    assert step is not None
    assert step.result == 6

"""
Durable workflow execution on top of the application database.

An instance is one row in ``workflow_instances`` keyed by a caller-chosen key
(the primary key rejects a second start for the same key). Signals are
appended to the ``workflow_signals`` journal and handed to the running
workflow in journal order. Finished activity results are written to
``workflow_steps``. After a restart, ``WorkflowEngine.start`` re-runs every
RUNNING instance from the beginning: the workflow sees the same signals in
the same order and recorded steps return their stored result, so the
instance reaches the state it had before the crash.

Workflows must therefore be deterministic with respect to their signals and
step results, and only touch the outside world through activities.

A workflow type may name closing signals. Once one of them is journaled the
instance refuses every further signal, so nothing can queue up behind it.

Each live instance is leased to one engine (``owner_id``). The lease is
renewed while the engine runs and released on a clean stop; an engine only
resumes instances that are unowned, its own, or whose lease has expired.
Completion is written only by the current owner.

All database work runs in worker threads so the event loop stays free for
requests.
"""
from __future__ import annotations

import asyncio
import logging
import os
import socket
from collections.abc import Awaitable, Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from typing import Any
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, func, select
from tenacity import AsyncRetrying, RetryCallState, RetryError, stop_after_attempt, wait_exponential

from fees.domain.models import WorkflowInstance, WorkflowSignal, WorkflowStep, now_utc
from fees.domain.state_machine import OrchestratorState, WorkflowStatus
from fees.infra.db import get_engine

SIGNAL_POLL_SECONDS = float(os.getenv("FEES_SIGNAL_POLL_SECONDS", "15.0"))
LEASE_SECONDS = float(os.getenv("FEES_WORKFLOW_LEASE_SECONDS", "60.0"))

logger = logging.getLogger(__name__)

ActivityFn = Callable[..., Any]
SleepFn = Callable[[float], Awaitable[None]]
WorkflowFn = Callable[["WorkflowContext", dict[str, Any]], Awaitable[dict[str, Any] | None]]


class WorkflowError(Exception):
    pass


class WorkflowAlreadyStartedError(WorkflowError):
    pass


class WorkflowNotFoundError(WorkflowError):
    pass


class WorkflowClosedError(WorkflowError):
    pass


class ActivityError(WorkflowError):
    def __init__(self, activity_name: str, attempts: int, cause: BaseException) -> None:
        super().__init__(f"activity {activity_name} failed after {attempts} attempt(s): {cause!r}")
        self.activity_name = activity_name
        self.attempts = attempts
        self.cause = cause


@dataclass(frozen=True)
class RetryPolicy:
    maximum_attempts: int = 3
    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 30.0
    start_to_close_timeout: float = 30.0

    def stop_strategy(self) -> stop_after_attempt:
        return stop_after_attempt(self.maximum_attempts)

    def wait_strategy(self) -> wait_exponential:
        return wait_exponential(
            multiplier=self.initial_interval,
            exp_base=self.backoff_coefficient,
            max=self.maximum_interval,
        )


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass(frozen=True)
class SignalMessage:
    seq: int
    signal_name: str
    payload: dict[str, Any]


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class WorkflowContext:
    """Handle given to a running workflow. Not shared between instances."""

    def __init__(self, engine: WorkflowEngine, instance_key: str) -> None:
        self._engine = engine
        self.instance_key = instance_key
        self._cursor = 0
        self._pending: list[SignalMessage] = []
        self._step_seq = 0
        self._wakeup = asyncio.Event()

    def notify(self) -> None:
        self._wakeup.set()

    def _fetch_signals(self) -> list[WorkflowSignal]:
        with self._engine.session() as session:
            return list(
                session.exec(
                    select(WorkflowSignal)
                    .where(WorkflowSignal.instance_key == self.instance_key)
                    .where(col(WorkflowSignal.id) > self._cursor)
                    .order_by(col(WorkflowSignal.id).asc())
                ).all()
            )

    async def _pull_signals(self) -> None:
        rows = await asyncio.to_thread(self._fetch_signals)
        for row in rows:
            seq = int(row.id or 0)
            self._pending.append(SignalMessage(seq=seq, signal_name=row.signal_name, payload=dict(row.payload)))
            self._cursor = seq

    async def _take(self, names: set[str]) -> SignalMessage | None:
        await self._pull_signals()
        for index, message in enumerate(self._pending):
            if message.signal_name in names:
                return self._pending.pop(index)
        return None

    async def select(self, *signal_names: str) -> SignalMessage:
        """Wait for the next signal on any of the named channels.

        Each channel is FIFO. When several channels have something pending the
        one journaled first wins, so everything signaled before a given
        message is seen before it.
        """
        names = set(signal_names)
        while True:
            self._wakeup.clear()
            message = await self._take(names)
            if message is not None:
                return message
            with suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._engine.poll_interval_seconds)

    async def drain_pending(self, *signal_names: str) -> list[SignalMessage]:
        await self._pull_signals()
        names = set(signal_names)
        drained = [item for item in self._pending if item.signal_name in names]
        self._pending = [item for item in self._pending if item.signal_name not in names]
        return drained

    async def set_state(self, state: OrchestratorState) -> None:
        await asyncio.to_thread(self._engine.update_state, self.instance_key, state)

    def _log_retry(self, activity_name: str, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
        error = retry_state.outcome.exception() if retry_state.outcome is not None else None
        logger.warning(
            "activity attempt failed key=%s activity=%s attempt=%d retry_in=%.1fs error=%r",
            self.instance_key,
            activity_name,
            retry_state.attempt_number,
            delay,
            error,
        )

    async def execute_activity(
        self,
        activity_name: str,
        *args: Any,
        retry_policy: RetryPolicy | None = None,
    ) -> Any:
        policy = retry_policy or self._engine.retry_policy
        self._step_seq += 1
        step_seq = self._step_seq

        recorded = await asyncio.to_thread(self._engine.load_step, self.instance_key, step_seq)
        if recorded is not None:
            if recorded.activity_name != activity_name:
                raise WorkflowError(
                    f"non-deterministic replay for {self.instance_key}: step {step_seq} "
                    f"recorded {recorded.activity_name}, got {activity_name}"
                )
            logger.info(
                "replayed recorded step key=%s step=%d activity=%s",
                self.instance_key,
                step_seq,
                activity_name,
            )
            return recorded.result

        activity = self._engine.get_activity(activity_name)
        retrying = AsyncRetrying(
            stop=policy.stop_strategy(),
            wait=policy.wait_strategy(),
            sleep=self._engine.sleep,
            before_sleep=partial(self._log_retry, activity_name),
            reraise=False,
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await asyncio.wait_for(
                        asyncio.to_thread(activity, *args),
                        timeout=policy.start_to_close_timeout,
                    )
        except RetryError as exc:
            cause = exc.last_attempt.exception() or exc
            logger.error(
                "activity exhausted retries key=%s activity=%s attempts=%d error=%r",
                self.instance_key,
                activity_name,
                exc.last_attempt.attempt_number,
                cause,
            )
            raise ActivityError(activity_name, exc.last_attempt.attempt_number, cause) from cause

        return await asyncio.to_thread(
            self._engine.record_step,
            self.instance_key,
            step_seq,
            activity_name,
            attempts,
            result,
        )


class WorkflowEngine:
    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        poll_interval_seconds: float | None = None,
        sleep: SleepFn | None = None,
        lease_seconds: float | None = None,
        owner_id: str | None = None,
    ) -> None:
        self.retry_policy = retry_policy or DEFAULT_RETRY_POLICY
        interval = poll_interval_seconds or SIGNAL_POLL_SECONDS
        self.poll_interval_seconds = max(interval, 0.01)
        self.sleep: SleepFn = sleep or asyncio.sleep
        self.lease_seconds = max(lease_seconds or LEASE_SECONDS, 0.05)
        self.owner_id = owner_id or default_owner_id()
        self._workflows: dict[str, WorkflowFn] = {}
        self._closing_signals: dict[str, frozenset[str]] = {}
        self._activities: dict[str, ActivityFn] = {}
        self._contexts: dict[str, WorkflowContext] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._heartbeat: asyncio.Task[None] | None = None

    def session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def register_workflow(
        self,
        name: str,
        workflow: WorkflowFn,
        *,
        closing_signals: Iterable[str] = (),
    ) -> None:
        self._workflows[name] = workflow
        self._closing_signals[name] = frozenset(closing_signals)

    def register_activity(self, name: str, activity: ActivityFn) -> None:
        self._activities[name] = activity

    def get_activity(self, name: str) -> ActivityFn:
        activity = self._activities.get(name)
        if activity is None:
            raise WorkflowError(f"activity not registered: {name}")
        return activity

    @property
    def running_keys(self) -> list[str]:
        return sorted(self._tasks)

    async def start(self, *, recover: bool = True) -> int:
        """Start lease renewal and, with ``recover``, resume claimable instances.

        Returns how many instances were resumed.
        """
        resumed = await self.resume_orphaned() if recover else 0
        if self._heartbeat is None:
            self._heartbeat = asyncio.create_task(self._heartbeat_loop(recover=recover), name="workflow:heartbeat")
        logger.info("workflow engine started owner=%s resumed=%d", self.owner_id, resumed)
        return resumed

    async def stop(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            await asyncio.gather(self._heartbeat, return_exceptions=True)
            self._heartbeat = None
        keys = list(self._tasks)
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._contexts.clear()
        if keys:
            try:
                await asyncio.to_thread(self._release_leases, keys)
            except SQLAlchemyError:
                logger.exception("failed to release workflow leases owner=%s", self.owner_id)
        logger.info("workflow engine stopped owner=%s cancelled=%d", self.owner_id, len(tasks))

    async def resume_orphaned(self) -> int:
        rows = await asyncio.to_thread(self._claimable_instances)
        resumed = 0
        for row in rows:
            if row.key in self._tasks:
                continue
            if row.workflow_type not in self._workflows:
                logger.warning(
                    "cannot resume instance with unregistered workflow key=%s workflow=%s",
                    row.key,
                    row.workflow_type,
                )
                continue
            if not await asyncio.to_thread(self._claim, row.key):
                logger.debug("instance leased by another worker key=%s", row.key)
                continue
            self._spawn(row)
            resumed += 1
        if resumed:
            logger.info("resumed workflow instances owner=%s count=%d", self.owner_id, resumed)
        return resumed

    async def start_instance(
        self,
        key: str,
        workflow_type: str,
        payload: dict[str, Any],
    ) -> WorkflowInstance:
        if workflow_type not in self._workflows:
            raise WorkflowError(f"workflow not registered: {workflow_type}")
        instance = await asyncio.to_thread(self._insert_instance, key, workflow_type, payload)
        self._spawn(instance)
        logger.info("workflow instance started key=%s workflow=%s", key, workflow_type)
        return instance

    async def signal_instance(
        self,
        key: str,
        signal_name: str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        seq = await asyncio.to_thread(self._journal_signal, key, signal_name, payload or {})
        ctx = self._contexts.get(key)
        if ctx is not None:
            ctx.notify()
        logger.debug("signal journaled key=%s signal=%s seq=%d", key, signal_name, seq)
        return seq

    async def ensure_accepting_signals(self, key: str) -> None:
        """Raise unless ``key`` is RUNNING and has not journaled a closing signal."""
        await asyncio.to_thread(self._check_accepting, key)

    def get_instance(self, key: str) -> WorkflowInstance:
        with self.session() as session:
            instance = session.get(WorkflowInstance, key)
        if instance is None:
            raise WorkflowNotFoundError(f"workflow instance not found: {key}")
        return instance

    def count_signals(self, key: str) -> int:
        with self.session() as session:
            count = session.exec(
                select(func.count()).select_from(WorkflowSignal).where(WorkflowSignal.instance_key == key)
            ).one()
        return int(count)

    def list_instances(
        self,
        *,
        status: WorkflowStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowInstance]:
        statement = select(WorkflowInstance)
        if status is not None:
            statement = statement.where(WorkflowInstance.status == status)
        statement = statement.order_by(col(WorkflowInstance.started_at).desc()).offset(offset).limit(limit)
        with self.session() as session:
            return list(session.exec(statement).all())

    async def wait_for_instance(self, key: str, timeout: float = 30.0) -> WorkflowInstance:
        """Block until the instance leaves RUNNING. Raises TimeoutError otherwise."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            task = self._tasks.get(key)
            if task is not None:
                remaining = max(deadline - loop.time(), 0.0)
                await asyncio.wait({task}, timeout=remaining)
            instance = await asyncio.to_thread(self.get_instance, key)
            if instance.status != WorkflowStatus.RUNNING:
                return instance
            if loop.time() >= deadline:
                raise TimeoutError(f"workflow instance still running: {key}")
            await asyncio.sleep(min(self.poll_interval_seconds, max(deadline - loop.time(), 0.0)))

    def update_state(self, key: str, state: OrchestratorState) -> None:
        statement = (
            sa.update(WorkflowInstance)
            .where(col(WorkflowInstance.key) == key)
            .where(col(WorkflowInstance.owner_id) == self.owner_id)
            .values(state=state, updated_at=now_utc())
        )
        with self.session() as session:
            session.execute(statement)
            session.commit()

    def load_step(self, key: str, step_seq: int) -> WorkflowStep | None:
        with self.session() as session:
            return session.get(WorkflowStep, (key, step_seq))

    def record_step(self, key: str, step_seq: int, activity_name: str, attempts: int, result: Any) -> Any:
        """Store a finished step and return the result the instance must continue with.

        If the step was already recorded the stored result wins.
        """
        with self.session() as session:
            session.add(
                WorkflowStep(
                    instance_key=key,
                    step_seq=step_seq,
                    activity_name=activity_name,
                    attempts=attempts,
                    result=result,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.get(WorkflowStep, (key, step_seq))
                if existing is None:
                    raise
                logger.warning("step already recorded key=%s step=%d activity=%s", key, step_seq, activity_name)
                return existing.result
        return result

    def _lease_deadline(self) -> datetime:
        return now_utc() + timedelta(seconds=self.lease_seconds)

    def _claimable_clause(self, now: datetime) -> Any:
        owner = col(WorkflowInstance.owner_id)
        return sa.or_(
            owner.is_(None),
            owner == self.owner_id,
            col(WorkflowInstance.lease_expires_at) < now,
        )

    def _claimable_instances(self) -> list[WorkflowInstance]:
        with self.session() as session:
            return list(
                session.exec(
                    select(WorkflowInstance)
                    .where(WorkflowInstance.status == WorkflowStatus.RUNNING)
                    .where(self._claimable_clause(now_utc()))
                    .order_by(col(WorkflowInstance.started_at).asc())
                ).all()
            )

    def _claim(self, key: str) -> bool:
        statement = (
            sa.update(WorkflowInstance)
            .where(col(WorkflowInstance.key) == key)
            .where(col(WorkflowInstance.status) == WorkflowStatus.RUNNING)
            .where(self._claimable_clause(now_utc()))
            .values(owner_id=self.owner_id, lease_expires_at=self._lease_deadline())
        )
        with self.session() as session:
            result = session.execute(statement)
            session.commit()
        return int(getattr(result, "rowcount", 0) or 0) == 1

    def _renew_leases(self, keys: list[str]) -> list[str]:
        """Extend the lease on each key. Returns the keys this engine no longer owns."""
        lost: list[str] = []
        with self.session() as session:
            for key in keys:
                result = session.execute(
                    sa.update(WorkflowInstance)
                    .where(col(WorkflowInstance.key) == key)
                    .where(col(WorkflowInstance.status) == WorkflowStatus.RUNNING)
                    .where(col(WorkflowInstance.owner_id) == self.owner_id)
                    .values(lease_expires_at=self._lease_deadline())
                )
                if not getattr(result, "rowcount", 0):
                    lost.append(key)
            session.commit()
        return lost

    def _release_leases(self, keys: list[str]) -> None:
        with self.session() as session:
            session.execute(
                sa.update(WorkflowInstance)
                .where(col(WorkflowInstance.key).in_(keys))
                .where(col(WorkflowInstance.owner_id) == self.owner_id)
                .values(owner_id=None, lease_expires_at=None)
            )
            session.commit()

    async def _heartbeat_loop(self, *, recover: bool) -> None:
        interval = self.lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                lost = await asyncio.to_thread(self._renew_leases, list(self._tasks))
                for key in lost:
                    task = self._tasks.get(key)
                    if task is not None and not task.done():
                        logger.warning("workflow lease lost, stopping local run key=%s owner=%s", key, self.owner_id)
                        task.cancel()
                if recover:
                    await self.resume_orphaned()
            except SQLAlchemyError:
                logger.exception("workflow lease heartbeat failed owner=%s", self.owner_id)

    def _insert_instance(self, key: str, workflow_type: str, payload: dict[str, Any]) -> WorkflowInstance:
        instance = WorkflowInstance(
            key=key,
            workflow_type=workflow_type,
            input=payload,
            owner_id=self.owner_id,
            lease_expires_at=self._lease_deadline(),
        )
        with self.session() as session:
            session.add(instance)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise WorkflowAlreadyStartedError(f"workflow instance already exists: {key}") from None
            session.refresh(instance)
        return instance

    @staticmethod
    def _raise_if_not_accepting(key: str, instance: WorkflowInstance | None) -> WorkflowInstance:
        if instance is None:
            raise WorkflowNotFoundError(f"workflow instance not found: {key}")
        if instance.status != WorkflowStatus.RUNNING:
            raise WorkflowClosedError(f"workflow instance is {instance.status.value}: {key}")
        if instance.closing_at is not None:
            raise WorkflowClosedError(f"workflow instance is closing: {key}")
        return instance

    def _check_accepting(self, key: str) -> None:
        with self.session() as session:
            self._raise_if_not_accepting(key, session.get(WorkflowInstance, key))

    def _journal_signal(self, key: str, signal_name: str, payload: dict[str, Any]) -> int:
        with self.session() as session:
            instance = self._raise_if_not_accepting(key, session.get(WorkflowInstance, key))
            closing = signal_name in self._closing_signals.get(instance.workflow_type, frozenset())
            now = now_utc()
            values: dict[str, Any] = {"updated_at": now}
            if closing:
                values["closing_at"] = now
            # the row update serializes concurrent signals; a loser sees closing_at and matches nothing
            result = session.execute(
                sa.update(WorkflowInstance)
                .where(col(WorkflowInstance.key) == key)
                .where(col(WorkflowInstance.status) == WorkflowStatus.RUNNING)
                .where(col(WorkflowInstance.closing_at).is_(None))
                .values(**values)
            )
            if not getattr(result, "rowcount", 0):
                session.rollback()
                raise WorkflowClosedError(f"workflow instance is closing: {key}")
            signal = WorkflowSignal(instance_key=key, signal_name=signal_name, payload=payload)
            session.add(signal)
            session.commit()
            session.refresh(signal)
            return int(signal.id or 0)

    def _spawn(self, instance: WorkflowInstance) -> None:
        key = instance.key
        ctx = WorkflowContext(self, key)
        self._contexts[key] = ctx
        task = asyncio.create_task(
            self._run(key, instance.workflow_type, dict(instance.input), ctx),
            name=f"workflow:{key}",
        )
        self._tasks[key] = task
        task.add_done_callback(lambda done, key=key: self._forget(key, done))

    def _forget(self, key: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(key) is task:
            self._tasks.pop(key, None)
            self._contexts.pop(key, None)

    async def _run(
        self,
        key: str,
        workflow_type: str,
        payload: dict[str, Any],
        ctx: WorkflowContext,
    ) -> None:
        workflow = self._workflows[workflow_type]
        try:
            result = await workflow(ctx, payload)
        except asyncio.CancelledError:
            logger.info("workflow task cancelled key=%s", key)
            raise
        except Exception as exc:
            logger.exception("workflow instance failed key=%s", key)
            await asyncio.to_thread(self._finish, key, WorkflowStatus.FAILED, error=str(exc))
            return
        await asyncio.to_thread(self._finish, key, WorkflowStatus.COMPLETED, result=result)

    def _finish(
        self,
        key: str,
        status: WorkflowStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        now = now_utc()
        statement = (
            sa.update(WorkflowInstance)
            .where(col(WorkflowInstance.key) == key)
            .where(col(WorkflowInstance.status) == WorkflowStatus.RUNNING)
            .where(col(WorkflowInstance.owner_id) == self.owner_id)
            .values(
                status=status,
                result=result,
                last_error=error,
                updated_at=now,
                completed_at=now,
                lease_expires_at=None,
            )
        )
        with self.session() as session:
            outcome = session.execute(statement)
            session.commit()
        if not getattr(outcome, "rowcount", 0):
            logger.warning("workflow outcome discarded, instance not owned key=%s owner=%s", key, self.owner_id)
            return False
        logger.info("workflow instance finished key=%s status=%s", key, status.value)
        return True

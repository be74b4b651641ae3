from __future__ import annotations

import os
from dataclasses import dataclass

from fees.infra.events import EventBus
from fees.infra.repository import BillRepository, SqlBillRepository
from fees.services.bill_service import BillService
from fees.services.orchestration_service import OrchestrationService
from fees.workflow.activities import (
    COMPUTE_TOTAL_ACTIVITY,
    RECORD_FINALIZATION_FAILURE_ACTIVITY,
    SAVE_FINAL_BILL_ACTIVITY,
    BillActivities,
)
from fees.workflow.bill_workflow import BILL_WORKFLOW, CLOSE_BILL_SIGNAL, bill_workflow
from fees.workflow.engine import RetryPolicy, SleepFn, WorkflowEngine

RECOVER_ON_STARTUP = os.getenv("FEES_RECOVER_ON_STARTUP", "1").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class AppContext:
    """Everything request handlers need, built once when the application starts."""

    repository: BillRepository
    engine: WorkflowEngine
    bill_service: BillService
    orchestration_service: OrchestrationService

    async def start(self, *, recover: bool = RECOVER_ON_STARTUP) -> None:
        await self.engine.start(recover=recover)

    async def stop(self) -> None:
        await self.engine.stop()


def build_context(
    *,
    repository: BillRepository | None = None,
    retry_policy: RetryPolicy | None = None,
    poll_interval_seconds: float | None = None,
    sleep: SleepFn | None = None,
    lease_seconds: float | None = None,
    owner_id: str | None = None,
    events: EventBus | None = None,
) -> AppContext:
    repository = repository or SqlBillRepository()
    activities = BillActivities(repository, events=events)

    engine = WorkflowEngine(
        retry_policy=retry_policy,
        poll_interval_seconds=poll_interval_seconds,
        sleep=sleep,
        lease_seconds=lease_seconds,
        owner_id=owner_id,
    )
    engine.register_workflow(BILL_WORKFLOW, bill_workflow, closing_signals=(CLOSE_BILL_SIGNAL,))
    engine.register_activity(COMPUTE_TOTAL_ACTIVITY, activities.compute_total)
    engine.register_activity(SAVE_FINAL_BILL_ACTIVITY, activities.save_final_bill)
    engine.register_activity(RECORD_FINALIZATION_FAILURE_ACTIVITY, activities.record_finalization_failure)

    return AppContext(
        repository=repository,
        engine=engine,
        bill_service=BillService(repository, engine, events=events),
        orchestration_service=OrchestrationService(engine),
    )

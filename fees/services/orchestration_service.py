from __future__ import annotations

from fees.domain.errors import NotFoundError, ValidationError
from fees.domain.models import WorkflowInstance, WorkflowInstanceRead
from fees.domain.state_machine import WorkflowStatus
from fees.workflow.engine import WorkflowEngine, WorkflowNotFoundError

MAX_INSTANCE_LIST_LIMIT = 200


class OrchestrationService:
    """Read-only operator view over workflow instances."""

    def __init__(self, engine: WorkflowEngine) -> None:
        self._engine = engine

    def _to_read(self, instance: WorkflowInstance) -> WorkflowInstanceRead:
        read = WorkflowInstanceRead.model_validate(instance)
        read.signal_count = self._engine.count_signals(instance.key)
        return read

    def get_bill_orchestration(self, bill_id: str) -> WorkflowInstanceRead:
        try:
            instance = self._engine.get_instance(bill_id)
        except WorkflowNotFoundError as exc:
            raise NotFoundError(
                f"no orchestrator instance for bill: {bill_id}",
                code="ORCHESTRATOR_NOT_FOUND",
                detail={"bill_id": bill_id},
            ) from exc
        return self._to_read(instance)

    def list_orchestrations(
        self,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowInstanceRead]:
        status_filter: WorkflowStatus | None = None
        if status:
            try:
                status_filter = WorkflowStatus(status)
            except ValueError:
                raise ValidationError(
                    f"invalid workflow status: {status}",
                    code="INVALID_STATUS",
                    detail={"status": status},
                ) from None
        limit = min(max(limit, 1), MAX_INSTANCE_LIST_LIMIT)
        offset = max(offset, 0)
        instances = self._engine.list_instances(status=status_filter, limit=limit, offset=offset)
        return [self._to_read(item) for item in instances]

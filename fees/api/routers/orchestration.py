from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from fees.api.deps import get_orchestration_service, raise_http_error
from fees.domain.errors import FeesError
from fees.domain.models import WorkflowInstanceRead
from fees.services.orchestration_service import OrchestrationService

router = APIRouter()

Service = Annotated[OrchestrationService, Depends(get_orchestration_service)]


@router.get("/bills/{bill_id}/orchestration", response_model=WorkflowInstanceRead)
def get_bill_orchestration(bill_id: str, service: Service) -> WorkflowInstanceRead:
    try:
        return service.get_bill_orchestration(bill_id)
    except FeesError as exc:
        raise_http_error(exc)
        raise


@router.get("/orchestrations", response_model=list[WorkflowInstanceRead])
def list_orchestrations(
    service: Service,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[WorkflowInstanceRead]:
    try:
        return service.list_orchestrations(status=status, limit=limit, offset=offset)
    except FeesError as exc:
        raise_http_error(exc)
        raise

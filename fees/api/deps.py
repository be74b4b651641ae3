from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from fees.bootstrap import AppContext
from fees.domain.errors import FeesError
from fees.services.bill_service import BillService
from fees.services.orchestration_service import OrchestrationService

ERROR_STATUS_BY_KIND: dict[str, int] = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "dependency": status.HTTP_503_SERVICE_UNAVAILABLE,
    "orchestrator_terminal_failure": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_app_context(request: Request) -> AppContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="application context not initialized",
        )
    return context


def get_bill_service(context: Annotated[AppContext, Depends(get_app_context)]) -> BillService:
    return context.bill_service


def get_orchestration_service(
    context: Annotated[AppContext, Depends(get_app_context)],
) -> OrchestrationService:
    return context.orchestration_service


def get_actor_id(x_actor_id: Annotated[str | None, Header()] = None) -> str | None:
    return x_actor_id


def raise_http_error(exc: FeesError) -> None:
    status_code = ERROR_STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(status_code=status_code, detail=exc.to_dict()) from exc

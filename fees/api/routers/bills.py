from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status

from fees.api.deps import get_actor_id, get_bill_service, raise_http_error
from fees.domain.errors import FeesError
from fees.domain.models import BillCreate, BillCreateRead, BillListRead, BillRead, LineItemCreate
from fees.infra.audit import set_audit_context
from fees.services.bill_service import (
    DEFAULT_ALL_LIST_LIMIT,
    DEFAULT_CUSTOMER_LIST_LIMIT,
    BillService,
)

router = APIRouter()

Service = Annotated[BillService, Depends(get_bill_service)]
ActorId = Annotated[str | None, Depends(get_actor_id)]


@router.post(
    "/bills",
    response_model=BillCreateRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_bill(
    payload: BillCreate,
    request: Request,
    service: Service,
    actor_id: ActorId,
) -> BillCreateRead:
    set_audit_context(request, action="bill.create", detail={"customer_id": payload.customer_id})
    try:
        bill_id = await service.create_bill(payload.customer_id, payload.currency, actor_id=actor_id)
    except FeesError as exc:
        raise_http_error(exc)
        raise
    set_audit_context(request, resource=f"bills/{bill_id}")
    return BillCreateRead(bill_id=bill_id)


@router.post(
    "/bills/{bill_id}/items",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def add_line_item(
    bill_id: str,
    payload: LineItemCreate,
    request: Request,
    service: Service,
    actor_id: ActorId,
) -> Response:
    set_audit_context(
        request,
        action="bill.add_line_item",
        resource=f"bills/{bill_id}",
        detail={"amount": payload.amount},
    )
    try:
        await service.add_line_item(bill_id, payload.description, payload.amount, actor_id=actor_id)
    except FeesError as exc:
        raise_http_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/bills/{bill_id}/close",
    status_code=status.HTTP_202_ACCEPTED,
)
async def close_bill(
    bill_id: str,
    request: Request,
    service: Service,
    actor_id: ActorId,
) -> dict[str, str]:
    set_audit_context(request, action="bill.close", resource=f"bills/{bill_id}")
    try:
        await service.close_bill(bill_id, actor_id=actor_id)
    except FeesError as exc:
        raise_http_error(exc)
        raise
    return {"bill_id": bill_id, "status": "close_requested"}


@router.get("/bills/{bill_id}", response_model=BillRead)
def get_bill(bill_id: str, service: Service) -> BillRead:
    try:
        return service.get_bill(bill_id)
    except FeesError as exc:
        raise_http_error(exc)
        raise


@router.get("/customers/{customer_id}/bills", response_model=BillListRead)
def list_bills(
    customer_id: str,
    service: Service,
    status: str | None = None,
    limit: int = DEFAULT_CUSTOMER_LIST_LIMIT,
    offset: int = 0,
) -> BillListRead:
    try:
        bills, total = service.list_bills(customer_id, status=status, limit=limit, offset=offset)
    except FeesError as exc:
        raise_http_error(exc)
        raise
    return BillListRead(bills=bills, total=total)


@router.get("/bills", response_model=BillListRead)
def list_all_bills(
    service: Service,
    status: str | None = None,
    limit: int = DEFAULT_ALL_LIST_LIMIT,
    offset: int = 0,
) -> BillListRead:
    try:
        bills, total = service.list_all_bills(status=status, limit=limit, offset=offset)
    except FeesError as exc:
        raise_http_error(exc)
        raise
    return BillListRead(bills=bills, total=total)

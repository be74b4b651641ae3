from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from fees.domain.models import AuditLog
from fees.infra.db import get_engine

ACTOR_HEADER = "X-Actor-Id"

logger = logging.getLogger(__name__)


@dataclass
class BillAuditEntry:
    """What a bill route wants recorded about the current request."""

    action: str
    resource: str = "bills"
    detail: dict[str, Any] = field(default_factory=dict)


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    """Mark the request as an audited bill operation, or refine an earlier mark."""
    entry: BillAuditEntry | None = getattr(request.state, "bill_audit", None)
    if entry is None:
        if action is None:
            return
        entry = BillAuditEntry(action=action)
        request.state.bill_audit = entry
    elif action is not None:
        entry.action = action
    if resource is not None:
        entry.resource = resource
    if detail:
        entry.detail.update(detail)


def outcome_for(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code == 409:
        return "conflict"
    if status_code == 404:
        return "not_found"
    if status_code >= 400:
        return "rejected"
    return "success"


def record_bill_audit(
    entry: BillAuditEntry,
    *,
    actor_id: str | None,
    method: str,
    route: str,
    status_code: int,
) -> None:
    detail = {**entry.detail, "route": route, "outcome": outcome_for(status_code)}
    with Session(get_engine()) as session:
        session.add(
            AuditLog(
                actor_id=actor_id,
                action=entry.action,
                resource=entry.resource,
                method=method,
                status_code=status_code,
                detail=detail,
            )
        )
        session.commit()


class AuditMiddleware(BaseHTTPMiddleware):
    """Writes one audit row for every bill operation a route marked with ``set_audit_context``."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        entry: BillAuditEntry | None = getattr(request.state, "bill_audit", None)
        if entry is None:
            return response

        route = getattr(request.scope.get("route"), "path", request.url.path)
        try:
            await asyncio.to_thread(
                record_bill_audit,
                entry,
                actor_id=request.headers.get(ACTOR_HEADER),
                method=request.method,
                route=route,
                status_code=response.status_code,
            )
        except SQLAlchemyError:
            logger.exception("audit write failed action=%s resource=%s", entry.action, entry.resource)
        return response

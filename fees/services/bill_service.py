from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError

from fees.domain.billing import (
    can_add_line_item,
    validate_bill,
    validate_currency,
    validate_customer_id,
    validate_line_item,
    validate_status,
)
from fees.domain.errors import (
    BillAlreadyClosedError,
    DependencyError,
    ValidationError,
)
from fees.domain.models import BillRead, BillRecord, BillSummaryRead, LineItem, now_utc
from fees.domain.state_machine import BillStatus
from fees.infra.events import EventBus, event_bus
from fees.infra.repository import BillRepository
from fees.workflow.bill_workflow import ADD_LINE_ITEM_SIGNAL, BILL_WORKFLOW, CLOSE_BILL_SIGNAL
from fees.workflow.engine import WorkflowClosedError, WorkflowError

DEFAULT_CUSTOMER_LIST_LIMIT = 10
MAX_CUSTOMER_LIST_LIMIT = 100
DEFAULT_ALL_LIST_LIMIT = 50
MAX_ALL_LIST_LIMIT = 1000

logger = logging.getLogger(__name__)


class BillOrchestrator(Protocol):
    async def start_instance(self, key: str, workflow_type: str, payload: dict[str, Any]) -> object: ...

    async def ensure_accepting_signals(self, key: str) -> None: ...

    async def signal_instance(
        self,
        key: str,
        signal_name: str,
        payload: dict[str, Any] | None = None,
    ) -> object: ...


def new_bill_id(customer_id: str) -> str:
    return f"bill-{customer_id}-{time.time_ns()}"


class BillService:
    """Bill operations for the HTTP layer.

    Blocking repository and event calls from the async operations run in
    worker threads. Domain events are best effort: a failed publish is logged
    and never fails an operation whose state change already happened.
    """

    def __init__(
        self,
        repository: BillRepository,
        orchestrator: BillOrchestrator,
        *,
        events: EventBus | None = None,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self._events = events or event_bus

    def _publish(
        self,
        event_type: str,
        bill_id: str,
        payload: dict[str, Any],
        *,
        actor_id: str | None = None,
    ) -> None:
        try:
            self._events.publish_dict(event_type, bill_id, payload, actor_id=actor_id)
        except SQLAlchemyError:
            logger.exception("failed to publish event type=%s bill_id=%s", event_type, bill_id)

    async def create_bill(self, customer_id: str, currency: str, *, actor_id: str | None = None) -> str:
        validate_customer_id(customer_id)
        resolved_currency = validate_currency(currency)

        bill = BillRecord(
            id=new_bill_id(customer_id),
            customer_id=customer_id,
            currency=resolved_currency,
            status=BillStatus.OPEN,
            total_amount=0,
            created_at=now_utc(),
        )
        validate_bill(bill)
        bill_id = bill.id

        try:
            await asyncio.to_thread(self._repository.create_bill, bill)
        except SQLAlchemyError as exc:
            logger.error("failed to create bill in repository bill_id=%s error=%s", bill_id, exc)
            raise DependencyError(f"failed to create bill: {exc}", detail={"bill_id": bill_id}) from exc

        initial_bill = {
            "id": bill_id,
            "customer_id": customer_id,
            "currency": resolved_currency.value,
            "status": BillStatus.OPEN.value,
            "total_amount": 0,
            "created_at": bill.created_at.isoformat(),
        }
        try:
            await self._orchestrator.start_instance(bill_id, BILL_WORKFLOW, initial_bill)
        except (WorkflowError, SQLAlchemyError) as exc:
            # The bill row stays OPEN with no orchestrator behind it.
            logger.error("failed to start bill workflow bill_id=%s error=%s", bill_id, exc)
            raise DependencyError(
                f"failed to start bill workflow: {exc}",
                code="ORCHESTRATOR_START_FAILED",
                detail={"bill_id": bill_id},
            ) from exc

        await asyncio.to_thread(
            self._publish,
            "bill.created",
            bill_id,
            {"customer_id": customer_id, "currency": resolved_currency.value},
            actor_id=actor_id,
        )
        logger.info("bill created successfully bill_id=%s customer_id=%s", bill_id, customer_id)
        return bill_id

    def _read_status(self, bill_id: str) -> BillStatus:
        try:
            return self._repository.get_bill_status(bill_id)
        except SQLAlchemyError as exc:
            raise DependencyError(f"failed to get bill status: {exc}", detail={"bill_id": bill_id}) from exc

    async def add_line_item(
        self,
        bill_id: str,
        description: str,
        amount: int,
        *,
        actor_id: str | None = None,
    ) -> LineItem:
        """Store a line item and hand it to the bill's orchestrator.

        Once a close has been requested the item is refused. If the close
        lands between the check and the signal, the stored row is removed
        again so the bill's items always match its total.
        """
        validate_line_item(description, amount)

        status = await asyncio.to_thread(self._read_status, bill_id)
        if not can_add_line_item(status):
            logger.warning("attempted to add line item to closed bill bill_id=%s", bill_id)
            raise BillAlreadyClosedError(bill_id)

        try:
            await self._orchestrator.ensure_accepting_signals(bill_id)
        except WorkflowClosedError as exc:
            logger.warning("attempted to add line item after close was requested bill_id=%s", bill_id)
            raise BillAlreadyClosedError(bill_id) from exc
        except (WorkflowError, SQLAlchemyError) as exc:
            logger.warning("bill workflow unavailable for new line item bill_id=%s error=%s", bill_id, exc)
            raise DependencyError(
                f"failed to signal workflow: {exc}",
                code="ORCHESTRATOR_SIGNAL_FAILED",
                detail={"bill_id": bill_id, "line_item_persisted": False},
            ) from exc

        item = LineItem(description=description, amount=amount, timestamp=now_utc())
        try:
            item_id = await asyncio.to_thread(self._repository.add_line_item, bill_id, item)
        except SQLAlchemyError as exc:
            logger.error("failed to add line item to repository bill_id=%s error=%s", bill_id, exc)
            raise DependencyError(f"failed to save line item: {exc}", detail={"bill_id": bill_id}) from exc

        try:
            await self._orchestrator.signal_instance(bill_id, ADD_LINE_ITEM_SIGNAL, item.model_dump(mode="json"))
        except WorkflowClosedError as exc:
            logger.warning(
                "close requested while adding line item, removing it bill_id=%s item_id=%d",
                bill_id,
                item_id,
            )
            try:
                await asyncio.to_thread(self._repository.delete_line_item, item_id)
            except SQLAlchemyError:
                logger.exception("failed to remove refused line item bill_id=%s item_id=%d", bill_id, item_id)
            raise BillAlreadyClosedError(bill_id) from exc
        except (WorkflowError, SQLAlchemyError) as exc:
            logger.warning("failed to signal workflow for new line item bill_id=%s error=%s", bill_id, exc)
            raise DependencyError(
                f"failed to signal workflow: {exc}",
                code="ORCHESTRATOR_SIGNAL_FAILED",
                detail={"bill_id": bill_id, "line_item_persisted": True},
            ) from exc

        await asyncio.to_thread(
            self._publish,
            "bill.line_item_added",
            bill_id,
            {"description": description, "amount": amount},
            actor_id=actor_id,
        )
        logger.info(
            "line item added successfully bill_id=%s description=%s amount=%d",
            bill_id,
            description,
            amount,
        )
        return item

    async def close_bill(self, bill_id: str, *, actor_id: str | None = None) -> None:
        bill = await asyncio.to_thread(self.get_bill, bill_id)
        if bill.status == BillStatus.CLOSED:
            logger.warning("attempted to close already closed bill bill_id=%s", bill_id)
            raise BillAlreadyClosedError(bill_id)

        try:
            await self._orchestrator.signal_instance(bill_id, CLOSE_BILL_SIGNAL, {})
        except WorkflowClosedError as exc:
            logger.warning("close already requested bill_id=%s", bill_id)
            raise BillAlreadyClosedError(bill_id) from exc
        except (WorkflowError, SQLAlchemyError) as exc:
            logger.error("failed to signal bill to close bill_id=%s error=%s", bill_id, exc)
            raise DependencyError(
                f"failed to signal bill to close: {exc}",
                code="ORCHESTRATOR_SIGNAL_FAILED",
                detail={"bill_id": bill_id},
            ) from exc

        await asyncio.to_thread(
            self._publish,
            "bill.close_requested",
            bill_id,
            {"line_items_count": len(bill.line_items)},
            actor_id=actor_id,
        )
        logger.info("bill close signal sent successfully bill_id=%s", bill_id)

    def get_bill(self, bill_id: str) -> BillRead:
        try:
            bill = self._repository.get_bill_by_id(bill_id)
        except SQLAlchemyError as exc:
            raise DependencyError(f"failed to get bill: {exc}", detail={"bill_id": bill_id}) from exc
        logger.debug("bill retrieved successfully bill_id=%s status=%s", bill_id, bill.status)
        return bill

    @staticmethod
    def _resolve_status_filter(status: str | BillStatus | None) -> BillStatus | None:
        if status is None or status == "":
            return None
        return validate_status(status)

    def list_bills(
        self,
        customer_id: str,
        *,
        status: str | BillStatus | None = None,
        limit: int = DEFAULT_CUSTOMER_LIST_LIMIT,
        offset: int = 0,
    ) -> tuple[list[BillSummaryRead], int]:
        validate_customer_id(customer_id)
        status_filter = self._resolve_status_filter(status)
        if limit <= 0:
            limit = DEFAULT_CUSTOMER_LIST_LIMIT
        limit = min(limit, MAX_CUSTOMER_LIST_LIMIT)
        offset = max(offset, 0)

        try:
            bills = self._repository.list_bills_by_customer(customer_id, status_filter, limit, offset)
        except SQLAlchemyError as exc:
            logger.error("failed to list bills customer_id=%s error=%s", customer_id, exc)
            raise DependencyError(f"failed to list bills: {exc}") from exc
        logger.debug("bills listed successfully customer_id=%s count=%d", customer_id, len(bills))
        return bills, len(bills)

    def list_all_bills(
        self,
        *,
        status: str | BillStatus | None = None,
        limit: int = DEFAULT_ALL_LIST_LIMIT,
        offset: int = 0,
    ) -> tuple[list[BillSummaryRead], int]:
        status_filter = self._resolve_status_filter(status)
        if limit <= 0:
            limit = DEFAULT_ALL_LIST_LIMIT
        offset = max(offset, 0)
        if limit > MAX_ALL_LIST_LIMIT:
            raise ValidationError(
                f"limit cannot exceed {MAX_ALL_LIST_LIMIT}",
                code="INVALID_LIMIT",
                detail={"limit": limit},
            )

        try:
            bills = self._repository.list_all_bills(status_filter, limit, offset)
        except SQLAlchemyError as exc:
            logger.error("failed to list all bills error=%s", exc)
            raise DependencyError(f"failed to list bills: {exc}") from exc
        logger.debug("all bills listed successfully count=%d", len(bills))
        return bills, len(bills)

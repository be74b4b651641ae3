from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from fees.domain.billing import calculate_total
from fees.domain.models import FinalBill, LineItem
from fees.infra.events import EventBus, event_bus
from fees.infra.repository import BillRepository

COMPUTE_TOTAL_ACTIVITY = "compute_total"
SAVE_FINAL_BILL_ACTIVITY = "save_final_bill"
RECORD_FINALIZATION_FAILURE_ACTIVITY = "record_finalization_failure"

logger = logging.getLogger(__name__)


class BillActivities:
    """Finalization steps. Each is safe to run more than once with the same input."""

    def __init__(self, repository: BillRepository, *, events: EventBus | None = None) -> None:
        self._repository = repository
        self._events = events or event_bus

    def compute_total(self, items: Sequence[LineItem]) -> int:
        total = calculate_total(items)
        logger.debug("calculated total for bill line_items_count=%d total=%d", len(items), total)
        return total

    def save_final_bill(self, final_bill: FinalBill) -> None:
        try:
            self._repository.update_status_and_total(final_bill.id, final_bill.status, final_bill.total_amount)
        except Exception:
            logger.exception("failed to save final bill bill_id=%s", final_bill.id)
            raise
        self._events.publish_dict(
            "bill.finalized",
            final_bill.id,
            {"total_amount": final_bill.total_amount, "status": final_bill.status.value},
        )
        logger.info(
            "bill finalized successfully bill_id=%s total_amount=%d",
            final_bill.id,
            final_bill.total_amount,
        )

    def record_finalization_failure(self, bill_id: str, failure: dict[str, Any]) -> None:
        self._events.publish_dict("bill.finalization_failed", bill_id, dict(failure))
        logger.warning(
            "bill finalization failed bill_id=%s activity=%s attempts=%s",
            bill_id,
            failure.get("activity"),
            failure.get("attempts"),
        )

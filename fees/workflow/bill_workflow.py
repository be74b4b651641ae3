from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from fees.domain.errors import OrchestratorTerminalFailureError
from fees.domain.models import FinalBill, LineItem
from fees.domain.state_machine import BillStatus, OrchestratorState, can_orchestrator_transition
from fees.workflow.activities import (
    COMPUTE_TOTAL_ACTIVITY,
    RECORD_FINALIZATION_FAILURE_ACTIVITY,
    SAVE_FINAL_BILL_ACTIVITY,
)
from fees.workflow.engine import ActivityError, WorkflowContext, WorkflowError

BILL_WORKFLOW = "BillWorkflow"
ADD_LINE_ITEM_SIGNAL = "ADD_LINE_ITEM"
CLOSE_BILL_SIGNAL = "CLOSE_BILL"

logger = logging.getLogger(__name__)


async def _advance(ctx: WorkflowContext, current: OrchestratorState, target: OrchestratorState) -> OrchestratorState:
    if not can_orchestrator_transition(current, target):
        raise WorkflowError(f"invalid orchestrator transition {current} -> {target} for {ctx.instance_key}")
    await ctx.set_state(target)
    return target


async def bill_workflow(ctx: WorkflowContext, initial_bill: dict[str, Any]) -> dict[str, Any]:
    """Accumulate line items until a close signal, then compute and persist the total.

    Line items are taken in the order they were signaled. The engine refuses
    signals once the close is journaled. Anything still found on the add-item
    channel after the close is reported as dropped and never reaches the total.
    """
    bill_id = str(initial_bill["id"])
    logger.info("starting bill workflow bill_id=%s", bill_id)

    await ctx.set_state(OrchestratorState.ACCUMULATING)
    state = OrchestratorState.ACCUMULATING
    line_items: list[LineItem] = []

    while True:
        message = await ctx.select(ADD_LINE_ITEM_SIGNAL, CLOSE_BILL_SIGNAL)
        if message.signal_name == CLOSE_BILL_SIGNAL:
            logger.info(
                "received close bill signal bill_id=%s total_line_items=%d",
                bill_id,
                len(line_items),
            )
            break
        try:
            item = LineItem.model_validate(message.payload)
        except PydanticValidationError:
            logger.error("discarding malformed line item signal bill_id=%s seq=%d", bill_id, message.seq)
            continue
        line_items.append(item)
        logger.info(
            "received line item bill_id=%s description=%s amount=%d",
            bill_id,
            item.description,
            item.amount,
        )

    state = await _advance(ctx, state, OrchestratorState.FINALIZING)
    try:
        total = await ctx.execute_activity(COMPUTE_TOTAL_ACTIVITY, line_items)
        final_bill = FinalBill(id=bill_id, total_amount=int(total), status=BillStatus.CLOSED)
        await ctx.execute_activity(SAVE_FINAL_BILL_ACTIVITY, final_bill)
    except ActivityError as exc:
        await _advance(ctx, state, OrchestratorState.FAILED)
        failure = {
            "activity": exc.activity_name,
            "attempts": exc.attempts,
            "error": repr(exc.cause),
            "line_items_count": len(line_items),
        }
        try:
            await ctx.execute_activity(RECORD_FINALIZATION_FAILURE_ACTIVITY, bill_id, failure)
        except ActivityError:
            logger.exception("could not record finalization failure bill_id=%s", bill_id)
        raise OrchestratorTerminalFailureError(
            f"failed to finalize bill {bill_id}: {exc}",
            detail={"bill_id": bill_id, "activity": exc.activity_name, "attempts": exc.attempts},
        ) from exc

    dropped = await ctx.drain_pending(ADD_LINE_ITEM_SIGNAL)
    for message in dropped:
        logger.warning(
            "dropped line item signal received after close bill_id=%s seq=%d payload=%s",
            bill_id,
            message.seq,
            message.payload,
        )

    await _advance(ctx, state, OrchestratorState.DONE)
    logger.info(
        "bill workflow completed successfully bill_id=%s total_amount=%d line_items_count=%d",
        bill_id,
        final_bill.total_amount,
        len(line_items),
    )
    result = final_bill.model_dump(mode="json")
    result["line_items_count"] = len(line_items)
    result["dropped_signals"] = len(dropped)
    return result

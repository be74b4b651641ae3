from __future__ import annotations

from enum import StrEnum


class BillStatus(StrEnum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


BILL_ALLOWED_TRANSITIONS: dict[BillStatus, set[BillStatus]] = {
    BillStatus.OPEN: {BillStatus.CLOSED},
    BillStatus.CLOSED: set(),
}


def can_transition(source: BillStatus, target: BillStatus) -> bool:
    return target in BILL_ALLOWED_TRANSITIONS.get(source, set())


class OrchestratorState(StrEnum):
    ACCUMULATING = "ACCUMULATING"
    FINALIZING = "FINALIZING"
    DONE = "DONE"
    FAILED = "FAILED"


ORCHESTRATOR_ALLOWED_TRANSITIONS: dict[OrchestratorState, set[OrchestratorState]] = {
    OrchestratorState.ACCUMULATING: {OrchestratorState.FINALIZING},
    OrchestratorState.FINALIZING: {OrchestratorState.DONE, OrchestratorState.FAILED},
    OrchestratorState.DONE: set(),
    OrchestratorState.FAILED: set(),
}


def can_orchestrator_transition(source: OrchestratorState, target: OrchestratorState) -> bool:
    return target in ORCHESTRATOR_ALLOWED_TRANSITIONS.get(source, set())


class WorkflowStatus(StrEnum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

"""
Error taxonomy for bill commands.

Every error a caller can see carries a ``kind`` (one of the five families
below) and a stable ``code``, so the HTTP layer and other callers can branch
on structure instead of message text.
"""
from __future__ import annotations

from typing import Any


class FeesError(Exception):
    kind = "error"
    code = "FEES_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "detail": self.detail,
        }


class ValidationError(FeesError):
    kind = "validation"
    code = "VALIDATION_FAILED"


class InvalidCurrencyError(ValidationError):
    code = "INVALID_CURRENCY"


class InvalidAmountError(ValidationError):
    code = "INVALID_AMOUNT"


class EmptyDescriptionError(ValidationError):
    code = "EMPTY_DESCRIPTION"


class EmptyCustomerIDError(ValidationError):
    code = "EMPTY_CUSTOMER_ID"


class InvalidStatusError(ValidationError):
    code = "INVALID_STATUS"


class NotFoundError(FeesError):
    kind = "not_found"
    code = "NOT_FOUND"


class BillNotFoundError(NotFoundError):
    code = "BILL_NOT_FOUND"

    def __init__(self, bill_id: str) -> None:
        super().__init__(f"bill not found: {bill_id}", detail={"bill_id": bill_id})
        self.bill_id = bill_id


class ConflictError(FeesError):
    kind = "conflict"
    code = "CONFLICT"


class BillAlreadyClosedError(ConflictError):
    code = "BILL_ALREADY_CLOSED"

    def __init__(self, bill_id: str) -> None:
        super().__init__(f"bill is already closed: {bill_id}", detail={"bill_id": bill_id})
        self.bill_id = bill_id


class DependencyError(FeesError):
    """A persistence or orchestration call failed; the original error is chained."""

    kind = "dependency"
    code = "DEPENDENCY_FAILED"


class OrchestratorTerminalFailureError(FeesError):
    """Finalization exhausted its retry budget; the bill stays OPEN until an operator acts."""

    kind = "orchestrator_terminal_failure"
    code = "FINALIZATION_FAILED"

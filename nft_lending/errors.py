"""Domain error taxonomy shared by the coordinator and the HTTP gateway."""
from __future__ import annotations

from http import HTTPStatus
from typing import Any, Dict, Optional


class LendingError(Exception):
    code = "lending-error"
    status = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class InvalidRequest(LendingError):
    code = "invalid-request"
    status = HTTPStatus.BAD_REQUEST


class NotEligible(LendingError):
    code = "not-eligible"
    status = HTTPStatus.UNPROCESSABLE_ENTITY


class LoanNotFound(LendingError):
    code = "loan-not-found"
    status = HTTPStatus.NOT_FOUND


class UnknownOperation(LendingError):
    code = "unknown-operation"
    status = HTTPStatus.NOT_FOUND


class LoanClosed(LendingError):
    code = "loan-closed"
    status = HTTPStatus.CONFLICT


class Busy(LendingError):
    code = "busy"
    status = HTTPStatus.CONFLICT


class Unauthorized(LendingError):
    code = "unauthorized"
    status = HTTPStatus.FORBIDDEN


class InsufficientFunds(LendingError):
    code = "insufficient-funds"
    status = HTTPStatus.PAYMENT_REQUIRED


class CostTooHigh(LendingError):
    code = "cost-too-high"
    status = HTTPStatus.PAYMENT_REQUIRED


class Rejected(LendingError):
    """The ledger finalized (or pre-flighted) the operation as a revert."""

    code = "rejected"
    status = HTTPStatus.UNPROCESSABLE_ENTITY

    def __init__(self, reason_code: str, details: Optional[Dict[str, Any]] = None) -> None:
        details = dict(details or {})
        details.setdefault("reasonCode", reason_code)
        super().__init__(f"ledger rejected operation: {reason_code}", details)
        self.reason_code = reason_code


class Unreachable(LendingError):
    code = "unreachable"
    status = HTTPStatus.SERVICE_UNAVAILABLE


class Indeterminate(LendingError):
    """Finality was not observed in time; the caller must poll, not retry."""

    code = "indeterminate"
    status = HTTPStatus.ACCEPTED

    def __init__(self, handle_id: str, details: Optional[Dict[str, Any]] = None) -> None:
        details = dict(details or {})
        details.setdefault("handle", handle_id)
        details.setdefault("poll", f"/operations/{handle_id}")
        super().__init__("operation still pending on the ledger; poll for its outcome", details)
        self.handle_id = handle_id


__all__ = [
    "Busy",
    "CostTooHigh",
    "Indeterminate",
    "InsufficientFunds",
    "InvalidRequest",
    "LendingError",
    "LoanClosed",
    "LoanNotFound",
    "NotEligible",
    "Rejected",
    "Unauthorized",
    "UnknownOperation",
    "Unreachable",
]

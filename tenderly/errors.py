# tenderly/errors.py
from typing import Any, Dict, Optional

from fastapi import status


class TenderlyError(Exception):
    """Base class for workflow errors surfaced to API clients."""

    kind = "error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, current_state: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.current_state = current_state
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.kind, "detail": self.message}
        if self.current_state is not None:
            body["current_state"] = self.current_state
        if self.details:
            body["details"] = self.details
        return body


class ConflictError(TenderlyError):
    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT


class PreconditionError(TenderlyError):
    kind = "precondition_failed"
    status_code = status.HTTP_412_PRECONDITION_FAILED


class InvalidTransitionError(TenderlyError):
    kind = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, machine: str, current: str, target: str):
        super().__init__(
            f"Cannot move {machine} from '{current}' to '{target}'",
            current_state=current,
            details={"target_state": target},
        )
        self.machine = machine
        self.target = target


class PaymentVerificationError(TenderlyError):
    kind = "payment_verification_failed"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class PaymentExpiredError(TenderlyError):
    kind = "payment_expired"
    status_code = status.HTTP_410_GONE


class InvalidSignatureError(TenderlyError):
    kind = "invalid_signature"
    status_code = status.HTTP_400_BAD_REQUEST


class IncompleteDataError(TenderlyError):
    kind = "incomplete_data"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFoundError(TenderlyError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class PermissionDeniedError(TenderlyError):
    kind = "permission_denied"
    status_code = status.HTTP_403_FORBIDDEN


class ExternalServiceError(TenderlyError):
    """An upstream collaborator (AI service, payment gateway) failed."""

    kind = "external_service_error"
    status_code = status.HTTP_502_BAD_GATEWAY

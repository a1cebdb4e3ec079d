"""
Errors rendered as RFC 9457 Problem Details.

https://tools.ietf.org/rfc/rfc9457.txt

Every problem document carries a machine-readable ``code`` next to the
standard members. Clients branch on the code; the title and detail are for
people.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

PROBLEM_TYPE_BASE = "https://retreats.example.com/problems/"


class ProblemDetailsException(HTTPException):
    """
    Base class for every error the API returns as a problem document.

    Subclasses fix ``status``, ``title`` and a default ``code``; the problem
    ``type`` URI is derived from the code. Keyword arguments left over become
    extension members, with ``None`` values dropped.
    """

    status: int = 500
    title: str = "Internal Server Error"
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        detail: Optional[str] = None,
        code: Optional[str] = None,
        instance: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **extensions: Any,
    ):
        self.code = code or self.code
        self.type_uri = PROBLEM_TYPE_BASE + self.code.lower().replace("_", "-")
        self.instance = instance
        self.extensions = {key: value for key, value in extensions.items() if value is not None}

        self.problem_details: Dict[str, Any] = {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status,
            "code": self.code,
        }
        if detail:
            self.problem_details["detail"] = detail
        if instance:
            self.problem_details["instance"] = instance
        self.problem_details.update(self.extensions)

        super().__init__(status_code=self.status, detail=self.problem_details, headers=headers)


class ValidationError(ProblemDetailsException):
    """Input that parsed but does not make sense together."""

    status = 400
    title = "Validation Error"
    code = "VALIDATION_ERROR"


class AuthenticationError(ProblemDetailsException):
    status = 401
    title = "Authentication Required"
    code = "AUTHENTICATION_REQUIRED"

    def __init__(self, detail: str = "Authentication credentials are required"):
        super().__init__(detail=detail, headers={"WWW-Authenticate": "Bearer"})


class AuthorizationError(ProblemDetailsException):
    status = 403
    title = "Access Forbidden"
    code = "FORBIDDEN"


class NotFoundError(ProblemDetailsException):
    status = 404
    title = "Resource Not Found"
    code = "NOT_FOUND"

    def __init__(self, resource_type: str, resource_id: Optional[str] = None):
        detail = f"The requested {resource_type} could not be found"
        if resource_id:
            detail = f"The requested {resource_type} '{resource_id}' could not be found"
        super().__init__(detail=detail, resource_type=resource_type, resource_id=resource_id)


class ConflictError(ProblemDetailsException):
    """The row changed underneath the request; re-reading and retrying may succeed."""

    status = 409
    title = "Resource Conflict"
    code = "CONFLICT"


class CapacityConflictError(ConflictError):
    """
    A room no longer has enough available places.

    This is the one failure callers are expected to branch on: retry with a
    different room, leave the booking unassigned, or show "sold out".
    """

    title = "Capacity Conflict"
    code = "CAPACITY_CONFLICT"

    def __init__(self, room_id: str, requested: int):
        super().__init__(
            detail=f"Room {room_id} does not have {requested} place(s) available",
            retryable=False,
            room_id=room_id,
            requested=requested,
        )


class BusinessRuleError(ProblemDetailsException):
    """A request that is well-formed but not allowed in the current state."""

    status = 422
    title = "Business Rule Violation"
    code = "BUSINESS_RULE_VIOLATION"

    def __init__(self, detail: str, code: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(detail=detail, code=code, hint=hint)


class InvalidTransitionError(BusinessRuleError):
    """A status change that is not an edge of the entity's transition table."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            detail=f"Cannot change {entity} status from '{current}' to '{target}'",
            code="INVALID_TRANSITION",
        )
        self.entity = entity
        self.current = current
        self.target = target


class OfferExpiredError(ProblemDetailsException):
    status = 410
    title = "Offer Expired"
    code = "OFFER_EXPIRED"

    def __init__(self, entry_id: str, expired_at: datetime):
        super().__init__(
            detail="This waitlist offer has expired",
            entry_id=entry_id,
            expired_at=expired_at.isoformat() + "Z",
        )


class PaymentFailedError(ProblemDetailsException):
    """A synchronous charge at checkout was declined."""

    status = 402
    title = "Payment Failed"
    code = "PAYMENT_FAILED"

    def __init__(self, detail: str, booking_id: Optional[str] = None):
        super().__init__(detail=detail, retryable=True, booking_id=booking_id)


class UpstreamServiceError(ProblemDetailsException):
    """The payment gateway failed a request made on the caller's behalf."""

    status = 502
    title = "Bad Gateway"
    code = "UPSTREAM_ERROR"

    def __init__(self, detail: str):
        super().__init__(detail=detail, retryable=True)


async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.problem_details,
        headers=exc.headers,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log an unhandled exception under a fresh error id and answer with a bare 500 problem."""
    error_id = str(uuid.uuid4())

    logger.error(
        "Unhandled exception",
        exc_info=exc,
        extra={"error_id": error_id, "path": request.url.path},
    )

    problem = ProblemDetailsException(
        detail="An unexpected error occurred while processing the request",
        instance=str(request.url),
        error_id=error_id,
        timestamp=datetime.utcnow().isoformat() + "Z",
    )
    return JSONResponse(status_code=problem.status_code, content=problem.problem_details)

"""
tourney/errors.py
Engine error taxonomy.

Every error raised by the engine is an EngineError subclass carrying a
machine-readable code and the HTTP status the API layer renders it with.

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}

HTTP STATUS CODE DISCIPLINE:
- 400: ValidationError, malformed input, nothing was mutated
- 403: PolicyError, caller may not perform the action
- 404: NotFoundError
- 409: StaleStateError, a concurrent transition won the race
- 500: IntegrityError, bracket corruption, needs manual intervention
"""

import logging
from typing import Optional, Dict, Any

from fastapi import status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_PRIZE_TABLE = "INVALID_PRIZE_TABLE"
    INSUFFICIENT_PARTICIPANTS = "INSUFFICIENT_PARTICIPANTS"
    INVALID_SCORE = "INVALID_SCORE"

    POLICY_VIOLATION = "POLICY_VIOLATION"
    NOT_A_PARTICIPANT = "NOT_A_PARTICIPANT"
    ADMIN_REQUIRED = "ADMIN_REQUIRED"
    ALREADY_JOINED = "ALREADY_JOINED"
    TOURNAMENT_FULL = "TOURNAMENT_FULL"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"

    NOT_FOUND = "NOT_FOUND"

    STALE_STATE = "STALE_STATE"
    STATE_TRANSITION_INVALID = "STATE_TRANSITION_INVALID"

    BRACKET_INTEGRITY = "BRACKET_INTEGRITY"


class EngineError(Exception):
    """Base engine exception with consistent structure"""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Engine Error"
    default_code = ErrorCode.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse"""
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class ValidationError(EngineError):
    """400 - malformed input, rejected before any mutation"""
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Validation Error"
    default_code = ErrorCode.VALIDATION_ERROR


class PolicyError(EngineError):
    """403 - the caller is not allowed to do this, no state change"""
    status_code = status.HTTP_403_FORBIDDEN
    error = "Policy Error"
    default_code = ErrorCode.POLICY_VIOLATION


class NotFoundError(EngineError):
    """404 - resource does not exist"""
    status_code = status.HTTP_404_NOT_FOUND
    error = "Not Found"
    default_code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(message, details={"resource": resource, "id": identifier})


class StaleStateError(EngineError):
    """409 - a concurrent transition already moved the row"""
    status_code = status.HTTP_409_CONFLICT
    error = "Stale State"
    default_code = ErrorCode.STALE_STATE


class IntegrityError(EngineError):
    """500 - impossible bracket topology; never corrected silently"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Integrity Error"
    default_code = ErrorCode.BRACKET_INTEGRITY

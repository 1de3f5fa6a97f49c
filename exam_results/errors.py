"""
exam_results/errors.py
Centralized Error Handling

CORE PRINCIPLES:
- Every failure the engine surfaces carries the record and precondition involved
- Errors are user-safe (no stack traces)
- Errors are machine-readable

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}

HTTP STATUS CODE DISCIPLINE:
- 400: Invalid input / precondition not met
- 401: Authentication missing or expired
- 403: Caller lacks the required role or ownership
- 404: Resource does not exist
- 422: Validation error (Pydantic)
- 500: Required write failed
- 502: External evaluator failed or timed out
"""

import logging
from typing import Optional, Dict, Any
from fastapi import status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_FIELD = "MISSING_FIELD"
    SCORE_OUT_OF_RANGE = "SCORE_OUT_OF_RANGE"
    CONTEXT_MISMATCH = "CONTEXT_MISMATCH"
    INVALID_STATE = "INVALID_STATE"

    AUTH_REQUIRED = "AUTH_REQUIRED"
    FORBIDDEN = "FORBIDDEN"
    OWNERSHIP_VIOLATION = "OWNERSHIP_VIOLATION"

    NOT_FOUND = "NOT_FOUND"
    ATTEMPT_NOT_FOUND = "ATTEMPT_NOT_FOUND"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SCORE_NOT_FOUND = "SCORE_NOT_FOUND"
    RESPONSE_NOT_FOUND = "RESPONSE_NOT_FOUND"
    QUESTION_NOT_FOUND = "QUESTION_NOT_FOUND"

    EVALUATION_FAILED = "EVALUATION_FAILED"
    EVALUATION_TIMEOUT = "EVALUATION_TIMEOUT"

    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Standard error response model"""
    success: bool = False
    error: str
    message: str
    code: str
    details: Optional[Dict[str, Any]] = None


class APIError(Exception):
    """Base API exception with consistent structure"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse"""
        return JSONResponse(status_code=self.status_code, content=self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(APIError):
    """400 Bad Request - Missing identifiers, out-of-range scores, unmet preconditions"""
    def __init__(self, message: str, code: str = ErrorCode.VALIDATION_ERROR, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Validation Error",
            message=message,
            code=code,
            details=details
        )


class UnauthorizedError(APIError):
    """401 Unauthorized - Authentication required"""
    def __init__(self, message: str = "Authentication required", code: str = ErrorCode.AUTH_REQUIRED):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="Unauthorized",
            message=message,
            code=code
        )


class AuthorizationError(APIError):
    """403 Forbidden - Caller lacks the required role"""
    def __init__(self, message: str, code: str = ErrorCode.FORBIDDEN, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error="Forbidden",
            message=message,
            code=code,
            details=details
        )


class NotFoundError(APIError):
    """404 Not Found - Resource does not exist"""
    def __init__(self, resource: str, identifier: Any = None, code: str = ErrorCode.NOT_FOUND,
                 details: Optional[Dict] = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="Not Found",
            message=message,
            code=code,
            details=details
        )


class ExternalServiceError(APIError):
    """502 Bad Gateway - Evaluator call failed. Recoverable per item."""
    def __init__(self, message: str, code: str = ErrorCode.EVALUATION_FAILED, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            error="External Service Error",
            message=message,
            code=code,
            details=details
        )


class PersistenceError(APIError):
    """500 Internal Server Error - A required write failed"""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="Persistence Error",
            message=message,
            code=ErrorCode.PERSISTENCE_ERROR,
            details=details
        )


def require_field(value: Any, field_name: str):
    """Raise ValidationError when a required identifier is missing"""
    if value is None or (isinstance(value, str) and value.strip() == ""):
        raise ValidationError(
            f"{field_name} is required",
            code=ErrorCode.MISSING_FIELD,
            details={"field": field_name}
        )

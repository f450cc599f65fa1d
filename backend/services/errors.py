"""Error taxonomy for the chat relay.

Every error raised across a service boundary is a ChatServiceError carrying
a stable code, an error type and the HTTP status the API layer responds with.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ErrorDetail:
    """Structured error payload returned to callers."""
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


class ChatServiceError(Exception):
    """Base class for classified chat relay errors."""

    code = "INTERNAL_ERROR"
    error_type = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.error = ErrorDetail(
            code=self.code,
            message=message,
            details=dict(details or {})
        )
        super().__init__(message)

    @property
    def message(self) -> str:
        return self.error.message

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for JSON responses and in-band stream errors."""
        return {
            "type": self.error_type,
            "code": self.error.code,
            "message": self.error.message,
            "details": self.error.details,
        }


class ValidationError(ChatServiceError):
    """Malformed caller input. Never reaches the backend."""

    code = "VALIDATION_ERROR"
    error_type = "validation_error"
    status_code = 400

    EMPTY_INPUT = "empty_input"
    INVALID_ROLE = "invalid_role"
    EMPTY_CONTENT = "empty_content"
    NOT_USER_TERMINATED = "not_user_terminated"
    MALFORMED_INPUT = "malformed_input"

    def __init__(self, message: str, reason: str, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        merged = {"reason": reason}
        merged.update(details or {})
        super().__init__(message, merged)


class BackendError(ChatServiceError):
    """Generic failure of the LLM backend."""

    code = "API_ERROR"
    error_type = "llm_error"
    status_code = 502


class BackendAuthError(BackendError):
    code = "AUTHENTICATION_ERROR"
    error_type = "unauthorized_error"
    status_code = 401


class BackendRateLimitError(BackendError):
    code = "RATE_LIMIT_ERROR"
    error_type = "rate_limit_error"
    status_code = 429


class BackendTimeoutError(BackendError):
    code = "TIMEOUT_ERROR"
    error_type = "timeout_error"
    status_code = 504


class BackendProtocolError(BackendError):
    """Malformed or empty backend response."""

    code = "PROTOCOL_ERROR"
    error_type = "llm_error"
    status_code = 502


class InternalError(ChatServiceError):
    """Serialization or unexpected local failure."""

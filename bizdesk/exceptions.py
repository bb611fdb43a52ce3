"""
Custom exception classes for bizdesk.

Provides specific exceptions for the backend API client, session handling,
permission checks and the real-time transport.
"""

from typing import Any, Dict, List, Optional


class BizDeskException(Exception):
    """
    Base exception for bizdesk.

    ``message`` is safe to show to an agent; ``details`` holds log-only
    context such as the endpoint or the backend's error code.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NotAuthenticatedException(BizDeskException):
    """Raised when an authenticated call is made without a usable token."""

    def __init__(
        self,
        message: str = "You are not logged in. Please sign in and try again.",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)


class PermissionDeniedException(BizDeskException):
    """
    Raised when the current user lacks the permissions an operation needs.

    Attributes:
        permissions: Permission keys that were required
        require_all: Whether every key was required or any one sufficed
    """

    def __init__(
        self,
        permissions: List[str],
        require_all: bool = False,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.permissions = list(permissions)
        self.require_all = require_all
        joiner = " and " if require_all else " or "
        default_message = (
            "You do not have permission to perform this action "
            f"(requires {joiner.join(self.permissions)})"
        )
        super().__init__(message or default_message, details)


class ApiException(BizDeskException):
    """
    Error returned by the backend API.

    Attributes:
        status_code: HTTP status code if applicable
        response: Decoded response body if one was received
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.status_code = status_code
        self.response = response
        super().__init__(message, details)


class ApiValidationException(ApiException):
    """
    Backend validation failure carrying per-field error messages.

    Attributes:
        errors: Mapping of field name to its error messages
    """

    def __init__(
        self,
        message: str,
        errors: Optional[Dict[str, List[str]]] = None,
        status_code: Optional[int] = None,
        response: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.errors = errors or {}
        super().__init__(message, status_code=status_code, response=response)


class TransientDatabaseException(ApiException):
    """
    Backend failure caused by its database layer that may succeed on retry.

    Attributes:
        kind: One of ``prepared_statement``, ``transaction`` or ``type``
    """

    FRIENDLY_MESSAGES = {
        "prepared_statement": (
            "A database error occurred. Please refresh the page or contact "
            "support if this continues."
        ),
        "transaction": (
            "A database transaction error occurred. Please try again or "
            "contact support."
        ),
        "type": (
            "A database type error occurred. Please check your input or "
            "contact support."
        ),
    }

    def __init__(
        self,
        kind: str,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.kind = kind
        super().__init__(message, status_code=status_code, response=response)

    @property
    def friendly_message(self) -> str:
        """User-facing message for this kind of database failure."""
        return self.FRIENDLY_MESSAGES.get(self.kind, self.message)


class NonJsonResponseException(ApiException):
    """Raised when the backend answers with something other than JSON."""


class ServiceUnavailableException(BizDeskException):
    """The backend (or another upstream) could not be reached at all."""

    def __init__(
        self,
        service_name: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.service_name = service_name
        super().__init__(message or f"Could not reach {service_name}", details)


class RealtimeException(BizDeskException):
    """Real-time transport failure (connection, protocol or channel auth)."""


class ValidationException(BizDeskException):
    """
    Invalid input to a local operation, such as a table page size or an
    unknown column id.

    Attributes:
        field_name: Name of the offending argument
        value: The rejected value
        reason: Why it was rejected
    """

    def __init__(
        self,
        field_name: str,
        value: Any,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.field_name = field_name
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field_name} {value!r}: {reason}", details)

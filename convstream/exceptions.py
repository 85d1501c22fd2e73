"""
convstream - Exceptions

This module contains all custom exceptions raised by the conversation
protocol layer and its REST collaborator.
"""

from typing import Optional, Dict, Any


class ConvStreamError(Exception):
    """
    Base exception for all convstream errors.

    Attributes:
        message: Human-readable error message
        code: Error code if available
        details: Additional error details
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message='{self.message}', code='{self.code}')"


class ConnectionError(ConvStreamError):
    """
    Raised when the connection to the conversation endpoint is lost.

    This occurs when:
    - A caller waiting in ``get_connected_socket()`` is abandoned by ``disconnect()``
    - The transport reports a connect error (surfaced to status observers)
    """

    def __init__(self, message: str = "Connection failed", cause: Optional[BaseException] = None) -> None:
        super().__init__(message, code="CONNECTION_ERROR")
        self.cause = cause


class AuthenticationError(ConvStreamError):
    """
    Raised when authentication fails.

    This can occur when:
    - No token provider is configured
    - The token provider returns an empty credential
    - The REST collaborator answers 401
    """

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message, code="AUTHENTICATION_ERROR")


class ProtocolStateError(ConvStreamError):
    """
    Raised when an operation conflicts with the state of a conversation node.

    Examples are sending a chunk on an ended content part, routing an event
    to an identifier that does not exist, or rating an exchange twice.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="INVALID_OPERATION", details=details)


class ProtocolValidationError(ConvStreamError):
    """
    Raised when an envelope does not match the wire format.

    Attributes:
        errors: Field errors reported by the payload model, if any
    """

    def __init__(
        self,
        message: str = "Invalid envelope",
        errors: Optional[list] = None,
    ) -> None:
        super().__init__(message, code="VALIDATION_ERROR")
        self.errors = errors or []


class UnhandledConversationError(ConvStreamError):
    """
    Raised when an application error reaches no handler at all.

    Attributes:
        conversation_id: Conversation the error belongs to
        error_id: Identifier carried by the error event
    """

    def __init__(
        self,
        conversation_id: str,
        error_id: str,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        text = f"Unhandled error {error_id} in conversation {conversation_id}"
        if message:
            text = f"{text}: {message}"
        super().__init__(text, code="UNHANDLED_ERROR", details=details)
        self.conversation_id = conversation_id
        self.error_id = error_id


class APIError(ConvStreamError):
    """
    Raised when the REST collaborator returns an error response.

    Attributes:
        status_code: HTTP status code
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code="API_ERROR", details=details)
        self.status_code = status_code


class NotFoundError(APIError):
    """Raised when a conversation, exchange or message does not exist."""

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message, status_code=404)
        self.code = "NOT_FOUND"


class ConflictError(APIError):
    """Raised when the server rejects a request because of existing state."""

    def __init__(self, message: str = "Resource conflict") -> None:
        super().__init__(message, status_code=409)
        self.code = "CONFLICT"

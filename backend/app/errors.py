"""Error taxonomy for the Chatline backend.

Every service-level failure derives from ChatlineError and carries the HTTP
status code the routers should answer with. Lower-level faults (DuckDB, blob
storage, model providers) are wrapped with the operation and entity id so they
can be logged without retry logic living in the core services.

    ClientError                 400  bad input
    UnauthorizedError           401  caller is not the owner / not signed in
    NotFoundError               404  unknown conversation, turn or attachment
    ModelNotFoundError          404  unknown model id
    AttachmentValidationError   400  size / content type / extension rejected
    AttachmentActivationError   400  one or more attachment refs not activatable
    InvalidTransitionError      409  forbidden attachment status change
    ProviderFault               502  model stream or completion failed
    StoreFault                  500  persistence or blob operation failed
"""
from typing import List, Optional

from fastapi import HTTPException


class ChatlineError(Exception):
    """Base exception for all Chatline service errors."""

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ClientError(ChatlineError):
    """Raised for malformed or semantically invalid requests."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message, status_code=status_code)


class UnauthorizedError(ClientError):
    """Raised when the caller may not act on the requested resource."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, status_code=401)


class NotFoundError(ClientError):
    """Raised when a conversation, turn or attachment does not exist."""

    def __init__(self, message: str = "Not Found"):
        super().__init__(message, status_code=404)


class ModelNotFoundError(NotFoundError):
    """Raised when a model id is not in the configured registry."""

    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Model not found: {model_id}")


class AttachmentValidationError(ClientError):
    """Raised when an upload fails size, content type or extension checks."""

    def __init__(self, reason: str, sanitized_name: str):
        self.reason = reason
        self.sanitized_name = sanitized_name
        super().__init__(f"{reason} ({sanitized_name})")


class AttachmentActivationError(ClientError):
    """Raised when at least one attachment in a batch could not be activated."""

    def __init__(self, invalid_ids: List[str]):
        self.invalid_ids = list(invalid_ids)
        super().__init__(
            f"Attachments could not be activated: {', '.join(self.invalid_ids)}"
        )


class InvalidTransitionError(ClientError):
    """Raised when an attachment status change is not allowed."""

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(
            f"Invalid status transition from {source} to {target}",
            status_code=409,
        )


class ProviderFault(ChatlineError):
    """Raised when the model provider fails or times out."""

    def __init__(self, message: str, provider_name: Optional[str] = None):
        self.provider_name = provider_name
        prefix = f"Provider {provider_name} error: " if provider_name else ""
        super().__init__(f"{prefix}{message}", status_code=502)


class StoreFault(ChatlineError):
    """Raised when a persistence or blob operation fails."""

    def __init__(self, operation: str, entity_id: Optional[str], cause: Exception):
        self.operation = operation
        self.entity_id = entity_id
        self.cause = cause
        super().__init__(
            f"{operation} failed for {entity_id or '<none>'}: {cause}",
            status_code=500,
        )


def to_http_exception(error: ChatlineError) -> HTTPException:
    """Convert a ChatlineError to an HTTPException.

    Args:
        error: The ChatlineError to convert.

    Returns:
        HTTPException with the error's status code and message.
    """
    if isinstance(error, StoreFault):
        # Store internals are logged, not echoed to the caller.
        return HTTPException(
            status_code=error.status_code,
            detail="An error occurred while processing your request",
        )
    return HTTPException(status_code=error.status_code, detail=error.message)

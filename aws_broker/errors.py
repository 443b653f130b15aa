"""Exception hierarchy shared by the broker services."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ResponseStatus(str, Enum):
    """Caller-facing status classes returned by every broker operation."""

    ACCEPTED = "accepted"
    SUCCESS = "success"
    CLIENT_ERROR = "client_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    SERVER_ERROR = "server_error"


class BrokerError(Exception):
    """Base class for errors raised by the broker."""

    response_status = ResponseStatus.SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(BrokerError):
    """Request options are invalid for the selected plan."""

    response_status = ResponseStatus.CLIENT_ERROR


class ConflictError(BrokerError):
    """Duplicate identifier or an operation already in flight."""

    response_status = ResponseStatus.CONFLICT


class NotFoundError(BrokerError):
    """Unknown instance or plan identifier."""

    response_status = ResponseStatus.NOT_FOUND


class ProviderErrorKind(str, Enum):
    INVALID_PARAMETERS = "InvalidParameters"
    QUOTA_EXCEEDED = "QuotaExceeded"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"


class ProviderError(BrokerError):
    """A cloud provider call failed."""

    def __init__(self, kind: ProviderErrorKind, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code

    @property
    def response_status(self) -> ResponseStatus:  # type: ignore[override]
        if self.kind is ProviderErrorKind.PROVIDER_UNAVAILABLE:
            return ResponseStatus.SERVER_ERROR
        if self.kind is ProviderErrorKind.CONFLICT:
            return ResponseStatus.CONFLICT
        return ResponseStatus.CLIENT_ERROR

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class EncryptionError(BrokerError):
    """Credential encryption could not be performed."""


class DecryptionFailed(EncryptionError):
    """Ciphertext is malformed or was produced with another key."""


class InternalError(BrokerError):
    """Persistence or other internal failure."""


__all__ = [
    "ResponseStatus",
    "BrokerError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "ProviderErrorKind",
    "ProviderError",
    "EncryptionError",
    "DecryptionFailed",
    "InternalError",
]

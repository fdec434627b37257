"""Error taxonomy for the capture-validate-upload-merge pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class IntakeError(Exception):
    """Base class for all errors raised by returns_intake."""


class ValidationError(IntakeError):
    """A form field or identifier failed its format policy."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


class CaptureError(IntakeError):
    """A photo could not be decoded or re-encoded; nothing was queued."""


class QueueError(IntakeError):
    pass


class UploadErrorKind(str, Enum):
    SIZE_EXCEEDED = "SizeExceeded"
    TYPE_NOT_ALLOWED = "TypeNotAllowed"
    CONTENT_MISMATCH = "ContentMismatch"
    TRANSPORT_FAILURE = "TransportFailure"


class UploadError(IntakeError):
    def __init__(self, kind: UploadErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"UploadError({self.kind.value}, {self.message!r})"


class StorageError(IntakeError):
    """The object-storage backend rejected or failed a request."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ObjectExistsError(StorageError):
    """The destination path is already occupied; uploads never overwrite."""


class ReconciliationErrorKind(str, Enum):
    LOOKUP_FAILED = "LookupFailed"
    PERMISSION_DENIED = "PermissionDenied"
    UNIQUENESS_CONFLICT = "UniquenessConflict"
    WRITE_FAILED = "WriteFailed"
    NOT_FOUND = "NotFound"


class ReconciliationError(IntakeError):
    def __init__(self, kind: ReconciliationErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def permission_denied(self) -> bool:
        return self.kind is ReconciliationErrorKind.PERMISSION_DENIED


GENERIC_MESSAGE = "An error occurred. Please try again."
PERMISSION_MESSAGE = "You do not have permission to perform this action. Please contact your administrator."
DUPLICATE_MESSAGE = "Invoice number already exists. Please check your input and try again."


def user_message(exc: BaseException) -> str:
    """Return a sentence that is safe to show to an operator."""
    if isinstance(exc, ValidationError):
        return exc.message
    if isinstance(exc, ReconciliationError):
        if exc.kind is ReconciliationErrorKind.PERMISSION_DENIED:
            return PERMISSION_MESSAGE
        if exc.kind is ReconciliationErrorKind.UNIQUENESS_CONFLICT:
            return DUPLICATE_MESSAGE
        if exc.kind is ReconciliationErrorKind.NOT_FOUND:
            return "No matching record found."
        if exc.kind is ReconciliationErrorKind.LOOKUP_FAILED:
            return "Failed to check for existing record. Please try again."
        return "Failed to save data. Please try again."
    if isinstance(exc, UploadError):
        if exc.kind is UploadErrorKind.TRANSPORT_FAILURE:
            return "Failed to upload file. Please try again."
        return exc.message
    if isinstance(exc, CaptureError):
        return "Failed to load image."
    text = str(exc).lower()
    if "network" in text or "connect" in text:
        return "Network error. Please check your connection and try again."
    if "permission" in text or "readonly" in text:
        return PERMISSION_MESSAGE
    return GENERIC_MESSAGE

"""Exceptions raised by the upload pipeline.

Every ``UploadError`` carries the HTTP status and the message shown to the
client. Detail about the underlying cause is logged, never returned.
"""
from typing import Optional


class UploadError(Exception):
    """Base class for failures that end an upload request."""

    status_code = 500
    message = "File upload error"

    def __init__(self, message: Optional[str] = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class AuthorizationError(UploadError):
    """Upload token is unknown, expired or already used."""

    status_code = 400
    message = "Invalid upload token"


class MissingIdentityError(UploadError):
    """A consumed token reached storage without an owner."""

    status_code = 400
    message = "Upload token has no associated user"


class ProtocolViolation(UploadError):
    """Request body is not a single file in the ``file`` field."""

    status_code = 400
    message = "Expected a single file in the 'file' field"


class FileTooLargeError(UploadError):
    status_code = 413
    message = "File too large"


class StorageFailure(UploadError):
    """Directory creation, write or transcode failure."""


class UnsafePathError(ValueError):
    """A joined path would leave the upload root."""

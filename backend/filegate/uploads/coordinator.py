"""Upload request pipeline.

One ``UploadPipeline`` is created per ``POST /uploads/new/{token}`` request
and walks through:

    AWAITING_TOKEN -> TOKEN_CONSUMED -> STORAGE_IN_PROGRESS -> RESPONDED

Any stage may end in FAILED. The owner identity travels in an explicit
``UploadContext`` value rather than on the request object, and nothing in
the pipeline is retried: a failed upload starts over with a new token.
"""
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterable, Mapping, Optional, Union

from starlette.types import Message, Receive

from .errors import (
    AuthorizationError,
    FileTooLargeError,
    MissingIdentityError,
    ProtocolViolation,
    StorageFailure,
    UnsafePathError,
    UploadError,
)
from .paths import owner_directory
from .schemas import UploadResponse
from .storage import StorageEngine, StoredFile, iter_chunks
from .tokens import TokenStore

logger = logging.getLogger(__name__)

# Name of the multipart field carrying the file
UPLOAD_FIELD = "file"

# Room allowed for multipart boundaries and part headers on top of the
# file itself when limiting the request body
MULTIPART_ENVELOPE_ALLOWANCE = 64 * 1024


class UploadState(str, Enum):
    AWAITING_TOKEN = "awaiting_token"
    TOKEN_CONSUMED = "token_consumed"
    STORAGE_IN_PROGRESS = "storage_in_progress"
    RESPONDED = "responded"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadContext:
    token: str
    owner: Optional[str]


@dataclass(frozen=True)
class IncomingFile:
    filename: str
    chunks: AsyncIterable[bytes]


class UploadPipeline:
    """State machine for a single upload request."""

    def __init__(self, coordinator: "UploadCoordinator", token: str) -> None:
        self._coordinator = coordinator
        self.token = token
        self.state = UploadState.AWAITING_TOKEN
        self.context: Optional[UploadContext] = None

    def _advance(self, state: UploadState) -> None:
        logger.debug("Upload pipeline %s -> %s", self.state.value, state.value)
        self.state = state

    def fail(self, error: UploadError) -> UploadError:
        """Mark the pipeline failed and hand back *error* for raising."""
        self._advance(UploadState.FAILED)
        return error

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def authorize(self) -> UploadContext:
        """Consume the token and bind its owner to the upload."""
        owner = self._coordinator.tokens.consume(self.token)
        if owner is None:
            logger.warning("Rejected upload with invalid token")
            raise self.fail(AuthorizationError())

        self.context = UploadContext(token=self.token, owner=owner)
        self._advance(UploadState.TOKEN_CONSUMED)
        return self.context

    def _body_limit(self) -> Optional[int]:
        limit = self._coordinator.storage.max_size_bytes
        if limit is None:
            return None
        return limit + MULTIPART_ENVELOPE_ALLOWANCE

    def check_declared_size(self, content_length: Optional[str]) -> None:
        """Reject bodies whose declared length can only exceed the limit."""
        limit = self._body_limit()
        if limit is None or not content_length:
            return
        try:
            declared = int(content_length)
        except ValueError:
            raise self.fail(ProtocolViolation("Invalid Content-Length header"))
        if declared > limit:
            raise self.fail(FileTooLargeError())

    def limit_body(self, receive: Receive) -> Receive:
        """Wrap an ASGI *receive* so reading stops once the body outgrows the limit.

        Covers chunked requests, which carry no Content-Length to check
        up front.
        """
        limit = self._body_limit()
        if limit is None:
            return receive

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    logger.warning("Upload body exceeded %d bytes, aborting", limit)
                    raise self.fail(FileTooLargeError())
            return message

        return limited_receive

    def accept(self, form: Mapping[str, Any]) -> IncomingFile:
        """Pick the single uploaded file out of a parsed multipart *form*."""
        upload = form.get(UPLOAD_FIELD)
        if len(form) != 1 or upload is None or isinstance(upload, str):
            raise self.fail(ProtocolViolation())

        chunk_size = self._coordinator.storage.chunk_size
        return IncomingFile(
            filename=upload.filename or "",
            chunks=iter_chunks(upload, chunk_size),
        )

    async def store(self, incoming: IncomingFile) -> StoredFile:
        """Stream *incoming* into the owner's directory."""
        if self.context is None or not self.context.owner:
            raise self.fail(MissingIdentityError())

        owner = self.context.owner
        try:
            directory = owner_directory(self._coordinator.upload_root, owner)
        except UnsafePathError as e:
            logger.error("File upload error: no safe directory for %r: %s", owner, e)
            raise self.fail(StorageFailure())

        self._advance(UploadState.STORAGE_IN_PROGRESS)
        try:
            return await self._coordinator.storage.store(incoming.chunks, incoming.filename, directory)
        except UploadError as e:
            raise self.fail(e)

    def respond(self, stored: StoredFile) -> UploadResponse:
        """Build the logical URL of *stored*."""
        try:
            relative = stored.path.relative_to(self._coordinator.upload_root)
        except ValueError:
            logger.error("File upload error: %s is outside the upload root", stored.path)
            self._coordinator.storage.rollback(stored)
            raise self.fail(StorageFailure())

        relative_path = relative.as_posix()
        logger.info("File upload by %s: %s", self.context.owner, relative_path)

        self._advance(UploadState.RESPONDED)
        return UploadResponse(url=f"uploads/{relative_path}")


class UploadCoordinator:
    """Glues the token store and storage engine into upload pipelines."""

    def __init__(
        self,
        tokens: TokenStore,
        storage: StorageEngine,
        upload_root: Union[str, Path],
    ) -> None:
        self.tokens = tokens
        self.storage = storage
        self.upload_root = Path(os.path.abspath(upload_root))

    def begin(self, token: str) -> UploadPipeline:
        return UploadPipeline(self, token)

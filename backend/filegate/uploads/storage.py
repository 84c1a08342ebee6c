"""Disk storage engine for uploaded files.

Handles directory creation, destination naming and the streaming write,
including inline transcoding for configured extensions. Files are stored
in: {upload_root}/{owner}/{random id}{ext}

The engine is independent of the HTTP layer: it consumes an async iterable
of byte chunks, so anything from a Starlette ``UploadFile`` to a test list
can feed it.
"""
import asyncio
import logging
import secrets
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, AsyncIterable, AsyncIterator, BinaryIO, Mapping, Optional, Tuple

from .errors import FileTooLargeError, StorageFailure
from .transcode import TRANSCODE_ERRORS, TRANSCODERS, Transcoder

logger = logging.getLogger(__name__)

# Chunk size used when reading from the request body
CHUNK_SIZE = 1024 * 1024

# Transcoded uploads are spooled in memory up to this size, then on disk
SPOOL_MAX_MEMORY = 4 * 1024 * 1024

# Length in characters of the random part of stored filenames
GENERATED_ID_LENGTH = 16


@dataclass(frozen=True)
class StoredFile:
    path: Path
    owner_directory: Path
    generated_name: str
    size_bytes: int


def _generate_id() -> str:
    return secrets.token_urlsafe(GENERATED_ID_LENGTH)[:GENERATED_ID_LENGTH]


async def iter_chunks(reader: Any, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Yield chunks from an object with an async ``read(size)`` until EOF."""
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        yield chunk


def original_extension(filename: str) -> str:
    """Extension of the basename of a client-declared *filename*."""
    # Browsers on Windows may still send full paths
    name = PureWindowsPath(PurePosixPath(filename or "").name).name
    return PurePosixPath(name).suffix


class StorageEngine:
    """Streams uploads to disk, transcoding where a rule applies.

    Attributes:
        transcode_rules: Lower-case source extension -> output extension.
        max_size_bytes: Upload size limit on incoming bytes, None for no limit.
    """

    def __init__(
        self,
        transcode_rules: Optional[Mapping[str, str]] = None,
        max_size_bytes: Optional[int] = None,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.transcode_rules = {k.lower(): v.lower() for k, v in (transcode_rules or {}).items()}
        self.max_size_bytes = max_size_bytes
        self.chunk_size = chunk_size

        unknown = set(self.transcode_rules.values()) - set(TRANSCODERS)
        if unknown:
            raise ValueError(f"No transcoder for output extension(s): {sorted(unknown)}")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def resolve_destination(self, directory: Path) -> Path:
        """Create *directory* (recursively) before any byte is accepted."""
        try:
            await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            logger.error("File upload error: cannot create %s: %s", directory, e)
            raise StorageFailure() from e
        return directory

    def resolve_name(self, original_filename: str) -> Tuple[str, Optional[Transcoder]]:
        """Pick the stored filename and the transcoder to interpose, if any."""
        generated = _generate_id()
        ext = original_extension(original_filename)

        target_ext = self.transcode_rules.get(ext.lower())
        if target_ext is not None:
            return generated + target_ext, TRANSCODERS[target_ext]

        return generated + ext, None

    async def write_stream(
        self,
        chunks: AsyncIterable[bytes],
        destination: Path,
        transcoder: Optional[Transcoder] = None,
    ) -> int:
        """Write *chunks* to *destination* and return the size on disk.

        Raises:
            FileTooLargeError: incoming bytes exceeded ``max_size_bytes``.
            StorageFailure: the write or the transcode failed.
        """
        try:
            if transcoder is None:
                await self._write_plain(chunks, destination)
            else:
                await self._write_transcoded(chunks, destination, transcoder)
            stat_result = await asyncio.to_thread(destination.stat)
            return stat_result.st_size
        except FileTooLargeError:
            await asyncio.to_thread(self._discard, destination)
            raise
        except FileExistsError as e:
            logger.error("File upload error: %s already exists", destination.name)
            raise StorageFailure() from e
        except TRANSCODE_ERRORS as e:
            logger.error("File upload error: writing %s failed: %s", destination.name, e)
            await asyncio.to_thread(self._discard, destination)
            raise StorageFailure() from e

    async def store(
        self,
        chunks: AsyncIterable[bytes],
        original_filename: str,
        directory: Path,
    ) -> StoredFile:
        """Run all stages: directory, name, write."""
        await self.resolve_destination(directory)
        name, transcoder = self.resolve_name(original_filename)
        destination = directory / name

        size = await self.write_stream(chunks, destination, transcoder)
        logger.info("Saved file: %s (%d bytes)", destination, size)
        return StoredFile(
            path=destination,
            owner_directory=directory,
            generated_name=name,
            size_bytes=size,
        )

    def rollback(self, stored: StoredFile) -> None:
        """Delete a stored file after a later pipeline stage failed."""
        try:
            stored.path.unlink(missing_ok=True)
            logger.info("Rolled back stored file: %s", stored.path)
        except OSError as e:
            logger.error("Failed to roll back %s: %s", stored.path, e)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_size(self, total: int) -> None:
        if self.max_size_bytes is not None and total > self.max_size_bytes:
            raise FileTooLargeError()

    async def _write_plain(self, chunks: AsyncIterable[bytes], destination: Path) -> None:
        total = 0
        # "x" refuses to overwrite an existing upload
        fh = await asyncio.to_thread(destination.open, "xb")
        try:
            async for chunk in chunks:
                total += len(chunk)
                self._check_size(total)
                await asyncio.to_thread(fh.write, chunk)
        finally:
            await asyncio.to_thread(fh.close)

    async def _write_transcoded(
        self,
        chunks: AsyncIterable[bytes],
        destination: Path,
        transcoder: Transcoder,
    ) -> None:
        total = 0
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as spool:
            async for chunk in chunks:
                total += len(chunk)
                self._check_size(total)
                await asyncio.to_thread(spool.write, chunk)
            spool.seek(0)

            await asyncio.to_thread(self._transcode_to, spool, destination, transcoder)

    @staticmethod
    def _transcode_to(source: BinaryIO, destination: Path, transcoder: Transcoder) -> None:
        with destination.open("xb") as fh:
            transcoder(source, fh)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove partial upload %s: %s", path, e)

"""Retrieval resolver for stored uploads.

Maps a requested ``/uploads/{owner}/{file_id}`` reference to a file on disk
and decides how it is exposed:

1. Safe path resolution under the upload root.
2. Content sniffing with libmagic (python-magic) over the leading bytes.
3. Normalization of a few sniffed types to browser-friendly equivalents.
4. Content-Disposition from a fixed allow-list of inline-safe types.

The stored file's extension is chosen by the uploader and is never used
for response headers; only the sniffed content is.
"""
import asyncio
import codecs
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

import magic

from .errors import UnsafePathError
from .paths import resolve_path

logger = logging.getLogger(__name__)

# Number of leading bytes read for type detection
SNIFF_BYTES = 5120

TEXT_PLAIN = "text/plain"
OCTET_STREAM = "application/octet-stream"

# Normalized MIME types rendered in the browser, with the filename
# suggested when the request carries no slug. Anything else is
# served as an attachment.
INLINE_CONTENT_DISPOSITION_TYPES: Dict[str, str] = {
    "application/ogg": "media.ogx",
    "audio/flac": "audio.flac",
    "audio/midi": "audio.midi",
    "audio/mp4": "audio.m4a",
    "audio/mpeg": "audio.mp3",
    "audio/ogg": "audio.ogg",
    "audio/wav": "audio.wav",
    "image/avif": "image.avif",
    "image/bmp": "image.bmp",
    "image/gif": "image.gif",
    "image/jpeg": "image.jpg",
    "image/jxl": "image.jxl",
    "image/png": "image.png",
    "image/webp": "image.webp",
    "text/plain": "text.txt",
    "video/mp4": "video.mp4",
    "video/ogg": "video.ogv",
    "video/webm": "video.webm",
}

# libmagic results that do not identify a format; these fall through to
# the UTF-8 check like unmatched content.
_GENERIC_TYPES = frozenset({
    OCTET_STREAM,
    "application/x-empty",
    "inode/x-empty",
    "application/json",
    "application/javascript",
    "application/csv",
})

_magic = magic.Magic(mime=True)
_encoding_magic = magic.Magic(mime_encoding=True)

# libmagic also names text formats (mail, PostScript, NDJSON, armored
# keys). Only content it reads as binary counts as a signature.
BINARY_ENCODING = "binary"


@dataclass(frozen=True)
class ResolvedFile:
    path: Path
    media_type: str
    disposition_type: str
    filename: Optional[str] = None


def is_utf8(buffer: bytes, truncated: bool = False) -> bool:
    """True if *buffer* is valid UTF-8.

    With *truncated*, a multi-byte sequence cut off at the end of the
    buffer is accepted.
    """
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        decoder.decode(buffer, final=not truncated)
    except UnicodeDecodeError:
        return False
    return True


def detect_signature(buffer: bytes) -> Optional[str]:
    """MIME type of a binary format recognized in *buffer*, else None."""
    if not buffer:
        return None

    detected = _magic.from_buffer(buffer)
    if not detected or detected in _GENERIC_TYPES or detected.startswith("text/"):
        return None

    if _encoding_magic.from_buffer(buffer) != BINARY_ENCODING:
        return None
    return detected


def sniff_content_type(buffer: bytes, truncated: bool = False) -> str:
    """Detect the MIME type of *buffer* from its content alone."""
    detected = detect_signature(buffer)
    if detected is not None:
        return detected

    if is_utf8(buffer, truncated=truncated):
        return TEXT_PLAIN

    return OCTET_STREAM


def _read_head(path: Path) -> bytes:
    with path.open("rb") as fh:
        return fh.read(SNIFF_BYTES)


async def get_file_type(path: Path) -> Optional[str]:
    """Sniffed MIME type of the file at *path*, or None if it cannot be read."""
    try:
        buffer = await asyncio.to_thread(_read_head, path)
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("Failed to read %s: %s", path, e)
        return None

    return sniff_content_type(buffer, truncated=len(buffer) == SNIFF_BYTES)


class RetrievalResolver:
    """Resolves stored-file references into response decisions."""

    def __init__(
        self,
        upload_root: Union[str, Path],
        mime_remap: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.upload_root = Path(upload_root)
        self.mime_remap = dict(mime_remap or {})

    def normalize(self, media_type: str) -> str:
        return self.mime_remap.get(media_type, media_type)

    @staticmethod
    def disposition(media_type: str, slug: Optional[str] = None):
        """Return ``(disposition_type, filename)`` for a normalized type.

        The mode depends on *media_type* alone; a non-blank *slug* only
        replaces the suggested filename.
        """
        default_name = INLINE_CONTENT_DISPOSITION_TYPES.get(media_type)
        disposition_type = "inline" if default_name is not None else "attachment"

        filename = slug.strip() if slug else ""
        return disposition_type, filename or default_name

    async def resolve(
        self,
        owner: str,
        file_id: str,
        slug: Optional[str] = None,
    ) -> Optional[ResolvedFile]:
        """Resolve a request, or None for anything that must read as 404."""
        try:
            path = resolve_path(self.upload_root, owner, file_id)
        except UnsafePathError as e:
            logger.error("uploaded file access error: %s", e)
            return None

        detected = await get_file_type(path)
        if detected is None:
            return None

        media_type = self.normalize(detected)
        disposition_type, filename = self.disposition(media_type, slug)
        return ResolvedFile(
            path=path,
            media_type=media_type,
            disposition_type=disposition_type,
            filename=filename,
        )

"""Root-confined path joining for upload storage and retrieval."""
import os
from pathlib import Path
from typing import Union

from .errors import UnsafePathError


def resolve_path(root: Union[str, Path], *segments: str) -> Path:
    """Join *segments* onto *root*, refusing anything that leaves it.

    Segments are caller-controlled (identities, file ids), so they are
    checked before joining and the normalized result must be a strict
    descendant of the normalized root.

    Raises:
        UnsafePathError: on empty, absolute or NUL-containing segments, or
            when the joined path normalizes outside (or onto) the root.
    """
    root_path = Path(os.path.abspath(root))

    for segment in segments:
        if not segment or "\x00" in segment:
            raise UnsafePathError("malformed path segment")
        if os.path.isabs(segment) or Path(segment).drive:
            raise UnsafePathError("absolute path segment")

    candidate = Path(os.path.normpath(root_path.joinpath(*segments)))
    if root_path not in candidate.parents:
        raise UnsafePathError(f"path escapes upload root: {candidate}")
    return candidate


def owner_directory(root: Union[str, Path], identity: str) -> Path:
    """Directory holding the uploads of *identity*, one level below *root*."""
    if "/" in identity or "\\" in identity:
        raise UnsafePathError("identity contains a path separator")
    return resolve_path(root, identity)

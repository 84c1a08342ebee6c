"""File upload and retrieval module for Filegate.

Uploads are authorized by single-use tokens issued over a WebSocket session
and stored in per-owner directories under the upload root:
uploads/{owner}/{random id}{ext}

Retrieval never trusts the stored extension: the content type is sniffed
from the file, and only an allow-list of types is rendered inline.

HEIC uploads are re-encoded to JPEG while they are written.
"""

"""FastAPI router for upload and retrieval endpoints.

This module provides:
    - POST /uploads/new/{token}: single-file upload authorized by a session token
    - GET|HEAD /uploads/{owner}/{file_id}[/{slug}]: serve a stored file
"""
import logging
from email.utils import parsedate
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.datastructures import Headers
from starlette.staticfiles import NotModifiedResponse

from filegate.config import AppConfig, get_config

from .coordinator import UploadCoordinator
from .errors import ProtocolViolation
from .resolver import RetrievalResolver
from .schemas import ErrorResponse, UploadResponse
from .storage import StorageEngine
from .tokens import TokenStore, get_token_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])


# =============================================================================
# Dependencies
# =============================================================================


def get_storage_engine(config: AppConfig = Depends(get_config)) -> StorageEngine:
    settings = config.file_upload
    return StorageEngine(
        transcode_rules=settings.transcode,
        max_size_bytes=settings.max_file_size_bytes,
    )


def get_resolver(config: AppConfig = Depends(get_config)) -> RetrievalResolver:
    settings = config.file_upload
    return RetrievalResolver(settings.upload_dir, mime_remap=settings.mime_remap)


def get_coordinator(
    config: AppConfig = Depends(get_config),
    tokens: TokenStore = Depends(get_token_store),
    storage: StorageEngine = Depends(get_storage_engine),
) -> UploadCoordinator:
    return UploadCoordinator(tokens, storage, config.file_upload.upload_dir)


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "/new/{token}",
    response_model=UploadResponse,
    responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def upload_file(
    token: str,
    request: Request,
    coordinator: UploadCoordinator = Depends(get_coordinator),
) -> UploadResponse:
    """Store the single file of a multipart body for the token's owner.

    The token is consumed before the body is read, so a failed upload
    needs a new token.

    Raises:
        AuthorizationError: unknown, expired or reused token (400).
        ProtocolViolation: anything but one file in the ``file`` field (400).
        FileTooLargeError: upload over the configured limit (413), raised
            while the body is still arriving.
        StorageFailure: directory, write or transcode failure (500).
    """
    pipeline = coordinator.begin(token)
    pipeline.authorize()
    pipeline.check_declared_size(request.headers.get("content-length"))
    request = Request(request.scope, receive=pipeline.limit_body(request.receive))

    try:
        async with request.form(max_files=1, max_fields=0) as form:
            incoming = pipeline.accept(form)
            stored = await pipeline.store(incoming)
    except StarletteHTTPException as e:
        # Raised by the multipart parser (too many files or fields)
        raise pipeline.fail(ProtocolViolation(str(e.detail)))

    return pipeline.respond(stored)


def _is_not_modified(response_headers: Headers, request_headers: Headers) -> bool:
    """Conditional GET check against the file's ETag and Last-Modified."""
    if_none_match = request_headers.get("if-none-match")
    etag = response_headers.get("etag")
    if if_none_match and etag:
        return etag in [tag.strip(" W/") for tag in if_none_match.split(",")]

    if_modified_since = request_headers.get("if-modified-since")
    last_modified = response_headers.get("last-modified")
    if if_modified_since and last_modified:
        since = parsedate(if_modified_since)
        modified = parsedate(last_modified)
        return since is not None and modified is not None and since >= modified

    return False


async def _serve_file(
    request: Request,
    config: AppConfig,
    resolver: RetrievalResolver,
    owner: str,
    file_id: str,
    slug: Optional[str] = None,
):
    resolved = await resolver.resolve(owner, file_id, slug)
    if resolved is None:
        return PlainTextResponse("Not found", status_code=404)

    try:
        stat_result = resolved.path.stat()
    except OSError as e:
        logger.warning("Failed to stat %s: %s", resolved.path, e)
        return PlainTextResponse("Not found", status_code=404)

    headers = {"Cache-Control": f"public, max-age={config.file_upload.cache_max_age}"}
    if resolved.filename is None:
        headers["Content-Disposition"] = resolved.disposition_type

    response = FileResponse(
        resolved.path,
        media_type=resolved.media_type,
        headers=headers,
        filename=resolved.filename,
        content_disposition_type=resolved.disposition_type,
        stat_result=stat_result,
    )

    if _is_not_modified(response.headers, request.headers):
        return NotModifiedResponse(response.headers)
    return response


@router.api_route("/{owner}/{file_id}", methods=["GET", "HEAD"])
async def get_file(
    owner: str,
    file_id: str,
    request: Request,
    config: AppConfig = Depends(get_config),
    resolver: RetrievalResolver = Depends(get_resolver),
):
    """Serve a stored file with a sniffed type and safe disposition.

    Every failure, including paths outside the upload root, reads as a
    plain 404.
    """
    return await _serve_file(request, config, resolver, owner, file_id)


@router.api_route("/{owner}/{file_id}/{slug:path}", methods=["GET", "HEAD"])
async def get_file_with_slug(
    owner: str,
    file_id: str,
    slug: str,
    request: Request,
    config: AppConfig = Depends(get_config),
    resolver: RetrievalResolver = Depends(get_resolver),
):
    """Same as ``get_file``, suggesting *slug* as the download filename."""
    return await _serve_file(request, config, resolver, owner, file_id, slug)

"""Filegate Backend Application.

This is the main entry point for the Filegate backend service.
Filegate lets a client connected over a WebSocket session upload files
through short-lived, single-use tokens and serves them back with
content-sniffed headers.

Modules:
    - session: WebSocket session issuing upload tokens
    - uploads: token store, storage engine, retrieval resolver and HTTP routes
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from filegate import __version__
from filegate.config import get_config
from filegate.session.router import router as session_router
from filegate.uploads.errors import UploadError
from filegate.uploads.router import router as uploads_router
from filegate.uploads.tokens import token_store

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# PIL logs every plugin it probes while identifying an image
for _noisy in ("PIL", "PIL.Image", "multipart", "python_multipart"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in filegate.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    settings = config.file_upload
    token_store.configure(settings.token_ttl_seconds)
    if settings.enabled:
        logger.info(
            "File uploads enabled: upload_dir=%s max_file_size=%s",
            settings.upload_dir,
            settings.max_file_size_bytes or "unlimited",
        )
    else:
        logger.info("File uploads disabled in config.")

    yield  # Application runs here

    # Shutdown
    token_store.clear()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Filegate API",
    description="Token-authorized file uploads with hardened file serving",
    version=__version__,
    lifespan=lifespan,
)

# Register all routers
app.include_router(session_router)
app.include_router(uploads_router)


@app.exception_handler(UploadError)
async def upload_error_handler(_: Request, exc: UploadError) -> JSONResponse:
    """Render pipeline failures as ``{"error": message}``."""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}

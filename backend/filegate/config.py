"""Filegate application configuration.

Loads settings from a single YAML file:
  * filegate.settings.yaml: server, logging and file upload settings

Relative ``file_upload.upload_dir`` values are resolved against the
directory holding the settings file, so a checkout can be started from
any working directory.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("filegate.settings.yaml")

# Sniffed types that browsers play back more reliably under another name.
DEFAULT_MIME_REMAP: Dict[str, str] = {
    "audio/vnd.wave": "audio/wav",
    "audio/wave":     "audio/wav",
    "audio/x-wav":    "audio/wav",
    "audio/x-flac":   "audio/flac",
    "audio/x-m4a":    "audio/mp4",
    "video/quicktime": "video/mp4",
}


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _normalize_extension(ext: str) -> str:
    ext = ext.strip().lower()
    if ext and not ext.startswith("."):
        ext = "." + ext
    return ext


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 9000


class LoggingSettings(BaseModel):
    level: str = "info"


class FileUploadSettings(BaseModel):
    """Upload storage and retrieval settings."""
    enabled:           bool             = True
    upload_dir:        str              = "./uploads"
    max_file_size:     int              = 10240   # KB, < 1 means unlimited
    token_ttl_seconds: float            = Field(default=60.0, gt=0)
    cache_max_age:     int              = 86400
    transcode:         Dict[str, str]   = Field(default_factory=lambda: {".heic": ".jpg"})
    mime_remap:        Dict[str, str]   = Field(default_factory=lambda: dict(DEFAULT_MIME_REMAP))

    @field_validator("transcode")
    @classmethod
    def _normalize_transcode(cls, value: Dict[str, str]) -> Dict[str, str]:
        return {_normalize_extension(k): _normalize_extension(v) for k, v in value.items()}

    @property
    def max_file_size_bytes(self) -> Optional[int]:
        """Maximum upload size in bytes, or None when unlimited."""
        if self.max_file_size < 1:
            return None
        return self.max_file_size * 1024


class AppConfig(BaseModel):
    server:      ServerSettings     = Field(default_factory=ServerSettings)
    logging:     LoggingSettings    = Field(default_factory=LoggingSettings)
    file_upload: FileUploadSettings = Field(default_factory=FileUploadSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load *settings_path* (default ``filegate.settings.yaml``) into an AppConfig."""
    path = Path(settings_path) if settings_path is not None else SETTINGS_FILE
    config = AppConfig(**_load_yaml(path))

    upload_dir = Path(config.file_upload.upload_dir)
    if not upload_dir.is_absolute():
        upload_dir = path.resolve().parent / upload_dir
    config.file_upload.upload_dir = str(upload_dir)

    logger.info(
        "Settings loaded (server=%s:%s, file_upload.enabled=%s, upload_dir=%s)",
        config.server.host,
        config.server.port,
        config.file_upload.enabled,
        config.file_upload.upload_dir,
    )
    return config


@lru_cache
def get_config() -> AppConfig:
    """Process-wide configuration, also used as a FastAPI dependency."""
    return load_config()

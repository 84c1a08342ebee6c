"""Pydantic schemas for the upload API and session events.

- UploadResponse: body of a successful ``POST /uploads/new/{token}``
- ErrorResponse: body of every failed upload request
- SessionConfiguration: upload settings pushed to a session on connect
- UploadAuthEvent: reply to an ``upload:auth`` session event
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field


class UploadResponse(BaseModel):
    url: str = Field(..., description="Logical URL of the stored file, relative to the server root")


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Client-facing error message")


class SessionConfiguration(BaseModel):
    """Sent once when a session connects.

    ``fileUploadMaxFileSize`` is in bytes; None means no limit.
    """
    type: Literal["configuration"] = "configuration"
    fileUpload: bool
    fileUploadMaxFileSize: Optional[int] = None


class UploadAuthEvent(BaseModel):
    type: Literal["upload:auth"] = "upload:auth"
    token: str

"""Session router providing the WebSocket side of file uploads.

This module provides:
    - WebSocket /ws/session: long-lived client session

The identity of the session comes from the authentication layer in front of
this service, passed as the ``user`` query parameter. It is the only owner
an issued upload token can carry.

Protocol Message Types (client -> server):
    - upload:auth: request a single-use upload token
    - upload:ping: keep an issued token alive ({"token": "<token>"})

Server -> client:
    - configuration: upload settings, sent once on connect
    - upload:auth: the issued token
    - error: malformed or unsupported message
"""
import json
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from filegate.config import AppConfig, get_config
from filegate.uploads.schemas import SessionConfiguration, UploadAuthEvent
from filegate.uploads.tokens import TokenStore, get_token_store

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/session")
async def session_endpoint(
    websocket: WebSocket,
    user: str = Query(..., description="Authenticated identity of the session"),
    config: AppConfig = Depends(get_config),
    tokens: TokenStore = Depends(get_token_store),
):
    """WebSocket endpoint issuing and refreshing upload tokens.

    Args:
        websocket: The WebSocket connection.
        user: Identity bound to every token issued on this session.
    """
    identity = user.strip()
    if not identity:
        logger.warning("[WS] Rejecting session without identity")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await websocket.accept()
    settings = config.file_upload
    logger.info(f"[WS] Session opened for {identity}")

    await websocket.send_json(SessionConfiguration(
        fileUpload=settings.enabled,
        fileUploadMaxFileSize=settings.max_file_size_bytes,
    ).model_dump())

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": "error", "error": "Malformed message"})
                continue

            message_type = data.get("type") if isinstance(data, dict) else None

            # --- Handle UPLOAD:AUTH (issue a token) ---
            if message_type == "upload:auth":
                if not settings.enabled:
                    await websocket.send_json({"type": "error", "error": "File uploads are disabled"})
                    continue

                token = tokens.issue(identity)
                await websocket.send_json(UploadAuthEvent(token=token).model_dump())
                continue

            # --- Handle UPLOAD:PING (refresh a token) ---
            if message_type == "upload:ping":
                tokens.ping(data.get("token"))
                continue

            await websocket.send_json({
                "type": "error",
                "error": f"Unsupported message type: {message_type}",
            })

    except WebSocketDisconnect:
        logger.info(f"[WS] Session closed for {identity}")

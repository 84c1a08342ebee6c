"""Shared test fixtures and configuration for backend tests."""
import io
import random

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from filegate.config import AppConfig, FileUploadSettings, get_config
from filegate.main import app
from filegate.uploads.tokens import token_store


@pytest.fixture
def upload_root(tmp_path):
    """Upload root below tmp_path, so tmp_path itself is 'outside'."""
    return tmp_path / "uploads"


@pytest.fixture
def app_config(upload_root):
    return AppConfig(file_upload=FileUploadSettings(upload_dir=str(upload_root)))


@pytest.fixture
def api_client(app_config):
    """TestClient with config pointed at a temporary upload root.

    Used as a context manager so WebSocket sessions and HTTP requests
    share one event loop, like a real server.
    """
    app.dependency_overrides[get_config] = lambda: app_config
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
    token_store.clear()


def request_token(client, user="alice"):
    """Open a session as *user* and return a freshly issued upload token."""
    with client.websocket_connect(f"/ws/session?user={user}") as ws:
        configuration = ws.receive_json()
        assert configuration["type"] == "configuration"
        ws.send_json({"type": "upload:auth"})
        reply = ws.receive_json()
    assert reply["type"] == "upload:auth"
    return reply["token"]


def image_bytes(fmt="PNG", size=(8, 8), color=(200, 30, 30)):
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


# Seeded noise: not valid UTF-8 and no recognizable format
UNKNOWN_BINARY = random.Random(1337).randbytes(4096)

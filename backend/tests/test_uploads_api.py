"""End-to-end tests for the upload and retrieval HTTP endpoints."""
import io

import pytest
from PIL import Image

from conftest import UNKNOWN_BINARY, image_bytes, request_token
from test_storage import heic_bytes


def upload(client, token, filename, data, field="file"):
    return client.post(f"/uploads/new/{token}", files={field: (filename, data)})


def multipart_body(filename, data, boundary="filegate-test-boundary"):
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'
        "Content-Type: application/octet-stream\r\n\r\n"
    ).encode()
    tail = f"\r\n--{boundary}--\r\n".encode()
    return head + data + tail, f"multipart/form-data; boundary={boundary}"


def stored_files(root):
    if not root.exists():
        return []
    return [p for p in root.rglob("*") if p.is_file()]


class TestUpload:
    def test_text_upload_scenario(self, api_client):
        token = request_token(api_client, "alice")
        payload = b"line of notes\n" * 146  # ~2KB

        response = upload(api_client, token, "notes.txt", payload)

        assert response.status_code == 200
        url = response.json()["url"]
        assert url.startswith("uploads/alice/")
        assert url.endswith(".txt")

        served = api_client.get(f"/{url}")
        assert served.status_code == 200
        assert served.content == payload
        assert served.headers["content-type"].startswith("text/plain")
        assert served.headers["content-disposition"] == 'inline; filename="text.txt"'

    def test_unknown_token_is_rejected(self, api_client, upload_root):
        response = upload(api_client, "not-a-real-token", "notes.txt", b"hello")

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid upload token"}
        assert stored_files(upload_root) == []

    def test_token_is_single_use(self, api_client):
        token = request_token(api_client)

        assert upload(api_client, token, "a.txt", b"first").status_code == 200

        second = upload(api_client, token, "b.txt", b"second")
        assert second.status_code == 400
        assert second.json() == {"error": "Invalid upload token"}

    def test_wrong_field_name_is_a_protocol_violation(self, api_client, upload_root):
        token = request_token(api_client)

        response = upload(api_client, token, "a.txt", b"data", field="attachment")

        assert response.status_code == 400
        assert "error" in response.json()
        assert stored_files(upload_root) == []
        # The token was consumed before the body was inspected
        assert upload(api_client, token, "a.txt", b"data").status_code == 400

    def test_multiple_files_are_rejected(self, api_client, upload_root):
        token = request_token(api_client)

        response = api_client.post(
            f"/uploads/new/{token}",
            files=[("file", ("a.txt", b"a")), ("file", ("b.txt", b"b"))],
        )

        assert response.status_code == 400
        assert stored_files(upload_root) == []

    def test_extra_fields_are_rejected(self, api_client, upload_root):
        token = request_token(api_client)

        response = api_client.post(
            f"/uploads/new/{token}",
            files={"file": ("a.txt", b"a")},
            data={"caption": "hi"},
        )

        assert response.status_code == 400
        assert stored_files(upload_root) == []

    def test_oversized_upload_is_rejected(self, api_client, app_config, upload_root):
        app_config.file_upload.max_file_size = 1  # KB
        token = request_token(api_client)

        response = upload(api_client, token, "big.txt", b"x" * 4096)

        assert response.status_code == 413
        assert response.json() == {"error": "File too large"}
        assert stored_files(upload_root) == []

    def test_declared_length_far_over_limit_is_rejected_early(self, api_client, app_config, upload_root):
        app_config.file_upload.max_file_size = 1  # KB
        token = request_token(api_client)

        response = upload(api_client, token, "big.bin", b"x" * (200 * 1024))

        assert response.status_code == 413
        assert stored_files(upload_root) == []

    def test_chunked_body_over_limit_is_rejected(self, api_client, app_config, upload_root):
        app_config.file_upload.max_file_size = 1  # KB
        token = request_token(api_client)
        body, content_type = multipart_body("big.bin", b"x" * (512 * 1024))

        def body_chunks():
            for start in range(0, len(body), 64 * 1024):
                yield body[start:start + 64 * 1024]

        response = api_client.post(
            f"/uploads/new/{token}",
            content=body_chunks(),
            headers={"Content-Type": content_type},
        )

        assert response.status_code == 413
        assert response.json() == {"error": "File too large"}
        assert stored_files(upload_root) == []

    def test_unlimited_size(self, api_client, app_config):
        app_config.file_upload.max_file_size = 0
        token = request_token(api_client)

        response = upload(api_client, token, "big.bin", b"x" * (300 * 1024))
        assert response.status_code == 200

    def test_heic_upload_is_served_as_jpeg(self, api_client):
        token = request_token(api_client, "bob")

        response = upload(api_client, token, "IMG_0001.HEIC", heic_bytes())

        assert response.status_code == 200
        url = response.json()["url"]
        assert url.startswith("uploads/bob/")
        assert url.endswith(".jpg")

        served = api_client.get(f"/{url}")
        assert served.headers["content-type"] == "image/jpeg"
        assert served.headers["content-disposition"] == 'inline; filename="image.jpg"'
        with Image.open(io.BytesIO(served.content)) as img:
            assert img.format == "JPEG"

    def test_corrupt_heic_is_a_storage_failure(self, api_client, upload_root):
        token = request_token(api_client)

        response = upload(api_client, token, "photo.heic", b"not really a heic")

        assert response.status_code == 500
        assert response.json() == {"error": "File upload error"}
        assert stored_files(upload_root) == []

    def test_identity_escaping_the_root_is_a_storage_failure(self, api_client, tmp_path):
        token = request_token(api_client, "..")

        response = upload(api_client, token, "a.txt", b"data")

        assert response.status_code == 500
        assert response.json() == {"error": "File upload error"}
        assert not (tmp_path / "a.txt").exists()
        assert [p for p in tmp_path.iterdir() if p.is_file()] == []


class TestRetrieval:
    def test_png_is_inline_with_default_name(self, api_client):
        token = request_token(api_client)
        url = upload(api_client, token, "pic.png", image_bytes("PNG")).json()["url"]

        served = api_client.get(f"/{url}")

        assert served.status_code == 200
        assert served.headers["content-type"] == "image/png"
        assert served.headers["content-disposition"] == 'inline; filename="image.png"'
        assert served.headers["cache-control"] == "public, max-age=86400"

    def test_unknown_binary_is_attachment(self, api_client):
        token = request_token(api_client)
        url = upload(api_client, token, "setup.exe", UNKNOWN_BINARY).json()["url"]

        served = api_client.get(f"/{url}")

        assert served.status_code == 200
        assert served.headers["content-disposition"] == "attachment"
        assert served.content == UNKNOWN_BINARY

    def test_binary_named_png_is_still_attachment(self, api_client):
        token = request_token(api_client)
        url = upload(api_client, token, "innocent.png", UNKNOWN_BINARY).json()["url"]

        served = api_client.get(f"/{url}")

        assert not served.headers["content-type"].startswith(("image/", "text/"))
        assert served.headers["content-disposition"].startswith("attachment")

    def test_slug_sets_filename_only(self, api_client):
        token = request_token(api_client)
        text_url = upload(api_client, token, "notes.txt", b"plain words").json()["url"]
        token = request_token(api_client)
        bin_url = upload(api_client, token, "blob.bin", UNKNOWN_BINARY).json()["url"]

        text = api_client.get(f"/{text_url}/meeting-notes.txt")
        blob = api_client.get(f"/{bin_url}/report.pdf")

        assert text.headers["content-disposition"] == 'inline; filename="meeting-notes.txt"'
        assert blob.headers["content-disposition"] == 'attachment; filename="report.pdf"'

    def test_head_sends_headers_only(self, api_client):
        token = request_token(api_client)
        data = image_bytes("PNG")
        url = upload(api_client, token, "pic.png", data).json()["url"]

        head = api_client.head(f"/{url}")
        with_slug = api_client.head(f"/{url}/cat.png")

        assert head.status_code == 200
        assert head.content == b""
        assert head.headers["content-type"] == "image/png"
        assert head.headers["content-length"] == str(len(data))
        assert head.headers["content-disposition"] == 'inline; filename="image.png"'
        assert with_slug.headers["content-disposition"] == 'inline; filename="cat.png"'

    def test_missing_file_is_404(self, api_client):
        response = api_client.get("/uploads/alice/doesnotexist.png")

        assert response.status_code == 404
        assert response.text == "Not found"

    @pytest.mark.parametrize(
        "path",
        [
            "/uploads/..%2Fsecret.txt/x",
            "/uploads/..%2F..%2Fetc/passwd",
            "/uploads/alice/..%2F..%2Fsecret.txt",
            "/uploads/%2E%2E/secret.txt",
        ],
    )
    def test_traversal_is_404(self, api_client, tmp_path, path):
        (tmp_path / "secret.txt").write_text("top secret")

        response = api_client.get(path)

        assert response.status_code == 404
        assert "top secret" not in response.text

    def test_conditional_get(self, api_client):
        token = request_token(api_client)
        url = upload(api_client, token, "pic.png", image_bytes("PNG")).json()["url"]

        first = api_client.get(f"/{url}")
        etag = first.headers["etag"]

        cached = api_client.get(f"/{url}", headers={"If-None-Match": etag})
        assert cached.status_code == 304
        assert cached.content == b""

        since = api_client.get(f"/{url}", headers={"If-Modified-Since": first.headers["last-modified"]})
        assert since.status_code == 304

        stale = api_client.get(f"/{url}", headers={"If-None-Match": '"something-else"'})
        assert stale.status_code == 200


def test_health(api_client):
    assert api_client.get("/health").json() == {"status": "ok"}

"""Tests for file uploads, downloads and deletion.

Tests cover:
- Filename sanitization
- Magic-byte verification per MIME type
- Validation order: blocked extension, MIME allow-list, size, signature
- Per-user file limit (admins exempt)
- Owner-scoped download and delete
- Blob cleanup when the metadata row cannot be written
"""

import pytest
from sqlalchemy.exc import IntegrityError

from stash.auth.middleware import Viewer
from stash.config import clear_settings_cache, get_settings
from stash.db.models import UserRole
from stash.errors import ApiError, ApiErrorCode
from stash.services import files as files_service
from stash.services.files import (
    sanitize_filename,
    validate_upload,
    verify_file_signature,
)
from stash.storage import FakeStorageClient
from tests.factories import (
    create_test_file,
    create_test_session,
    create_test_user_with_binding,
)
from tests.helpers import login

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
PDF = b"%PDF-1.7\n" + b"x" * 16
WEBP = b"RIFF\x24\x00\x00\x00WEBPVP8 " + b"\x00" * 8


class TestSanitizeFilename:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("report.pdf", "report.pdf"),
            ("../../etc/passwd", "_._etc_passwd"),
            ("a<b>c:d|e?f*.txt", "a_b_c_d_e_f_.txt"),
            ("...hidden", "hidden"),
            ("name..with...dots.txt", "name.with.dots.txt"),
            ("", "unnamed"),
            ("   ", "unnamed"),
            ("café.txt", "café.txt"),
        ],
    )
    def test_sanitize(self, raw, expected):
        assert sanitize_filename(raw) == expected

    def test_long_names_keep_extension(self):
        result = sanitize_filename("a" * 300 + ".pdf")

        assert len(result) == 255
        assert result.endswith(".pdf")


class TestVerifyFileSignature:
    @pytest.mark.parametrize(
        "content,mime_type",
        [
            (PNG, "image/png"),
            (PDF, "application/pdf"),
            (b"\xff\xd8\xff\xe0rest", "image/jpeg"),
            (b"GIF89a....", "image/gif"),
            (WEBP, "image/webp"),
            (b"plain text", "text/plain"),
            (b'{"a": 1}', "application/json"),
        ],
    )
    def test_matching_signatures(self, content, mime_type):
        assert verify_file_signature(content, mime_type)

    @pytest.mark.parametrize(
        "content,mime_type",
        [
            (PDF, "image/png"),
            (b"RIFF\x24\x00\x00\x00WAVEfmt ", "image/webp"),
            (b"MZ\x90\x00", "application/pdf"),
        ],
    )
    def test_mismatched_signatures(self, content, mime_type):
        assert not verify_file_signature(content, mime_type)


class TestValidateUpload:
    def test_blocked_extension_checked_first(self):
        with pytest.raises(ApiError) as exc_info:
            validate_upload("setup.exe", "application/x-msdownload", b"", 100)
        assert exc_info.value.code == ApiErrorCode.E_INVALID_FILE_TYPE

    def test_mime_type_allow_list(self):
        with pytest.raises(ApiError) as exc_info:
            validate_upload("page.html", "text/html", b"<html>", 100)
        assert exc_info.value.code == ApiErrorCode.E_INVALID_FILE_TYPE

    def test_empty_file(self):
        with pytest.raises(ApiError) as exc_info:
            validate_upload("a.txt", "text/plain", b"", 100)
        assert exc_info.value.code == ApiErrorCode.E_INVALID_REQUEST

    def test_too_large(self):
        with pytest.raises(ApiError) as exc_info:
            validate_upload("a.txt", "text/plain", b"x" * 101, 100)
        assert exc_info.value.code == ApiErrorCode.E_FILE_TOO_LARGE

    def test_content_type_parameters_are_ignored(self):
        assert validate_upload("a.txt", "Text/Plain; charset=utf-8", b"hi", 100) == "text/plain"


class TestUploadRoute:
    """POST /api/files/upload"""

    def _sign_in(self, client, db_session, role=UserRole.user) -> str:
        user_id, _ = create_test_user_with_binding(db_session, role=role)
        login(client, create_test_session(db_session, user_id))
        return user_id

    def test_upload_then_download(self, client, db_session, storage):
        self._sign_in(client, db_session)

        response = client.post(
            "/api/files/upload", files={"file": ("pic.png", PNG, "image/png")}
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["original_filename"] == "pic.png"
        assert data["mime_type"] == "image/png"
        assert data["file_size"] == len(PNG)
        assert "storage_key" not in data

        download = client.get(f"/api/files/{data['id']}/download")
        assert download.status_code == 200
        assert download.content == PNG
        assert download.headers["content-type"] == "image/png"
        assert download.headers["x-content-type-options"] == "nosniff"
        assert "filename*=UTF-8''pic.png" in download.headers["content-disposition"]

    def test_signature_mismatch_rejected(self, client, db_session, storage):
        self._sign_in(client, db_session)

        response = client.post(
            "/api/files/upload", files={"file": ("fake.png", PDF, "image/png")}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_FILE_TYPE"
        assert client.get("/api/files").json()["data"] == []

    def test_oversize_rejected(self, client, db_session, monkeypatch):
        monkeypatch.setenv("MAX_FILE_BYTES", "10")
        clear_settings_cache()
        self._sign_in(client, db_session)

        response = client.post(
            "/api/files/upload", files={"file": ("a.txt", b"x" * 11, "text/plain")}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_FILE_TOO_LARGE"

    def test_file_limit_reached(self, client, db_session, storage, monkeypatch):
        monkeypatch.setenv("MAX_FILES_PER_USER", "2")
        clear_settings_cache()
        user_id = self._sign_in(client, db_session)
        create_test_file(db_session, user_id, storage)
        create_test_file(db_session, user_id, storage)

        response = client.post(
            "/api/files/upload", files={"file": ("a.txt", b"third", "text/plain")}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_FILE_LIMIT_REACHED"
        # Only the two pre-existing blobs remain
        assert len(storage) == 2

    def test_admin_is_exempt_from_file_limit(self, client, db_session, storage, monkeypatch):
        monkeypatch.setenv("MAX_FILES_PER_USER", "1")
        clear_settings_cache()
        user_id = self._sign_in(client, db_session, role=UserRole.admin)
        create_test_file(db_session, user_id, storage)

        response = client.post(
            "/api/files/upload", files={"file": ("a.txt", b"second", "text/plain")}
        )

        assert response.status_code == 201

    def test_upload_rate_limited_per_user(self, client, db_session, rate_limiters):
        self._sign_in(client, db_session)
        limit = rate_limiters.upload_user.max_requests

        statuses = [
            client.post(
                "/api/files/upload", files={"file": ("a.exe", b"MZ", "text/plain")}
            ).status_code
            for _ in range(limit + 1)
        ]

        assert statuses[:-1] == [400] * limit
        assert statuses[-1] == 429

    def test_requires_session(self, client):
        response = client.post(
            "/api/files/upload", files={"file": ("a.txt", b"x", "text/plain")}
        )
        assert response.status_code == 401


class TestFileAccess:
    def test_list_newest_first_and_scoped(self, client, db_session, storage):
        user_id, _ = create_test_user_with_binding(db_session)
        other_id, _ = create_test_user_with_binding(db_session)
        create_test_file(db_session, other_id, storage)
        first, _ = create_test_file(db_session, user_id, storage, filename="one.txt")
        second, _ = create_test_file(db_session, user_id, storage, filename="two.txt")
        login(client, create_test_session(db_session, user_id))

        data = client.get("/api/files").json()["data"]

        assert {f["id"] for f in data} == {first, second}
        assert data[0]["id"] == second

    def test_other_users_file_is_not_found(self, client, db_session, storage):
        user_id, _ = create_test_user_with_binding(db_session)
        other_id, _ = create_test_user_with_binding(db_session)
        foreign, foreign_key = create_test_file(db_session, other_id, storage)
        login(client, create_test_session(db_session, user_id))

        download = client.get(f"/api/files/{foreign}/download")
        delete = client.delete(f"/api/files/{foreign}")

        assert download.status_code == 404
        assert download.json()["error"]["code"] == "E_FILE_NOT_FOUND"
        assert delete.status_code == 404
        assert storage.has_object(foreign_key)

    def test_delete_removes_row_and_blob(self, client, db_session, storage):
        user_id, _ = create_test_user_with_binding(db_session)
        file_id, key = create_test_file(db_session, user_id, storage)
        login(client, create_test_session(db_session, user_id))

        response = client.delete(f"/api/files/{file_id}")

        assert response.status_code == 204
        assert not storage.has_object(key)
        assert client.get(f"/api/files/{file_id}/download").status_code == 404

    def test_missing_blob_is_not_found(self, client, db_session, storage):
        user_id, _ = create_test_user_with_binding(db_session)
        file_id, key = create_test_file(db_session, user_id, storage)
        storage.delete_object(key)
        login(client, create_test_session(db_session, user_id))

        assert client.get(f"/api/files/{file_id}/download").status_code == 404


class TestUploadService:
    def test_blob_removed_when_row_insert_fails(self, db_session):
        storage = FakeStorageClient()
        viewer = Viewer(
            user_id="missing-user", session_id="s", provider="google", role=UserRole.admin
        )

        with pytest.raises(IntegrityError):
            files_service.upload_file(
                db_session,
                viewer,
                filename="a.txt",
                content_type="text/plain",
                content=b"data",
                storage=storage,
                settings=get_settings(),
            )

        assert len(storage) == 0

"""File upload service layer.

Upload checks, in order:
1. Filename extension is not on the blocked list
2. MIME type is on the allow-list
3. Size is between 1 byte and MAX_FILE_BYTES
4. Leading bytes match the declared MIME type (text types are exempt)
5. The user is below MAX_FILES_PER_USER (admins are exempt)

The blob is written before the metadata row. If the row cannot be
written, the blob is removed again so no orphan is left behind.

Every lookup is scoped by user_id. Another user's file is reported as not
found, never as forbidden.
"""

import re
import unicodedata
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stash.auth.middleware import Viewer
from stash.config import Settings
from stash.db.models import File
from stash.db.session import transaction
from stash.errors import ApiError, ApiErrorCode, InvalidRequestError, NotFoundError
from stash.logging import get_logger
from stash.schemas.file import FileOut
from stash.services import identity_store
from stash.storage import StorageClientBase, StorageError, build_storage_key, compute_sha256

logger = get_logger(__name__)

MAX_FILENAME_LENGTH = 255
DEFAULT_FILENAME = "unnamed"

ALLOWED_MIME_TYPES = {
    "application/pdf",
    "application/json",
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "text/plain",
    "text/markdown",
    "text/csv",
}

BLOCKED_EXTENSIONS = {
    ".exe",
    ".dll",
    ".bat",
    ".cmd",
    ".com",
    ".scr",
    ".msi",
    ".vbs",
    ".js",
    ".jar",
    ".ps1",
    ".sh",
}

# Magic bytes for file type validation
MAGIC_BYTES: dict[str, tuple[bytes, ...]] = {
    "application/pdf": (b"%PDF",),
    "image/png": (b"\x89PNG\r\n\x1a\n",),
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/gif": (b"GIF87a", b"GIF89a"),
    "image/webp": (b"RIFF",),
}

_UNSAFE_FILENAME_CHARS = re.compile(r'[\x00-\x1f\x7f<>:"|?*/\\]')
_REPEATED_DOTS = re.compile(r"\.{2,}")


@dataclass(frozen=True)
class FileDownload:
    """A file's metadata and contents."""

    file: FileOut
    content: bytes


def get_file_extension(filename: str) -> str:
    """Lowercased last extension including the dot, or "" if none."""
    name = filename.rsplit("/", 1)[-1]
    if "." not in name.lstrip("."):
        return ""
    return "." + name.rsplit(".", 1)[-1].lower()


def sanitize_filename(filename: str) -> str:
    """Make a client-supplied filename safe to store and send back.

    Path separators and shell/OS metacharacters become underscores, runs of
    dots collapse to one, leading dots are dropped, and the result is capped
    at 255 characters with the extension preserved.
    """
    name = unicodedata.normalize("NFC", filename or "")
    name = _UNSAFE_FILENAME_CHARS.sub("_", name)
    name = _REPEATED_DOTS.sub(".", name)
    name = name.strip().lstrip(".").strip()

    if not name:
        return DEFAULT_FILENAME

    if len(name) > MAX_FILENAME_LENGTH:
        extension = get_file_extension(name)
        if len(extension) >= MAX_FILENAME_LENGTH:
            extension = ""
        name = name[: MAX_FILENAME_LENGTH - len(extension)] + extension

    return name


def is_allowed_mime_type(mime_type: str) -> bool:
    return mime_type in ALLOWED_MIME_TYPES


def is_blocked_extension(filename: str) -> bool:
    return get_file_extension(filename) in BLOCKED_EXTENSIONS


def verify_file_signature(content: bytes, mime_type: str) -> bool:
    """Check that content starts with the magic bytes of its declared type.

    Types without a known signature (text, JSON) always pass.
    """
    signatures = MAGIC_BYTES.get(mime_type)
    if not signatures:
        return True
    if mime_type == "image/webp":
        return content[:4] == b"RIFF" and content[8:12] == b"WEBP"
    return any(content.startswith(signature) for signature in signatures)


def _normalize_mime_type(content_type: str | None) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def validate_upload(filename: str, content_type: str | None, content: bytes, max_bytes: int) -> str:
    """Run the content checks for an upload.

    Returns:
        The normalized MIME type.

    Raises:
        InvalidRequestError: E_INVALID_FILE_TYPE or E_FILE_TOO_LARGE.
    """
    if is_blocked_extension(filename):
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_FILE_TYPE,
            "This file type is blocked for security reasons",
        )

    mime_type = _normalize_mime_type(content_type)
    if not is_allowed_mime_type(mime_type):
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_FILE_TYPE,
            f"File type '{mime_type or 'unknown'}' is not supported",
        )

    if len(content) == 0:
        raise InvalidRequestError(ApiErrorCode.E_INVALID_REQUEST, "File is empty")
    if len(content) > max_bytes:
        raise InvalidRequestError(
            ApiErrorCode.E_FILE_TOO_LARGE,
            f"File size exceeds maximum of {max_bytes} bytes",
        )

    if not verify_file_signature(content, mime_type):
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_FILE_TYPE,
            "File contents do not match the declared file format",
        )

    return mime_type


def upload_file(
    db: Session,
    viewer: Viewer,
    *,
    filename: str | None,
    content_type: str | None,
    content: bytes,
    storage: StorageClientBase,
    settings: Settings,
) -> FileOut:
    """Validate, store and record an uploaded file.

    Raises:
        InvalidRequestError: On a failed content check or when the user is at
            the file limit (E_FILE_LIMIT_REACHED).
        ApiError(E_STORAGE_ERROR): If the blob cannot be written.
    """
    original_filename = filename or DEFAULT_FILENAME
    mime_type = validate_upload(original_filename, content_type, content, settings.max_file_bytes)
    sanitized = sanitize_filename(original_filename)
    sha256_hash = compute_sha256(content)
    storage_key = build_storage_key()

    try:
        storage.put_object(storage_key, content, mime_type)
    except StorageError as e:
        logger.error("file.storage_put_failed", error=e.message)
        raise ApiError(ApiErrorCode.E_STORAGE_ERROR, "Failed to store file") from e

    try:
        with transaction(db):
            # Serializes concurrent uploads by the same user around the count check
            identity_store.lock_user(db, viewer.user_id)
            if not viewer.is_admin:
                count = db.execute(
                    select(func.count()).select_from(File).where(File.user_id == viewer.user_id)
                ).scalar_one()
                if count >= settings.max_files_per_user:
                    raise InvalidRequestError(
                        ApiErrorCode.E_FILE_LIMIT_REACHED,
                        f"File limit of {settings.max_files_per_user} files reached",
                    )

            record = File(
                user_id=viewer.user_id,
                original_filename=original_filename,
                sanitized_filename=sanitized,
                storage_key=storage_key,
                mime_type=mime_type,
                file_size=len(content),
                sha256_hash=sha256_hash,
            )
            db.add(record)
            db.flush()
            out = FileOut.model_validate(record)
    except Exception:
        storage.delete_object(storage_key)
        raise

    logger.info("file.uploaded", file_id=out.id, mime_type=mime_type, file_size=out.file_size)
    return out


def list_files(db: Session, user_id: str) -> list[FileOut]:
    """A user's files, newest first."""
    rows = db.execute(
        select(File).where(File.user_id == user_id).order_by(File.created_at.desc(), File.id.desc())
    ).scalars()
    return [FileOut.model_validate(f) for f in rows]


def _get_owned(db: Session, user_id: str, file_id: int) -> File:
    record = db.execute(
        select(File).where(File.id == file_id, File.user_id == user_id)
    ).scalar_one_or_none()
    if record is None:
        raise NotFoundError(ApiErrorCode.E_FILE_NOT_FOUND, "File not found")
    return record


def get_file_for_download(
    db: Session, user_id: str, file_id: int, storage: StorageClientBase
) -> FileDownload:
    """Load a file's contents for its owner.

    Raises:
        NotFoundError(E_FILE_NOT_FOUND): Unknown file, another user's file, or
            a missing blob.
    """
    record = _get_owned(db, user_id, file_id)
    try:
        content = storage.get_object(record.storage_key)
    except StorageError as e:
        logger.error("file.storage_get_failed", file_id=file_id, error_code=e.code)
        raise NotFoundError(ApiErrorCode.E_FILE_NOT_FOUND, "File not found") from e

    return FileDownload(file=FileOut.model_validate(record), content=content)


def delete_file(db: Session, user_id: str, file_id: int, storage: StorageClientBase) -> None:
    """Delete a file row, then its blob.

    Raises:
        NotFoundError(E_FILE_NOT_FOUND): If the user owns no such file.
    """
    with transaction(db):
        record = _get_owned(db, user_id, file_id)
        storage_key = record.storage_key
        db.delete(record)

    storage.delete_object(storage_key)
    logger.info("file.deleted", file_id=file_id)

"""File routes.

Uploads are rate limited twice: per client IP and per user. Both limits
are counted before any content check runs.
"""

from typing import Annotated
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Request, Response, UploadFile
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from stash.api.deps import get_db, get_rate_limiters, get_storage
from stash.auth.middleware import Viewer, get_viewer
from stash.config import Settings, get_settings
from stash.responses import success_response
from stash.services import files as files_service
from stash.services.rate_limit import RateLimiters, get_client_ip
from stash.storage import StorageClientBase

router = APIRouter()


@router.post("/api/files/upload", status_code=201)
async def upload_file(
    request: Request,
    file: Annotated[UploadFile, File()],
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
    limiters: Annotated[RateLimiters, Depends(get_rate_limiters)],
    storage: Annotated[StorageClientBase, Depends(get_storage)],
) -> dict:
    """Upload one file (multipart field "file")."""
    limiters.upload_ip.enforce(f"upload_ip:{get_client_ip(request)}")
    limiters.upload_user.enforce(f"upload_user:{viewer.user_id}")

    # Read one byte past the limit so oversize bodies are detected without
    # holding them whole in memory
    content = await file.read(settings.max_file_bytes + 1)

    result = await run_in_threadpool(
        files_service.upload_file,
        db,
        viewer,
        filename=file.filename,
        content_type=file.content_type,
        content=content,
        storage=storage,
        settings=settings,
    )
    return success_response(result.model_dump(mode="json"))


@router.get("/api/files")
def list_files(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """List the viewer's files, newest first."""
    result = files_service.list_files(db, viewer.user_id)
    return success_response([f.model_dump(mode="json") for f in result])


@router.get("/api/files/{file_id}/download")
def download_file(
    file_id: int,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    storage: Annotated[StorageClientBase, Depends(get_storage)],
) -> Response:
    """Stream a file back to its owner as an attachment."""
    download = files_service.get_file_for_download(db, viewer.user_id, file_id, storage)
    filename = download.file.sanitized_filename
    return Response(
        content=download.content,
        media_type=download.file.mime_type,
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}",
            "X-Content-Type-Options": "nosniff",
            "Cache-Control": "private, no-store",
        },
    )


@router.delete("/api/files/{file_id}", status_code=204)
def delete_file(
    file_id: int,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    storage: Annotated[StorageClientBase, Depends(get_storage)],
) -> Response:
    """Delete a file and its stored contents."""
    files_service.delete_file(db, viewer.user_id, file_id, storage)
    return Response(status_code=204)

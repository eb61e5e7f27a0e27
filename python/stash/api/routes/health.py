"""Health check endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stash.api.deps import get_db
from stash.errors import ApiError, ApiErrorCode
from stash.logging import get_logger
from stash.responses import success_response

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Liveness check. Returns 200 if the process is running."""
    return success_response({"status": "ok"})


@router.get("/health/ready")
def readiness_check(db: Annotated[Session, Depends(get_db)]) -> dict:
    """Readiness check. Verifies the database answers a trivial query."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("readiness_check_failed", error_type=type(e).__name__)
        raise ApiError(ApiErrorCode.E_INTERNAL, "Database unavailable") from e
    return success_response({"status": "ready"})

# tenderly/routers/health.py
import logging
from datetime import datetime, timezone
from typing import Dict, Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..database import get_db
from ..session_store import SessionStore, get_session_store

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
)


@router.get("")
def health_check(
    db: Session = Depends(get_db),
    store: SessionStore = Depends(get_session_store),
):
    """Database and cache reachability. 503 when either is down."""
    checks: Dict[str, Any] = {}
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Health check database failure: {e}")
        checks["database"] = "unavailable"
    checks["cache"] = "ok" if store.ping() else "unavailable"

    healthy = all(v == "ok" for v in checks.values())
    settings = get_settings()
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "degraded",
            "version": settings.app_version,
            "environment": settings.environment,
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )

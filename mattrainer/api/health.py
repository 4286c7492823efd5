"""Liveness and readiness probes for the billing service."""
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from mattrainer.core.database import check_connection, missing_tables
from mattrainer.core.logging import log_event

router = APIRouter(tags=["health"])


def _not_ready(detail: str, checks: dict) -> JSONResponse:
    log_event("warning", "health.not_ready", extra={"detail": detail})
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail, "checks": checks})


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Ready when the database answers and every billing table exists."""
    checks = {"database": "error", "tables": "unknown"}
    if not check_connection():
        return _not_ready("database unreachable", checks)
    checks["database"] = "ok"

    try:
        missing = missing_tables()
    except SQLAlchemyError:
        return _not_ready("database unreachable", checks)

    if missing:
        checks["tables"] = "missing"
        return _not_ready(f"missing tables: {', '.join(missing)}", checks)

    checks["tables"] = "ok"
    return {"status": "ok", "checks": checks}

"""
Health endpoints.

/healthz answers as long as the process serves requests. /readyz answers 200
only when the database is reachable and every billing table is present.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from backoffice.core.config import settings
from backoffice.core.database import get_engine, metadata

logger = logging.getLogger("backoffice")

root_router = APIRouter(tags=["health"])


def _not_ready(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@root_router.get("/healthz")
def healthz():
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        inspector = inspect(engine)
        missing = sorted(name for name in metadata.tables if not inspector.has_table(name))
    except SQLAlchemyError as exc:
        logger.error("readyz.database_unreachable", extra={"error_type": type(exc).__name__})
        return _not_ready("database unreachable")

    if missing:
        logger.warning("readyz.missing_tables", extra={"tables": ",".join(missing)})
        return _not_ready(f"missing tables: {', '.join(missing)}")

    return {"status": "ok", "payment_provider": settings.PAYMENT_PROVIDER}

"""
Liveness and readiness probes.

/healthz never touches dependencies; /readyz checks the database and the
billing schema. Neither exposes configuration or secrets.
"""

import logging
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from clinic_billing.core.database import get_engine, missing_tables
from clinic_billing.core.logging import latency_bucket_ms

logger = logging.getLogger("clinic_billing")

router = APIRouter(tags=["health"])


def _not_ready(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    start = time.perf_counter()
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        missing = missing_tables(engine)
    except Exception as e:
        logger.error("health.not_ready", extra={"error_code": "database_unreachable", "error_message": str(e)})
        return _not_ready("database unreachable")

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("health.not_ready", extra={"error_code": "schema_missing", "error_message": detail})
        return _not_ready(detail)

    logger.info("health.ready", extra={"latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000)})
    return {"status": "ok"}

from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from dispatch_core.api.routers import dispatch, learning, orchestration, strategy, tasks
from dispatch_core.infra.audit import AuditMiddleware
from dispatch_core.infra.db import check_db_ready
from dispatch_core.infra.log import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="dispatch-core",
    description="Task lifecycle and dispatch coordination for delivery and repair work.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("request_invalid", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": {
                "code": "INVALID_REQUEST",
                "message": "request validation failed",
                "errors": jsonable_encoder(exc.errors()),
            }
        },
    )


app.include_router(dispatch.router, prefix="/dispatch", tags=["dispatch"])
app.include_router(orchestration.router, prefix="/orchestration", tags=["orchestration"])
app.include_router(strategy.router, prefix="/strategy", tags=["strategy"])
app.include_router(learning.router, prefix="/learning", tags=["learning"])
app.include_router(tasks.router, prefix="/tasks", tags=["tasks"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}

"""
Actual.fyi Audit API - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import audit, health
from services.audit_runs import reap_stale_runs, supervise_once
from services.errors import AuditError

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def _periodic_supervisor() -> None:
    interval_seconds = max(int(settings.SUPERVISOR_INTERVAL_SECONDS), 0)
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await supervise_once()
            if any(result.get(key) for key in ("requeued", "failed", "expired", "dispatched")):
                print(
                    f"🧹 Audit supervisor: requeued={result.get('requeued', 0)} "
                    f"failed={result.get('failed', 0)} expired={result.get('expired', 0)} "
                    f"dispatched={result.get('dispatched')}"
                )
        except Exception as exc:
            print(f"⚠️ Audit supervisor tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Actual.fyi Audit API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        reaped = await reap_stale_runs()
        if any(reaped.values()):
            print(f"♻️ Reclaimed stalled audit runs after startup: {reaped}")
    except Exception as exc:
        print(f"⚠️ Stalled audit run recovery skipped: {exc}")

    supervisor_task = None
    if int(settings.SUPERVISOR_INTERVAL_SECONDS) > 0:
        supervisor_task = asyncio.create_task(_periodic_supervisor())
        print(f"📅 Audit supervisor loop enabled (every {int(settings.SUPERVISOR_INTERVAL_SECONDS)}s).")
    yield
    # Shutdown
    if supervisor_task is not None:
        supervisor_task.cancel()
        try:
            await supervisor_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Actual.fyi Audit API",
    description="Multi-stage product specification audits and Truth Index scoring",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AuditError)
async def audit_error_handler(request: Request, exc: AuditError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.code, "detail": exc.detail},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(audit.router, prefix="/audit", tags=["Audit"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Actual.fyi Audit API",
        "version": "0.1.0",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.API_HOST, port=settings.API_PORT, log_level=settings.LOG_LEVEL.lower())

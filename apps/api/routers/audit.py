"""
Audit router: run admission, status polling, single-stage execution and the
secret-protected worker/admin surface.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db, get_session_factory
from routers.rate_limit import rate_limit
from services.audit_runs import (
    admin_mark_run_failed,
    admin_retry_run,
    admit_run,
    dispatch_run,
    reap_stale_runs,
    run_summary,
    tick_audit_runner,
)
from services.audit_status import get_active_run_for_product, get_run_status
from services.audit_worker import run_audit_worker
from services.errors import InputError, NotFoundError, ServiceDisabledError, UnauthorizedError
from services.stage_runner import ENDPOINT_STAGES, run_stage

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(default=None, alias="productId")
    slug: Optional[str] = None
    force_refresh: bool = Field(default=False, alias="forceRefresh")


class StageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(default=None, alias="productId")
    force_redo: bool = Field(default=False, alias="forceRedo")


class WorkerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: Optional[str] = Field(default=None, alias="runId")
    claimed: bool = False


class FailRunRequest(BaseModel):
    reason: Optional[str] = None


def require_worker_secret(x_internal_worker_secret: Optional[str] = Header(default=None)) -> None:
    expected = (settings.INTERNAL_WORKER_SECRET or "").strip()
    if not expected:
        raise ServiceDisabledError("WORKER_DISABLED", "INTERNAL_WORKER_SECRET is not configured")
    if not x_internal_worker_secret or not hmac.compare_digest(x_internal_worker_secret, expected):
        raise UnauthorizedError()


@router.post("")
@router.post("/queue")
async def create_audit_run(
    request: CreateRunRequest,
    background_tasks: BackgroundTasks,
    _rate_limit: None = Depends(
        rate_limit(
            "audit_create",
            limit=settings.AUDIT_CREATE_RATE_LIMIT,
            window_seconds=settings.AUDIT_CREATE_RATE_WINDOW_SECONDS,
        )
    ),
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """Return the product's live run, creating and dispatching one if needed."""
    result = await admit_run(db, request.product_id or request.slug, force_refresh=request.force_refresh)
    if result.created:
        dispatch_run(result.run.id, background_tasks=background_tasks, session_factory=session_factory)
    return run_summary(result.run, cached=result.cached)


@router.get("/status")
async def audit_status(
    run_id: Optional[str] = Query(default=None, alias="runId"),
    product_id: Optional[str] = Query(default=None, alias="productId"),
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """Run status by ``runId``, or the active run for ``productId``."""
    if run_id is None and product_id is not None:
        return await get_active_run_for_product(db, product_id)
    return await get_run_status(db, run_id, session_factory)


@router.post("/stage{stage_number}")
async def run_single_stage(
    stage_number: str,
    request: StageRequest,
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    stage_name = ENDPOINT_STAGES.get(f"stage{stage_number}")
    if stage_name is None:
        raise NotFoundError("UNKNOWN_STAGE", f"stage{stage_number} does not exist")
    return await run_stage(
        db,
        request.product_id,
        stage_name,
        force_redo=request.force_redo,
        session_factory=session_factory,
    )


@router.post("/worker", dependencies=[Depends(require_worker_secret)])
async def run_worker(request: WorkerRequest, session_factory=Depends(get_session_factory)):
    """Execute a run synchronously (internal callers only)."""
    run_id = (request.run_id or "").strip()
    if not run_id:
        raise InputError("MISSING_RUN_ID", "runId is required")
    return await run_audit_worker(run_id, session_factory=session_factory, claimed=request.claimed)


@router.post("/admin/runs/{run_id}/fail", dependencies=[Depends(require_worker_secret)])
async def fail_run(run_id: str, request: Optional[FailRunRequest] = None, db: AsyncSession = Depends(get_db)):
    run = await admin_mark_run_failed(db, run_id, request.reason if request else None)
    return run_summary(run)


@router.post("/admin/runs/{run_id}/retry", dependencies=[Depends(require_worker_secret)])
async def retry_run(
    run_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    run = await admin_retry_run(db, run_id)
    dispatch_run(run.id, background_tasks=background_tasks, session_factory=session_factory)
    return run_summary(run)


@router.post("/admin/reap", dependencies=[Depends(require_worker_secret)])
async def reap_runs(session_factory=Depends(get_session_factory)):
    counts = await reap_stale_runs(session_factory)
    return {"ok": True, **counts}


@router.post("/admin/tick", dependencies=[Depends(require_worker_secret)])
async def tick_runner(background_tasks: BackgroundTasks, session_factory=Depends(get_session_factory)):
    run_id = await tick_audit_runner(session_factory, background_tasks=background_tasks)
    return {"ok": True, "runId": run_id}

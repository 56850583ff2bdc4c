"""
Status read model.

``activeRun`` always describes the requested run. ``displayRun`` and
``data_source`` describe where the shown audit data came from: the requested
run itself, or the product's last successful run while a refresh is in flight
or after it failed.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.audit_assessment import AuditAssessment
from models.audit_run import AuditRun
from services.audit_runs import find_active_run, is_run_stale, resolve_product
from services.canonical import get_shadow_spec, map_audit_payload
from services.errors import InputError, NotFoundError
from services.stage_state import RUN_DONE, STORED_SUCCESS_STATUSES, StageState, normalize_run_status

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _run_view(run: AuditRun) -> Dict[str, Any]:
    state = StageState.load(run.stage_state)
    return {
        "id": run.id,
        "product_id": run.product_id,
        "run_number": run.run_number,
        "status": normalize_run_status(run.status),
        "progress": int(run.progress or 0),
        "current_stage": state.current,
        "attempt_count": int(run.attempt_count or 0),
        "error": run.error,
        "created_at": _iso(run.created_at),
        "started_at": _iso(run.started_at),
        "finished_at": _iso(run.finished_at),
        "last_heartbeat": _iso(run.last_heartbeat),
    }


async def _assessment_for(db: AsyncSession, run_id: str) -> Optional[AuditAssessment]:
    result = await db.execute(select(AuditAssessment).where(AuditAssessment.audit_run_id == run_id))
    return result.scalar_one_or_none()


async def _last_success(
    session_factory, product_id: str, exclude_run_id: str
) -> Tuple[Optional[AuditRun], Optional[AuditAssessment]]:
    async with session_factory() as db:
        result = await db.execute(
            select(AuditRun, AuditAssessment)
            .join(AuditAssessment, AuditAssessment.audit_run_id == AuditRun.id)
            .where(
                AuditRun.product_id == product_id,
                AuditRun.status.in_(STORED_SUCCESS_STATUSES),
                AuditRun.id != exclude_run_id,
            )
            .order_by(AuditRun.created_at.desc())
            .limit(1)
        )
        row = result.first()
        if row is None:
            return None, None
        return row[0], row[1]


async def _load_shadow(session_factory, product_id: str):
    async with session_factory() as db:
        return await get_shadow_spec(db, product_id)


async def _no_fallback():
    return None, None


async def get_run_status(db: AsyncSession, run_id: Optional[str], session_factory) -> Dict[str, Any]:
    if not (run_id or "").strip():
        raise InputError("MISSING_RUN_ID", "runId is required")

    run = await db.get(AuditRun, run_id.strip(), populate_existing=True)
    if run is None:
        raise NotFoundError("RUN_NOT_FOUND", f"Run {run_id} not found")

    status = normalize_run_status(run.status)
    own_assessment = await _assessment_for(db, run.id)
    has_own_data = status == RUN_DONE and own_assessment is not None

    shadow, (fallback_run, fallback_assessment) = await asyncio.gather(
        _load_shadow(session_factory, run.product_id),
        _no_fallback() if has_own_data else _last_success(session_factory, run.product_id, run.id),
    )

    if has_own_data:
        display_run, assessment, data_source = run, own_assessment, "current_run"
    elif fallback_run is not None:
        display_run, assessment, data_source = fallback_run, fallback_assessment, "last_success"
    else:
        display_run, assessment, data_source = None, None, "none"

    state = StageState.load(run.stage_state).dump()
    return {
        "ok": True,
        "runId": run.id,
        "status": status,
        "progress": int(run.progress or 0),
        "activeRun": _run_view(run),
        "displayRun": _run_view(display_run) if display_run is not None else None,
        "data_source": data_source,
        "audit": map_audit_payload(shadow, assessment) if display_run is not None else None,
        "stages": state["stages"],
        "current_stage": state["current"],
        "error": run.error,
    }


async def get_active_run_for_product(db: AsyncSession, product_ref: Optional[str]) -> Dict[str, Any]:
    product = await resolve_product(db, product_ref)
    run = await find_active_run(db, product.id)
    if run is None:
        return {"ok": True, "run": None}
    view = _run_view(run)
    view["stale"] = is_run_stale(run)
    return {"ok": True, "run": view}

"""
Audit run lifecycle: admission, claiming, supervision and admin actions.

The ``audit_runs`` row is the mutual-exclusion point. A partial unique index
allows one pending/running run per product; admission checks first and falls
back to re-reading the active run when its insert loses that race.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import as_utc, async_session_maker, utcnow
from models.audit_run import AuditRun
from models.product import Product
from services.canonical import get_shadow_spec, is_shadow_fresh
from services.errors import InputError, NotFoundError, PrerequisiteError
from services.stage_state import (
    ACTIVE_RUN_STATUSES,
    RUN_DONE,
    RUN_ERROR,
    RUN_PENDING,
    RUN_RUNNING,
    STORED_SUCCESS_STATUSES,
    empty_stage_state,
    normalize_run_status,
)

logger = logging.getLogger(__name__)

STALE_RUN_MESSAGE = "Stale run detected by supervisor"
HEARTBEAT_RETRY_MESSAGE = "Heartbeat timeout - retrying"
HEARTBEAT_TIMEOUT_MESSAGE = "HEARTBEAT_TIMEOUT"

_background_runs = set()


@dataclass
class AdmissionResult:
    run: AuditRun
    created: bool = False
    cached: bool = False


def run_summary(run: AuditRun, cached: bool = False) -> Dict[str, Any]:
    payload = {
        "ok": True,
        "runId": run.id,
        "status": normalize_run_status(run.status),
        "progress": int(run.progress or 0),
    }
    if cached:
        payload["cached"] = True
    return payload


async def resolve_product(db: AsyncSession, product_ref: Optional[str]) -> Product:
    """Look up a product by id, falling back to slug."""
    ref = (product_ref or "").strip()
    if not ref:
        raise InputError("MISSING_PRODUCT_ID", "productId or slug is required")

    product = await db.get(Product, ref)
    if product is None:
        result = await db.execute(select(Product).where(Product.slug == ref))
        product = result.scalar_one_or_none()
    if product is None:
        raise NotFoundError("ASSET_NOT_FOUND", f"No product matches '{ref}'")
    return product


def _pending_since(run: AuditRun) -> Optional[datetime]:
    return as_utc(run.updated_at) or as_utc(run.created_at)


def _heartbeat_at(run: AuditRun) -> Optional[datetime]:
    return as_utc(run.last_heartbeat) or as_utc(run.started_at) or as_utc(run.created_at)


def is_run_stale(run: AuditRun, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    status = normalize_run_status(run.status)
    if status == RUN_RUNNING:
        heartbeat = _heartbeat_at(run)
        return heartbeat is None or (now - heartbeat).total_seconds() > settings.RUNNING_STALE_SECONDS
    if status == RUN_PENDING:
        since = _pending_since(run)
        return since is None or (now - since).total_seconds() > settings.PENDING_STALE_SECONDS
    return False


async def find_active_run(db: AsyncSession, product_id: str) -> Optional[AuditRun]:
    """Most recent pending/running run. Lookup errors count as no run."""
    try:
        result = await db.execute(
            select(AuditRun)
            .where(AuditRun.product_id == product_id, AuditRun.status.in_(ACTIVE_RUN_STATUSES))
            .order_by(AuditRun.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.error("Active run lookup failed for product %s: %s", product_id, exc)
        await db.rollback()
        return None


async def latest_successful_run(
    db: AsyncSession,
    product_id: str,
    exclude_run_id: Optional[str] = None,
) -> Optional[AuditRun]:
    query = select(AuditRun).where(
        AuditRun.product_id == product_id,
        AuditRun.status.in_(STORED_SUCCESS_STATUSES),
    )
    if exclude_run_id:
        query = query.where(AuditRun.id != exclude_run_id)
    result = await db.execute(query.order_by(AuditRun.created_at.desc()).limit(1))
    return result.scalar_one_or_none()


async def supersede_stale_run(db: AsyncSession, run: AuditRun, reason: str = STALE_RUN_MESSAGE) -> bool:
    """Mark an active run as error. Returns False if it already left the active set."""
    now = utcnow()
    result = await db.execute(
        update(AuditRun)
        .where(AuditRun.id == run.id, AuditRun.status.in_(ACTIVE_RUN_STATUSES))
        .values(status=RUN_ERROR, error=reason, finished_at=now, locked_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    superseded = result.rowcount == 1
    if superseded:
        logger.warning("Superseded stale run %s (product %s, was %s)", run.id, run.product_id, run.status)
    return superseded


async def _next_run_number(db: AsyncSession, product_id: str) -> int:
    result = await db.execute(select(func.max(AuditRun.run_number)).where(AuditRun.product_id == product_id))
    return int(result.scalar() or 0) + 1


async def create_pending_run(db: AsyncSession, product_id: str) -> AdmissionResult:
    """Insert a pending run; a lost uniqueness race returns the winner instead."""
    run = AuditRun(
        product_id=product_id,
        status=RUN_PENDING,
        progress=0,
        stage_state=empty_stage_state(),
        run_number=await _next_run_number(db, product_id),
        attempt_count=0,
        created_at=utcnow(),
    )
    db.add(run)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        winner = await find_active_run(db, product_id)
        if winner is None:
            raise
        logger.info("Concurrent admission for product %s converged on run %s", product_id, winner.id)
        return AdmissionResult(run=winner)

    await db.refresh(run)
    logger.info("Created audit run %s (#%s) for product %s", run.id, run.run_number, product_id)
    return AdmissionResult(run=run, created=True)


async def admit_run(db: AsyncSession, product_ref: Optional[str], force_refresh: bool = False) -> AdmissionResult:
    """Return the run a caller should follow for this product, creating one if needed."""
    product = await resolve_product(db, product_ref)

    if not force_refresh:
        shadow = await get_shadow_spec(db, product.id)
        if is_shadow_fresh(shadow):
            cached_run = await latest_successful_run(db, product.id)
            if cached_run is not None:
                logger.info("Serving cached audit run %s for product %s", cached_run.id, product.id)
                return AdmissionResult(run=cached_run, cached=True)

    active = await find_active_run(db, product.id)
    if active is not None:
        if not is_run_stale(active):
            return AdmissionResult(run=active)
        await supersede_stale_run(db, active)

    return await create_pending_run(db, product.id)


def dispatch_run(
    run_id: str,
    background_tasks: Optional[BackgroundTasks] = None,
    claimed: bool = False,
    session_factory=None,
) -> bool:
    """
    Hand a run to the configured executor.

    Failures are logged and leave the run pending for the supervisor tick.
    """
    mode = settings.AUDIT_DISPATCH_MODE
    if mode == "none":
        return False

    if mode == "background":
        from services.audit_worker import run_audit_worker

        if background_tasks is not None:
            background_tasks.add_task(run_audit_worker, run_id, session_factory, claimed)
        else:
            task = asyncio.get_running_loop().create_task(run_audit_worker(run_id, session_factory, claimed))
            _background_runs.add(task)
            task.add_done_callback(_background_runs.discard)
        return True

    from services.audit_queue import enqueue_audit_run

    try:
        enqueue_audit_run(run_id, claimed=claimed)
        return True
    except Exception as exc:
        logger.error("Failed to enqueue audit run %s, leaving it for the supervisor: %s", run_id, exc)
        return False


async def claim_run(run_id: str, session_factory=None) -> bool:
    """Atomically move a run from pending to running."""
    session_factory = session_factory or async_session_maker
    now = utcnow()
    async with session_factory() as db:
        result = await db.execute(
            update(AuditRun)
            .where(AuditRun.id == run_id, AuditRun.status == RUN_PENDING)
            .values(
                status=RUN_RUNNING,
                started_at=now,
                last_heartbeat=now,
                locked_at=now,
                attempt_count=func.coalesce(AuditRun.attempt_count, 0) + 1,
                error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    claimed = result.rowcount == 1
    if claimed:
        logger.info("Claimed audit run %s", run_id)
    return claimed


async def claim_next_run(session_factory=None) -> Optional[str]:
    """Claim the oldest pending run, if any."""
    session_factory = session_factory or async_session_maker
    for _ in range(3):
        async with session_factory() as db:
            result = await db.execute(
                select(AuditRun.id)
                .where(AuditRun.status == RUN_PENDING)
                .order_by(AuditRun.created_at.asc())
                .limit(1)
            )
            run_id = result.scalar_one_or_none()
        if run_id is None:
            return None
        if await claim_run(run_id, session_factory):
            return run_id
    return None


async def tick_audit_runner(session_factory=None, background_tasks: Optional[BackgroundTasks] = None) -> Optional[str]:
    """Claim one pending run and dispatch it as already claimed."""
    run_id = await claim_next_run(session_factory)
    if run_id is None:
        return None
    if not dispatch_run(run_id, background_tasks=background_tasks, claimed=True, session_factory=session_factory):
        # Give the run back so the next tick can retry dispatch.
        session_factory = session_factory or async_session_maker
        async with session_factory() as db:
            await db.execute(
                update(AuditRun)
                .where(AuditRun.id == run_id, AuditRun.status == RUN_RUNNING)
                .values(status=RUN_PENDING, locked_at=None, last_heartbeat=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return None
    return run_id


async def reap_stale_runs(session_factory=None) -> Dict[str, int]:
    """
    Reclaim abandoned runs.

    Running runs with an old heartbeat go back to pending until they run out
    of attempts, then fail. Pending runs that nobody picked up fail.
    """
    session_factory = session_factory or async_session_maker
    now = utcnow()
    heartbeat_cutoff = now - timedelta(seconds=settings.REAPER_HEARTBEAT_TIMEOUT_SECONDS)
    counts = {"requeued": 0, "failed": 0, "expired": 0}

    async with session_factory() as db:
        result = await db.execute(select(AuditRun).where(AuditRun.status.in_(ACTIVE_RUN_STATUSES)))
        runs = result.scalars().all()

        for run in runs:
            if run.status == RUN_RUNNING:
                heartbeat = _heartbeat_at(run)
                if heartbeat is not None and heartbeat >= heartbeat_cutoff:
                    continue
                if int(run.attempt_count or 0) < settings.MAX_RUN_ATTEMPTS:
                    values = dict(
                        status=RUN_PENDING,
                        last_heartbeat=None,
                        locked_at=None,
                        error=HEARTBEAT_RETRY_MESSAGE,
                        updated_at=now,
                    )
                    key = "requeued"
                else:
                    values = dict(status=RUN_ERROR, error=HEARTBEAT_TIMEOUT_MESSAGE, finished_at=now, locked_at=None)
                    key = "failed"
                # Only touch the row if it still carries the heartbeat we judged.
                guard = (
                    AuditRun.last_heartbeat.is_(None)
                    if run.last_heartbeat is None
                    else AuditRun.last_heartbeat == run.last_heartbeat
                )
                outcome = await db.execute(
                    update(AuditRun)
                    .where(AuditRun.id == run.id, AuditRun.status == RUN_RUNNING, guard)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if outcome.rowcount == 1:
                    counts[key] += 1
                    logger.warning("Reaper %s run %s (attempts=%s)", key, run.id, run.attempt_count)
            else:
                since = _pending_since(run)
                if since is not None and (now - since).total_seconds() <= settings.PENDING_STALE_SECONDS:
                    continue
                outcome = await db.execute(
                    update(AuditRun)
                    .where(AuditRun.id == run.id, AuditRun.status == RUN_PENDING)
                    .values(status=RUN_ERROR, error=STALE_RUN_MESSAGE, finished_at=now, locked_at=None)
                    .execution_options(synchronize_session=False)
                )
                if outcome.rowcount == 1:
                    counts["expired"] += 1
                    logger.warning("Reaper expired pending run %s", run.id)

        await db.commit()
    return counts


async def supervise_once(session_factory=None) -> Dict[str, Any]:
    counts = await reap_stale_runs(session_factory)
    dispatched = await tick_audit_runner(session_factory)
    return {**counts, "dispatched": dispatched}


async def _get_run_or_404(db: AsyncSession, run_id: str) -> AuditRun:
    run = await db.get(AuditRun, run_id, populate_existing=True)
    if run is None:
        raise NotFoundError("RUN_NOT_FOUND", f"Run {run_id} not found")
    return run


async def admin_mark_run_failed(db: AsyncSession, run_id: str, reason: Optional[str] = None) -> AuditRun:
    run = await _get_run_or_404(db, run_id)
    run.status = RUN_ERROR
    run.finished_at = utcnow()
    run.locked_at = None
    run.error = reason or "Marked failed by operator"
    await db.commit()
    await db.refresh(run)
    logger.warning("Admin marked run %s failed: %s", run_id, run.error)
    return run


async def admin_retry_run(db: AsyncSession, run_id: str) -> AuditRun:
    run = await _get_run_or_404(db, run_id)
    other = await find_active_run(db, run.product_id)
    if other is not None and other.id != run.id:
        raise PrerequisiteError("ACTIVE_RUN_EXISTS", f"Run {other.id} is already active for this product")

    run.status = RUN_PENDING
    run.locked_at = None
    run.last_heartbeat = None
    run.finished_at = None
    run.error = None
    run.attempt_count = int(run.attempt_count or 0) + 1
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise PrerequisiteError("ACTIVE_RUN_EXISTS", "Another run became active for this product") from exc
    await db.refresh(run)
    logger.info("Admin requeued run %s", run_id)
    return run

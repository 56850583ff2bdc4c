"""
Audit run worker.

Advances one claimed run through the ordered stages, persisting the typed
``stage_state`` after every transition. Every write is conditional on the run
still being ``running``: once a supervisor supersedes the run, the worker
stops without landing further writes.
"""

import asyncio
import contextlib
import logging
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.future import select

from config import settings
from database import async_session_maker, utcnow
from models.audit_assessment import AuditAssessment
from models.audit_run import AuditRun
from models.product import Product
from services.audit_runs import claim_run
from services.canonical import finalize_canonical, mirror_stage_output
from services.errors import NotFoundError, RunSupersededError, StageExecutionError
from services.stage_executors import (
    execute_stage1,
    execute_stage2,
    execute_stage3,
    execute_stage3_5,
    execute_stage4,
    product_snapshot,
)
from services.stage_state import (
    RUN_DONE,
    RUN_ERROR,
    RUN_INCOMPLETE,
    RUN_RUNNING,
    RUN_TIMEOUT,
    STAGE_BLOCKED,
    STAGE_DONE,
    STAGE_ERROR,
    STAGE_ORDER,
    STAGE_RUNNING,
    StageState,
    blocked_reason,
    compute_progress,
    downstream_stages,
    merge_stage_record,
    normalize_run_status,
)
from services.stage_validators import raw_excerpt, validate_stage

logger = logging.getLogger(__name__)

# Validation failures that leave the run incomplete rather than errored.
INCOMPLETE_ON_INVALID = {"stage_3"}


def _executors() -> Dict[str, Any]:
    return {
        "stage_1": execute_stage1,
        "stage_2": execute_stage2,
        "stage_3": execute_stage3,
        "stage_3.5": execute_stage3_5,
        "stage_4": execute_stage4,
    }


class RunWriter:
    """Conditional writer for one running run and its stage state."""

    def __init__(self, session_factory, run_id: str, state: StageState):
        self.session_factory = session_factory
        self.run_id = run_id
        self.state = state

    async def _write(self, **values) -> None:
        now = utcnow()
        values.setdefault("last_heartbeat", now)
        values["updated_at"] = now
        async with self.session_factory() as db:
            result = await db.execute(
                update(AuditRun)
                .where(AuditRun.id == self.run_id, AuditRun.status == RUN_RUNNING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            raise RunSupersededError(self.run_id)

    async def touch(self) -> None:
        await self._write()

    async def stage(self, stage_name: str, status: str, meta: Optional[Dict[str, Any]] = None, output: Any = None) -> None:
        self.state = merge_stage_record(self.state, stage_name, status, meta=meta, output=output)
        await self._write(stage_state=self.state.dump(), progress=compute_progress(self.state))
        logger.info("Run %s %s -> %s", self.run_id, stage_name, status)

    async def terminate(
        self,
        run_status: str,
        error: str,
        failed_stage: Optional[str] = None,
        stage_meta: Optional[Dict[str, Any]] = None,
        block_kind: str = "failed",
    ) -> None:
        """Mark the failed stage, block everything after it and end the run."""
        if failed_stage:
            self.state = merge_stage_record(self.state, failed_stage, STAGE_ERROR, meta=stage_meta)
            reason = blocked_reason(failed_stage, block_kind)
            for name in downstream_stages(failed_stage):
                self.state = merge_stage_record(
                    self.state,
                    name,
                    STAGE_BLOCKED,
                    meta={"reason": reason, "blocked_by": failed_stage},
                    keep_output=False,
                )
            # Leave the failed stage as the current one.
            self.state = self.state.model_copy(update={"current": failed_stage})
        await self._write(
            status=run_status,
            error=error,
            stage_state=self.state.dump(),
            progress=compute_progress(self.state),
            finished_at=utcnow(),
            locked_at=None,
        )
        logger.warning("Run %s ended %s: %s", self.run_id, run_status, error)

    async def finish(self) -> None:
        await self._write(
            status=RUN_DONE,
            error=None,
            stage_state=self.state.dump(),
            progress=100,
            finished_at=utcnow(),
            locked_at=None,
        )
        logger.info("Run %s done", self.run_id)


async def _heartbeat_loop(session_factory, run_id: str, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            async with session_factory() as db:
                result = await db.execute(
                    update(AuditRun)
                    .where(AuditRun.id == run_id, AuditRun.status == RUN_RUNNING)
                    .values(last_heartbeat=utcnow())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except SQLAlchemyError as exc:
            logger.warning("Heartbeat write failed for run %s: %s", run_id, exc)
            continue
        if result.rowcount != 1:
            logger.info("Heartbeat stopped for run %s: no longer running", run_id)
            return


async def _store_assessment(session_factory, run_id: str, verdict: Dict[str, Any]) -> None:
    assessment = {
        "verdict": verdict.get("score_interpretation"),
        "truth_index": verdict.get("truth_index"),
        "strengths": verdict.get("strengths") or [],
        "limitations": verdict.get("limitations") or [],
        "practical_impact": verdict.get("practical_impact") or [],
        "good_fit": verdict.get("good_fit") or [],
        "consider_alternatives": verdict.get("consider_alternatives") or [],
        "metric_bars": verdict.get("metric_bars") or [],
    }
    async with session_factory() as db:
        result = await db.execute(select(AuditAssessment).where(AuditAssessment.audit_run_id == run_id))
        row = result.scalar_one_or_none()
        if row is None:
            db.add(AuditAssessment(audit_run_id=run_id, assessment_json=assessment))
        else:
            row.assessment_json = assessment
        await db.commit()


async def _execute_pipeline(writer: RunWriter, run: Dict[str, Any], product: Dict[str, Any], session_factory) -> None:
    outputs: Dict[str, Any] = {}
    executors = _executors()

    for name in STAGE_ORDER:
        cached = writer.state.cached_output(name)
        if cached is not None:
            logger.info("Run %s resuming past %s", writer.run_id, name)
            outputs[name] = cached
            continue

        await writer.stage(name, STAGE_RUNNING)
        try:
            output = await executors[name](product, dict(outputs))
        except StageExecutionError as exc:
            await writer.terminate(
                RUN_ERROR,
                error=f"{name} failed: {exc}",
                failed_stage=name,
                stage_meta={"error": str(exc)[:500]},
                block_kind="failed",
            )
            return

        result = validate_stage(name, output)
        if not result.valid:
            logger.warning(
                "Run %s %s invalid: %s (items=%s, key=%s)",
                writer.run_id,
                name,
                result.error,
                result.item_count,
                result.array_key,
            )
            await writer.terminate(
                RUN_INCOMPLETE if name in INCOMPLETE_ON_INVALID else RUN_ERROR,
                error=f"{name} validation failed: {result.error}",
                failed_stage=name,
                stage_meta={**result.as_meta(), "raw_excerpt": raw_excerpt(output)},
                block_kind="invalid",
            )
            return

        await writer.stage(name, STAGE_DONE, meta=result.as_meta(), output=output)
        outputs[name] = output

        if name != STAGE_ORDER[-1]:
            try:
                await mirror_stage_output(
                    run["product_id"], name, output, writer.run_id, run["run_number"], session_factory
                )
            except (SQLAlchemyError, RuntimeError) as exc:
                logger.warning("Stage mirror failed for run %s %s: %s", writer.run_id, name, exc)

    await writer.touch()
    await finalize_canonical(
        run["product_id"],
        outputs,
        run_id=writer.run_id,
        run_number=run["run_number"],
        session_factory=session_factory,
    )
    await _store_assessment(session_factory, writer.run_id, outputs["stage_4"])
    await writer.finish()


async def _load_run(session_factory, run_id: str) -> Optional[Dict[str, Any]]:
    async with session_factory() as db:
        run = await db.get(AuditRun, run_id, populate_existing=True)
        if run is None:
            return None
        product = await db.get(Product, run.product_id)
        return {
            "id": run.id,
            "product_id": run.product_id,
            "run_number": run.run_number,
            "status": normalize_run_status(run.status),
            "progress": int(run.progress or 0),
            "stage_state": run.stage_state,
            "product": product_snapshot(product) if product is not None else None,
        }


async def _run_outcome(session_factory, run_id: str) -> Dict[str, Any]:
    async with session_factory() as db:
        run = await db.get(AuditRun, run_id, populate_existing=True)
        if run is None:
            raise NotFoundError("RUN_NOT_FOUND", f"Run {run_id} not found")
        outcome = {
            "ok": True,
            "runId": run.id,
            "status": normalize_run_status(run.status),
            "progress": int(run.progress or 0),
        }
        if run.error:
            outcome["error"] = run.error
        result = await db.execute(select(AuditAssessment).where(AuditAssessment.audit_run_id == run_id))
        assessment = result.scalar_one_or_none()
        if assessment is not None:
            outcome["truth_index"] = (assessment.assessment_json or {}).get("truth_index")
        return outcome


async def _fail_quietly(writer: RunWriter, run_status: str, error: str, stage_meta: Optional[Dict[str, Any]] = None) -> None:
    current = writer.state.current
    failed_stage = current if current and writer.state.status_of(current) == STAGE_RUNNING else None
    try:
        await writer.terminate(run_status, error, failed_stage=failed_stage, stage_meta=stage_meta, block_kind="failed")
    except RunSupersededError:
        logger.info("Run %s superseded before it could be marked %s", writer.run_id, run_status)


async def run_audit_worker(run_id: str, session_factory=None, claimed: bool = False) -> Dict[str, Any]:
    """Execute one audit run end to end and return its final summary."""
    session_factory = session_factory or async_session_maker

    if not claimed and not await claim_run(run_id, session_factory):
        logger.info("Run %s could not be claimed; another worker owns it or it is finished", run_id)
        return await _run_outcome(session_factory, run_id)

    run = await _load_run(session_factory, run_id)
    if run is None:
        raise NotFoundError("RUN_NOT_FOUND", f"Run {run_id} not found")

    writer = RunWriter(session_factory, run_id, StageState.load(run["stage_state"]))
    if run["product"] is None:
        await _fail_quietly(writer, RUN_ERROR, "ASSET_NOT_FOUND")
        return await _run_outcome(session_factory, run_id)

    heartbeat = asyncio.create_task(_heartbeat_loop(session_factory, run_id, settings.HEARTBEAT_INTERVAL_SECONDS))
    try:
        await asyncio.wait_for(
            _execute_pipeline(writer, run, run["product"], session_factory),
            timeout=settings.RUN_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        await _fail_quietly(
            writer,
            RUN_TIMEOUT,
            f"Run exceeded {settings.RUN_TIMEOUT_SECONDS:g}s timeout",
            stage_meta={"error": "timeout"},
        )
    except RunSupersededError:
        logger.warning("Run %s was superseded; worker stopped writing", run_id)
    except Exception as exc:
        logger.exception("Run %s crashed", run_id)
        await _fail_quietly(writer, RUN_ERROR, str(exc) or exc.__class__.__name__, stage_meta={"error": str(exc)[:500]})
    finally:
        heartbeat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await heartbeat

    return await _run_outcome(session_factory, run_id)


def process_audit_run_job(run_id: str, claimed: bool = False) -> Dict[str, Any]:
    """RQ worker entrypoint for audit runs."""
    return asyncio.run(run_audit_worker(run_id, claimed=claimed))

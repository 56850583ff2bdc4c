"""Single-stage execution against the per-product ``audit_stage_runs`` table."""

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import utcnow
from models.audit_stage_run import AuditStageRun
from services import stage_executors
from services.audit_runs import resolve_product
from services.canonical import finalize_canonical, mirror_stage_output
from services.errors import (
    AuditError,
    FailedDependencyError,
    PrerequisiteError,
    StageExecutionError,
    StageValidationError,
)
from services.normalization import build_normalized_output
from services.stage_state import (
    STAGE_BLOCKED,
    STAGE_DONE,
    STAGE_ERROR,
    STAGE_RUNNING,
    STAGES_BY_NAME,
    blocked_reason,
)
from services.stage_validators import raw_excerpt, validate_stage

logger = logging.getLogger(__name__)

STAGE_PREREQUISITES = {
    "stage_1": (),
    "stage_2": ("stage_1",),
    "stage_3": ("stage_1", "stage_2"),
    "stage_4": ("stage_3",),
}
MAX_SAVE_ATTEMPTS = 3
ENDPOINT_STAGES = {"stage1": "stage_1", "stage2": "stage_2", "stage3": "stage_3", "stage4": "stage_4"}
# Blocking a stage here only reaches stages the endpoints can run.
DEPENDENTS = {"stage_1": ("stage_2", "stage_3"), "stage_2": ("stage_3",), "stage_3": ("stage_4",), "stage_4": ()}


def _executor_for(stage_name: str):
    return {
        "stage_1": stage_executors.execute_stage1,
        "stage_2": stage_executors.execute_stage2,
        "stage_3": stage_executors.execute_stage3,
        "stage_4": stage_executors.execute_stage4,
    }[stage_name]


async def _load_rows(db: AsyncSession, product_id: str) -> Dict[str, AuditStageRun]:
    result = await db.execute(
        select(AuditStageRun)
        .where(AuditStageRun.product_id == product_id)
        .execution_options(populate_existing=True)
    )
    return {row.stage: row for row in result.scalars().all()}


def _check_prerequisites(stage_name: str, rows: Dict[str, AuditStageRun]) -> None:
    for prerequisite in STAGE_PREREQUISITES[stage_name]:
        row = rows.get(prerequisite)
        if row is not None and row.status in (STAGE_ERROR, STAGE_BLOCKED):
            raise FailedDependencyError(
                "PREREQ_FAILED_DEPENDENCY",
                f"{prerequisite} is {row.status}; re-run it before {stage_name}",
            )
        if row is None or row.status != STAGE_DONE or row.output_json is None:
            raise PrerequisiteError("PREREQ_FAILED", f"{prerequisite} must complete before {stage_name}")


def _upsert(db: AsyncSession, rows: Dict[str, AuditStageRun], product_id: str, stage_name: str) -> AuditStageRun:
    row = rows.get(stage_name)
    if row is None:
        row = AuditStageRun(product_id=product_id, stage=stage_name, status="pending")
        db.add(row)
        rows[stage_name] = row
    return row


def _block_dependents(db, rows, product_id: str, stage_name: str, kind: str) -> None:
    reason = blocked_reason(stage_name, kind)
    for dependent in DEPENDENTS[stage_name]:
        row = _upsert(db, rows, product_id, dependent)
        row.status = STAGE_BLOCKED
        row.meta_json = {**(row.meta_json or {}), "reason": reason, "blocked_by": stage_name}
        row.updated_at = utcnow()


def _prior_outputs(rows: Dict[str, AuditStageRun]) -> Dict[str, Any]:
    prior = {name: row.output_json for name, row in rows.items() if row.status == STAGE_DONE and row.output_json is not None}
    # Stored stage 3 output is already normalized.
    if "stage_3" in prior:
        prior["stage_3.5"] = prior["stage_3"]
    return prior


async def _save_rows(
    db: AsyncSession,
    product_id: str,
    apply: Callable[[Dict[str, AuditStageRun]], None],
) -> Dict[str, AuditStageRun]:
    """
    Reload the product's stage rows, apply ``apply`` and commit.

    Two requests can insert the same (product, stage) row at once; the loser
    rolls back and re-applies its change to the row the winner created.
    """
    attempt = 1
    while True:
        rows = await _load_rows(db, product_id)
        apply(rows)
        try:
            await db.commit()
            return rows
        except IntegrityError as exc:
            await db.rollback()
            if attempt >= MAX_SAVE_ATTEMPTS:
                raise
            logger.info(
                "Stage row conflict for product %s (attempt %s/%s): %s",
                product_id,
                attempt,
                MAX_SAVE_ATTEMPTS,
                exc.orig,
            )
            attempt += 1


async def run_stage(
    db: AsyncSession,
    product_ref: Optional[str],
    stage_name: str,
    force_redo: bool = False,
    session_factory=None,
) -> Dict[str, Any]:
    product = await resolve_product(db, product_ref)
    # A rollback expires the product; keep what later steps need.
    product_id = product.id
    snapshot = stage_executors.product_snapshot(product)
    code = STAGES_BY_NAME[stage_name].code.upper()
    cached: Dict[str, Any] = {}

    def mark_running(rows: Dict[str, AuditStageRun]) -> None:
        cached.clear()
        _check_prerequisites(stage_name, rows)
        existing = rows.get(stage_name)
        if existing is not None and existing.status == STAGE_DONE and existing.output_json is not None and not force_redo:
            cached["output"] = existing.output_json
            return
        row = _upsert(db, rows, product_id, stage_name)
        row.status = STAGE_RUNNING
        row.error = None
        row.updated_at = utcnow()

    rows = await _save_rows(db, product_id, mark_running)
    if cached:
        logger.info("Stage %s for product %s served from cache", stage_name, product_id)
        return {"ok": True, "stage": stage_name, "status": STAGE_DONE, "cached": True, "output": cached["output"]}

    try:
        output = await _executor_for(stage_name)(snapshot, _prior_outputs(rows))
    except StageExecutionError as exc:

        def mark_failed(rows: Dict[str, AuditStageRun]) -> None:
            row = _upsert(db, rows, product_id, stage_name)
            row.status = STAGE_ERROR
            row.error = str(exc)[:500]
            row.updated_at = utcnow()
            _block_dependents(db, rows, product_id, stage_name, "failed")

        await _save_rows(db, product_id, mark_failed)
        logger.warning("Stage %s failed for product %s: %s", stage_name, product_id, exc)
        raise AuditError(f"{code}_FAILED", str(exc)) from exc

    result = validate_stage(stage_name, output)
    if not result.valid:

        def mark_invalid(rows: Dict[str, AuditStageRun]) -> None:
            row = _upsert(db, rows, product_id, stage_name)
            row.status = STAGE_ERROR
            row.error = result.error
            row.meta_json = {**result.as_meta(), "raw_excerpt": raw_excerpt(output)}
            row.updated_at = utcnow()
            _block_dependents(db, rows, product_id, stage_name, "invalid")

        await _save_rows(db, product_id, mark_invalid)
        logger.warning(
            "Stage %s invalid for product %s: %s (items=%s)", stage_name, product_id, result.error, result.item_count
        )
        raise StageValidationError(f"{code}_INVALID", result.error)

    if stage_name == "stage_3":
        output = {"reality_ledger": output.get("reality_ledger") or [], **build_normalized_output(output)}

    def mark_done(rows: Dict[str, AuditStageRun]) -> None:
        row = _upsert(db, rows, product_id, stage_name)
        row.status = STAGE_DONE
        row.output_json = output
        row.meta_json = result.as_meta()
        row.error = None
        row.updated_at = utcnow()

    rows = await _save_rows(db, product_id, mark_done)
    logger.info("Stage %s done for product %s", stage_name, product_id)

    if stage_name == "stage_4":
        outputs = _prior_outputs(rows)
        outputs.pop("stage_3.5", None)
        await finalize_canonical(product_id, outputs, session_factory=session_factory)
    else:
        await mirror_stage_output(product_id, stage_name, output, None, None, session_factory=session_factory)

    return {"ok": True, "stage": stage_name, "status": STAGE_DONE, "cached": False, "output": output}

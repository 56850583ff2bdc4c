"""
Canonical ShadowSpec persistence.

One ShadowSpec row per product holds the latest known-good audit. Writers are
fenced: a run may only replace the canonical verdict when its ``run_number``
is at least the number of the run that produced the current one, and every
write goes through the row's optimistic ``version`` column.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from database import as_utc, async_session_maker, utcnow
from models.audit_assessment import AuditAssessment
from models.shadow_spec import ShadowSpec
from services.stage_state import STAGE_ORDER, STAGES_BY_NAME

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


async def get_shadow_spec(db: AsyncSession, product_id: str) -> Optional[ShadowSpec]:
    result = await db.execute(select(ShadowSpec).where(ShadowSpec.product_id == product_id))
    return result.scalar_one_or_none()


def _parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


def is_shadow_fresh(shadow: Optional[ShadowSpec], now: Optional[datetime] = None) -> bool:
    """True when a verdict exists and every stage entry is inside its TTL."""
    if shadow is None or shadow.truth_score is None:
        return False
    now = now or utcnow()
    stages = shadow.stages or {}
    for name in STAGE_ORDER:
        entry = stages.get(name)
        if not isinstance(entry, dict) or entry.get("status") != "done":
            return False
        written = _parse_iso(entry.get("updated_at"))
        ttl_days = entry.get("ttl_days", STAGES_BY_NAME[name].ttl_days)
        if written is None or now - written > timedelta(days=ttl_days):
            return False
    return True


def _stage_entry(stage_name: str, output: Any, run_id: Optional[str], run_number: Optional[int]) -> Dict[str, Any]:
    return {
        "status": "done",
        "output": output,
        "ttl_days": STAGES_BY_NAME[stage_name].ttl_days,
        "updated_at": utcnow().isoformat(),
        "run_id": run_id,
        "run_number": run_number,
    }


async def _write_shadow(
    product_id: str,
    mutate: Callable[[ShadowSpec], bool],
    session_factory=None,
) -> bool:
    """
    Load-or-create the product's ShadowSpec, apply ``mutate`` and commit.

    ``mutate`` returns False to skip the write. A lost optimistic race or a
    concurrent first insert is retried against a fresh row.
    """
    session_factory = session_factory or async_session_maker
    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        async with session_factory() as db:
            try:
                shadow = await get_shadow_spec(db, product_id)
                if shadow is None:
                    shadow = ShadowSpec(product_id=product_id, stages={}, is_verified=False)
                    db.add(shadow)
                if not mutate(shadow):
                    await db.rollback()
                    return False
                shadow.updated_at = utcnow()
                await db.commit()
                return True
            except (StaleDataError, IntegrityError) as exc:
                await db.rollback()
                logger.warning(
                    "ShadowSpec write conflict for product %s (attempt %s/%s): %s",
                    product_id,
                    attempt,
                    MAX_WRITE_ATTEMPTS,
                    exc.__class__.__name__,
                )
    raise RuntimeError(f"ShadowSpec write for product {product_id} kept conflicting")


async def mirror_stage_output(
    product_id: str,
    stage_name: str,
    output: Any,
    run_id: Optional[str],
    run_number: Optional[int],
    session_factory=None,
) -> bool:
    """Progressively copy one done stage into ``ShadowSpec.stages``."""

    def mutate(shadow: ShadowSpec) -> bool:
        stages = dict(shadow.stages or {})
        existing = stages.get(stage_name)
        if (
            run_number is not None
            and isinstance(existing, dict)
            and isinstance(existing.get("run_number"), int)
            and existing["run_number"] > run_number
        ):
            logger.info(
                "Skipping %s mirror for run %s: stage owned by newer run #%s",
                stage_name,
                run_id,
                existing["run_number"],
            )
            return False
        stages[stage_name] = _stage_entry(stage_name, output, run_id, run_number)
        shadow.stages = stages
        return True

    return await _write_shadow(product_id, mutate, session_factory)


def _canonical_fields(outputs: Dict[str, Any]) -> Dict[str, Any]:
    stage1 = outputs.get("stage_1") or {}
    stage3 = outputs.get("stage_3") or {}
    normalized = outputs.get("stage_3.5") or stage3
    stage4 = outputs.get("stage_4") or {}
    return {
        "claimed_specs": stage1.get("claim_profile") or [],
        "actual_specs": stage3.get("reality_ledger") or [],
        "red_flags": normalized.get("red_flags") or [],
        "truth_score": int(round(stage4["truth_index"])),
        "source_urls": stage4.get("source_urls") or stage3.get("source_urls"),
    }


async def finalize_canonical(
    product_id: str,
    outputs: Dict[str, Any],
    run_id: Optional[str] = None,
    run_number: Optional[int] = None,
    session_factory=None,
) -> bool:
    """
    Write the verdict and the full stage map for a validated stage 4 success.

    Returns False when a newer run already owns the canonical row.
    """
    fields = _canonical_fields(outputs)

    def mutate(shadow: ShadowSpec) -> bool:
        if (
            run_number is not None
            and shadow.source_run_number is not None
            and run_number < shadow.source_run_number
        ):
            logger.warning(
                "Fenced canonical write for product %s: run %s (#%s) is older than #%s",
                product_id,
                run_id,
                run_number,
                shadow.source_run_number,
            )
            return False

        shadow.claimed_specs = fields["claimed_specs"]
        shadow.actual_specs = fields["actual_specs"]
        shadow.red_flags = fields["red_flags"]
        shadow.truth_score = fields["truth_score"]
        shadow.is_verified = True
        if fields["source_urls"] is not None:
            shadow.source_urls = fields["source_urls"]

        stages = dict(shadow.stages or {})
        for name in STAGE_ORDER:
            if outputs.get(name) is not None:
                stages[name] = _stage_entry(name, outputs[name], run_id, run_number)
        shadow.stages = stages
        if run_number is not None:
            shadow.source_run_id = run_id
            shadow.source_run_number = run_number
        return True

    written = await _write_shadow(product_id, mutate, session_factory)
    if written:
        logger.info("Canonical ShadowSpec updated for product %s from run %s", product_id, run_id)
    return written


def map_audit_payload(shadow: Optional[ShadowSpec], assessment: Optional[AuditAssessment]) -> Optional[Dict[str, Any]]:
    """Shape canonical data for the status endpoint."""
    if shadow is None and assessment is None:
        return None
    verdict = dict(assessment.assessment_json or {}) if assessment is not None else {}
    payload: Dict[str, Any] = {"assessment": verdict or None}
    if shadow is not None:
        payload.update(
            {
                "product_id": shadow.product_id,
                "claim_profile": shadow.claimed_specs or [],
                "reality_ledger": shadow.actual_specs or [],
                "discrepancies": shadow.red_flags or [],
                "truth_index": shadow.truth_score,
                "is_verified": bool(shadow.is_verified),
                "stages": shadow.stages or {},
                "source_run_id": shadow.source_run_id,
                "updated_at": shadow.updated_at.isoformat() if shadow.updated_at else None,
            }
        )
    elif "truth_index" in verdict:
        payload["truth_index"] = verdict["truth_index"]
    return payload

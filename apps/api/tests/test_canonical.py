from datetime import timedelta

import pytest

from database import utcnow
from models.audit_assessment import AuditAssessment
from services.canonical import (
    finalize_canonical,
    get_shadow_spec,
    is_shadow_fresh,
    map_audit_payload,
    mirror_stage_output,
)


@pytest.mark.asyncio
async def test_older_run_cannot_overwrite_newer_canonical(session_maker, product, stage_outputs):
    assert await finalize_canonical(product.id, stage_outputs, "run-2", 2, session_maker) is True

    stale_outputs = {**stage_outputs, "stage_4": {**stage_outputs["stage_4"], "truth_index": 40}}
    assert await finalize_canonical(product.id, stale_outputs, "run-1", 1, session_maker) is False

    async with session_maker() as db:
        shadow = await get_shadow_spec(db, product.id)
    assert shadow.truth_score == 82
    assert shadow.source_run_id == "run-2"
    assert shadow.source_run_number == 2
    assert shadow.version == 1


@pytest.mark.asyncio
async def test_stage_mirror_respects_newer_runs(session_maker, product, stage_outputs):
    assert await mirror_stage_output(product.id, "stage_2", stage_outputs["stage_2"], "run-3", 3, session_maker)
    assert not await mirror_stage_output(product.id, "stage_2", {"independent_signal": {}}, "run-1", 1, session_maker)
    assert await mirror_stage_output(product.id, "stage_1", stage_outputs["stage_1"], "run-1", 1, session_maker)

    async with session_maker() as db:
        shadow = await get_shadow_spec(db, product.id)
    assert shadow.stages["stage_2"]["run_id"] == "run-3"
    assert shadow.stages["stage_1"]["ttl_days"] == 90
    assert shadow.truth_score is None
    assert shadow.version == 2
    assert is_shadow_fresh(shadow) is False


@pytest.mark.asyncio
async def test_freshness_honors_per_stage_ttl(session_maker, product, stage_outputs):
    outputs = {**stage_outputs, "stage_3.5": {"red_flags": [], "truth_index": {"base": 100}}}
    await finalize_canonical(product.id, outputs, "run-1", 1, session_maker)

    async with session_maker() as db:
        shadow = await get_shadow_spec(db, product.id)
    assert is_shadow_fresh(shadow)
    assert is_shadow_fresh(shadow, now=utcnow() + timedelta(days=29))
    # Community signal expires first.
    assert not is_shadow_fresh(shadow, now=utcnow() + timedelta(days=31))


def test_audit_payload_combines_canonical_and_assessment():
    assessment = AuditAssessment(audit_run_id="r", assessment_json={"verdict": "ok", "truth_index": 90})
    assert map_audit_payload(None, assessment) == {"assessment": {"verdict": "ok", "truth_index": 90}, "truth_index": 90}
    assert map_audit_payload(None, None) is None

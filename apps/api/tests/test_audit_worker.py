import asyncio
from contextlib import ExitStack, contextmanager
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from models.audit_assessment import AuditAssessment
from models.audit_run import AuditRun
from models.product import Product
from models.shadow_spec import ShadowSpec
from services.audit_runs import STALE_RUN_MESSAGE, admit_run, supersede_stale_run
from services.audit_worker import run_audit_worker
from services.canonical import get_shadow_spec, is_shadow_fresh
from services.errors import StageExecutionError
from services.stage_state import STAGE_ORDER, StageState, merge_stage_record

EXECUTOR_NAMES = {
    "stage_1": "execute_stage1",
    "stage_2": "execute_stage2",
    "stage_3": "execute_stage3",
    "stage_4": "execute_stage4",
}


@contextmanager
def patched_executors(outputs, **overrides):
    """Replace the LLM-backed executors; stage 3.5 stays deterministic."""
    mocks = {}
    with ExitStack() as stack:
        for stage, attr in EXECUTOR_NAMES.items():
            mock = overrides.get(stage) or AsyncMock(return_value=outputs[stage])
            mocks[stage] = mock
            stack.enter_context(patch(f"services.audit_worker.{attr}", mock))
        yield mocks


async def _new_run(session_maker, product_id):
    async with session_maker() as db:
        result = await admit_run(db, product_id)
        return result.run.id


async def _load(session_maker, run_id):
    async with session_maker() as db:
        run = await db.get(AuditRun, run_id)
        return run, StageState.load(run.stage_state)


@pytest.mark.asyncio
async def test_worker_runs_every_stage_and_writes_canonical(session_maker, product, stage_outputs):
    run_id = await _new_run(session_maker, product.id)

    with patched_executors(stage_outputs):
        outcome = await run_audit_worker(run_id, session_factory=session_maker)

    assert outcome["status"] == "done"
    assert outcome["progress"] == 100
    assert outcome["truth_index"] == 82

    run, state = await _load(session_maker, run_id)
    assert run.finished_at is not None
    assert run.attempt_count == 1
    assert state.current == "stage_4"
    assert [state.status_of(name) for name in STAGE_ORDER] == ["done"] * 5
    assert state.stages["stage_3"].meta["itemCount"] == 1
    assert state.cached_output("stage_3.5")["truth_index"]["base"] > 0

    async with session_maker() as db:
        shadow = await get_shadow_spec(db, product.id)
        assessment = (
            await db.execute(select(AuditAssessment).where(AuditAssessment.audit_run_id == run_id))
        ).scalar_one()

    assert shadow.truth_score == 82
    assert shadow.is_verified is True
    assert shadow.source_run_id == run_id
    assert shadow.actual_specs == stage_outputs["stage_3"]["reality_ledger"]
    assert len(shadow.red_flags) == 1
    assert set(shadow.stages) == set(STAGE_ORDER)
    assert is_shadow_fresh(shadow)
    assert assessment.assessment_json["verdict"] == stage_outputs["stage_4"]["score_interpretation"]


@pytest.mark.asyncio
async def test_invalid_stage3_leaves_run_incomplete_and_canonical_untouched(session_maker, product, stage_outputs):
    async with session_maker() as db:
        db.add(ShadowSpec(product_id=product.id, truth_score=70, is_verified=True, stages={}))
        await db.commit()
    run_id = await _new_run(session_maker, product.id)

    bad_stage3 = AsyncMock(return_value={"_meta": {"raw_text": "Sorry, no JSON today"}})
    with patched_executors(stage_outputs, stage_3=bad_stage3) as mocks:
        outcome = await run_audit_worker(run_id, session_factory=session_maker)

    assert outcome["status"] == "incomplete"
    assert "no_valid_array_found" in outcome["error"]
    mocks["stage_4"].assert_not_awaited()

    _, state = await _load(session_maker, run_id)
    assert state.current == "stage_3"
    assert state.status_of("stage_3") == "error"
    assert state.stages["stage_3"].meta["validation_error"] == "no_valid_array_found"
    assert state.stages["stage_3"].meta["raw_excerpt"] == "Sorry, no JSON today"
    for name in ("stage_3.5", "stage_4"):
        assert state.status_of(name) == "blocked"
        assert state.stages[name].meta["reason"] == "stage3_invalid"

    async with session_maker() as db:
        shadow = await get_shadow_spec(db, product.id)
    assert shadow.truth_score == 70
    assert {"stage_1", "stage_2"} <= set(shadow.stages)
    assert "stage_3" not in shadow.stages


@pytest.mark.asyncio
async def test_executor_failure_marks_run_error_and_blocks_downstream(session_maker, product, stage_outputs):
    run_id = await _new_run(session_maker, product.id)

    failing = AsyncMock(side_effect=StageExecutionError("LLM request failed: 500"))
    with patched_executors(stage_outputs, stage_2=failing) as mocks:
        outcome = await run_audit_worker(run_id, session_factory=session_maker)

    assert outcome["status"] == "error"
    mocks["stage_3"].assert_not_awaited()

    _, state = await _load(session_maker, run_id)
    assert state.status_of("stage_1") == "done"
    assert state.status_of("stage_2") == "error"
    assert "500" in state.stages["stage_2"].meta["error"]
    assert state.stages["stage_3"].meta["reason"] == "stage2_failed"
    assert outcome["progress"] == 20


@pytest.mark.asyncio
async def test_missing_llm_key_fails_at_first_llm_stage(session_maker, product):
    run_id = await _new_run(session_maker, product.id)

    with patch("services.llm_client.settings.LLM_API_KEY", ""):
        outcome = await run_audit_worker(run_id, session_factory=session_maker)

    assert outcome["status"] == "error"
    _, state = await _load(session_maker, run_id)
    assert state.status_of("stage_1") == "done"
    assert state.status_of("stage_2") == "error"
    assert "LLM_API_KEY" in state.stages["stage_2"].meta["error"]


@pytest.mark.asyncio
async def test_malformed_specs_fail_stage1(session_maker, stage_outputs):
    async with session_maker() as db:
        db.add(Product(id="prod-bad", brand="Acme", model_name="Mystery", technical_specs="capacity: lots"))
        await db.commit()
    run_id = await _new_run(session_maker, "prod-bad")

    with ExitStack() as stack:
        for stage in ("stage_2", "stage_3", "stage_4"):
            stack.enter_context(
                patch(f"services.audit_worker.{EXECUTOR_NAMES[stage]}", AsyncMock(return_value=stage_outputs[stage]))
            )
        outcome = await run_audit_worker(run_id, session_factory=session_maker)

    assert outcome["status"] == "error"
    _, state = await _load(session_maker, run_id)
    assert state.status_of("stage_1") == "error"
    assert state.stages["stage_2"].meta["reason"] == "stage1_failed"


@pytest.mark.asyncio
async def test_run_timeout_is_recorded_on_the_running_stage(session_maker, product, stage_outputs):
    run_id = await _new_run(session_maker, product.id)

    async def _hang(product, prior):
        await asyncio.sleep(30)

    with patch("services.audit_worker.settings.RUN_TIMEOUT_SECONDS", 1.0):
        with patched_executors(stage_outputs, stage_2=AsyncMock(side_effect=_hang)):
            outcome = await run_audit_worker(run_id, session_factory=session_maker)

    assert outcome["status"] == "timeout"
    run, state = await _load(session_maker, run_id)
    assert run.finished_at is not None
    assert state.status_of("stage_2") == "error"
    assert state.stages["stage_2"].meta["error"] == "timeout"
    assert state.status_of("stage_3") == "blocked"


@pytest.mark.asyncio
async def test_superseded_worker_stops_writing(session_maker, product, stage_outputs):
    run_id = await _new_run(session_maker, product.id)

    async def _superseded_mid_stage(product, prior):
        async with session_maker() as db:
            run = await db.get(AuditRun, run_id)
            await supersede_stale_run(db, run)
        return stage_outputs["stage_2"]

    with patched_executors(stage_outputs, stage_2=AsyncMock(side_effect=_superseded_mid_stage)) as mocks:
        outcome = await run_audit_worker(run_id, session_factory=session_maker)

    assert outcome["status"] == "error"
    assert outcome["error"] == STALE_RUN_MESSAGE
    mocks["stage_3"].assert_not_awaited()

    _, state = await _load(session_maker, run_id)
    # The stage_2 result landed after supersession and was dropped.
    assert state.status_of("stage_2") == "running"

    async with session_maker() as db:
        shadow = await get_shadow_spec(db, product.id)
    assert shadow.truth_score is None


@pytest.mark.asyncio
async def test_requeued_run_resumes_after_completed_stages(session_maker, product, stage_outputs):
    run_id = await _new_run(session_maker, product.id)
    async with session_maker() as db:
        run = await db.get(AuditRun, run_id)
        state = merge_stage_record(run.stage_state, "stage_1", "done", output=stage_outputs["stage_1"])
        state = merge_stage_record(state, "stage_2", "done", output=stage_outputs["stage_2"])
        run.stage_state = state.dump()
        await db.commit()

    with patched_executors(stage_outputs) as mocks:
        outcome = await run_audit_worker(run_id, session_factory=session_maker)

    assert outcome["status"] == "done"
    mocks["stage_1"].assert_not_awaited()
    mocks["stage_2"].assert_not_awaited()
    prior = mocks["stage_3"].await_args.args[1]
    assert prior["stage_2"] == stage_outputs["stage_2"]


@pytest.mark.asyncio
async def test_finished_run_is_not_executed_twice(session_maker, product, stage_outputs):
    run_id = await _new_run(session_maker, product.id)

    with patched_executors(stage_outputs) as mocks:
        await run_audit_worker(run_id, session_factory=session_maker)
        second = await run_audit_worker(run_id, session_factory=session_maker)

    assert second["status"] == "done"
    assert mocks["stage_1"].await_count == 1


@pytest.mark.asyncio
async def test_clean_stage3_lets_the_verdict_stage_run(session_maker, product, stage_outputs):
    run_id = await _new_run(session_maker, product.id)

    clean = AsyncMock(return_value={"reality_ledger": [], "red_flags": []})
    with patched_executors(stage_outputs, stage_3=clean) as mocks:
        outcome = await run_audit_worker(run_id, session_factory=session_maker)

    assert outcome["status"] == "done"
    mocks["stage_4"].assert_awaited_once()
    _, state = await _load(session_maker, run_id)
    assert state.status_of("stage_3") == "done"
    assert state.stages["stage_3"].meta["itemCount"] == 0
    assert state.cached_output("stage_3.5")["truth_index"]["base"] == 100


@pytest.mark.asyncio
async def test_partially_verified_stage3_blocks_the_verdict(session_maker, product, stage_outputs):
    run_id = await _new_run(session_maker, product.id)

    partial = AsyncMock(return_value={"red_flags": [{"claim": "X"}]})
    with patched_executors(stage_outputs, stage_3=partial) as mocks:
        outcome = await run_audit_worker(run_id, session_factory=session_maker)

    assert outcome["status"] != "done"
    mocks["stage_4"].assert_not_awaited()
    _, state = await _load(session_maker, run_id)
    assert state.status_of("stage_3") == "error"
    assert state.stages["stage_3"].meta["validation_error"] == "missing_verification_field"
    assert state.status_of("stage_4") == "blocked"
    assert state.stages["stage_4"].meta["reason"] == "stage3_invalid"


@pytest.mark.asyncio
async def test_heartbeat_advances_while_a_stage_runs(session_maker, product, stage_outputs):
    run_id = await _new_run(session_maker, product.id)
    beats = []

    async def _slow_stage2(product, prior):
        for _ in range(2):
            async with session_maker() as db:
                beats.append((await db.get(AuditRun, run_id)).last_heartbeat)
            await asyncio.sleep(0.5)
        return stage_outputs["stage_2"]

    with patch("services.audit_worker.settings.HEARTBEAT_INTERVAL_SECONDS", 0.1):
        with patched_executors(stage_outputs, stage_2=AsyncMock(side_effect=_slow_stage2)):
            outcome = await run_audit_worker(run_id, session_factory=session_maker)

    assert outcome["status"] == "done"
    assert beats[0] is not None
    assert beats[1] > beats[0]

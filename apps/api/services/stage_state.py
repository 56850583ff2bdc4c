"""
Run/stage vocabulary and the typed ``stage_state`` document.

``audit_runs.stage_state`` is stored as JSON shaped like::

    {"current": "stage_3", "stages": {"stage_1": {"status": "done", ...}}}

It is only ever changed through :func:`merge_stage_record`, which keeps all
other stages, merges ``meta`` and validates the result before it is written.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field


# Run statuses
RUN_PENDING = "pending"
RUN_RUNNING = "running"
RUN_DONE = "done"
RUN_ERROR = "error"
RUN_INCOMPLETE = "incomplete"
RUN_TIMEOUT = "timeout"

ACTIVE_RUN_STATUSES = (RUN_PENDING, RUN_RUNNING)
TERMINAL_RUN_STATUSES = (RUN_DONE, RUN_ERROR, RUN_INCOMPLETE, RUN_TIMEOUT)

LEGACY_RUN_STATUS_ALIASES = {
    "complete": RUN_DONE,
    "completed": RUN_DONE,
    "failed": RUN_ERROR,
}
# Values a successful run may carry in storage.
STORED_SUCCESS_STATUSES = (RUN_DONE,) + tuple(k for k, v in LEGACY_RUN_STATUS_ALIASES.items() if v == RUN_DONE)

# Stage statuses
STAGE_PENDING = "pending"
STAGE_RUNNING = "running"
STAGE_DONE = "done"
STAGE_ERROR = "error"
STAGE_BLOCKED = "blocked"

StageStatus = Literal["pending", "running", "done", "error", "blocked"]


@dataclass(frozen=True)
class StageDefinition:
    name: str
    code: str
    alias: str
    ttl_days: int


STAGES: Tuple[StageDefinition, ...] = (
    StageDefinition("stage_1", "stage1", "discover", 90),
    StageDefinition("stage_2", "stage2", "fetch", 30),
    StageDefinition("stage_3", "stage3", "extract", 90),
    StageDefinition("stage_3.5", "stage3_5", "normalize", 90),
    StageDefinition("stage_4", "stage4", "assess", 90),
)
STAGE_ORDER: Tuple[str, ...] = tuple(stage.name for stage in STAGES)
STAGES_BY_NAME: Dict[str, StageDefinition] = {stage.name: stage for stage in STAGES}
_STAGE_ALIASES: Dict[str, str] = {stage.alias: stage.name for stage in STAGES}


def normalize_run_status(status: Optional[str]) -> str:
    """Map legacy terminal strings onto the canonical run vocabulary."""
    value = (status or "").strip().lower()
    return LEGACY_RUN_STATUS_ALIASES.get(value, value or RUN_PENDING)


def resolve_stage_name(name: str) -> str:
    """Accept both ``stage_N`` names and the discover/fetch/... labels."""
    key = (name or "").strip().lower()
    if key in STAGES_BY_NAME:
        return key
    if key in _STAGE_ALIASES:
        return _STAGE_ALIASES[key]
    raise KeyError(f"Unknown stage: {name}")


def downstream_stages(stage_name: str) -> List[str]:
    index = STAGE_ORDER.index(resolve_stage_name(stage_name))
    return list(STAGE_ORDER[index + 1:])


def blocked_reason(stage_name: str, kind: Literal["invalid", "failed"]) -> str:
    return f"{STAGES_BY_NAME[resolve_stage_name(stage_name)].code}_{kind}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class StageRecord(BaseModel):
    status: StageStatus = STAGE_PENDING
    updated_at: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Any] = None


class StageState(BaseModel):
    current: Optional[str] = None
    stages: Dict[str, StageRecord] = Field(default_factory=dict)

    @classmethod
    def load(cls, raw: Any) -> "StageState":
        """Parse a stored document, tolerating legacy stage labels."""
        if not isinstance(raw, dict):
            return cls()
        stages: Dict[str, Any] = {}
        for name, record in (raw.get("stages") or {}).items():
            try:
                key = resolve_stage_name(name)
            except KeyError:
                continue
            stages[key] = record
        current = raw.get("current")
        try:
            current = resolve_stage_name(current) if current else None
        except KeyError:
            current = None
        return cls.model_validate({"current": current, "stages": stages})

    def record(self, stage_name: str) -> StageRecord:
        return self.stages.get(resolve_stage_name(stage_name)) or StageRecord()

    def status_of(self, stage_name: str) -> str:
        return self.record(stage_name).status

    def cached_output(self, stage_name: str) -> Optional[Any]:
        record = self.stages.get(resolve_stage_name(stage_name))
        if record and record.status == STAGE_DONE and record.output is not None:
            return record.output
        return None

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def empty_stage_state() -> Dict[str, Any]:
    return {
        "current": None,
        "stages": {name: {"status": STAGE_PENDING, "updated_at": None, "meta": {}, "output": None} for name in STAGE_ORDER},
    }


def merge_stage_record(
    state: Any,
    stage_name: str,
    status: str,
    meta: Optional[Dict[str, Any]] = None,
    output: Any = None,
    keep_output: bool = True,
) -> StageState:
    """Return a new state with one stage updated and every other stage kept."""
    current = state if isinstance(state, StageState) else StageState.load(state)
    name = resolve_stage_name(stage_name)
    previous = current.stages.get(name) or StageRecord()

    merged_meta = {**previous.meta, **(meta or {})}
    if output is not None:
        next_output = output
    elif keep_output and status != STAGE_RUNNING:
        next_output = previous.output
    else:
        next_output = None

    stages = {key: record.model_copy() for key, record in current.stages.items()}
    stages[name] = StageRecord(
        status=status,
        updated_at=_now_iso(),
        meta=merged_meta,
        output=next_output,
    )
    return StageState.model_validate({"current": name, "stages": {k: v.model_dump() for k, v in stages.items()}})


def compute_progress(state: Any) -> int:
    """Percentage of pipeline stages marked done."""
    current = state if isinstance(state, StageState) else StageState.load(state)
    done = sum(1 for name in STAGE_ORDER if current.status_of(name) == STAGE_DONE)
    return int(round(done / len(STAGE_ORDER) * 100))

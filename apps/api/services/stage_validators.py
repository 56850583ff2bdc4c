"""
Shape checks that decide whether a stage output may be marked ``done``.

Validators never raise; they return a :class:`ValidationResult` so the caller
can persist the error code next to the raw output.
"""

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from config import settings

STAGE3_ARRAY_KEYS = ("red_flags", "fact_checks", "checks", "discrepancies")
STAGE3_CLAIM_FIELDS = ("claim", "label")
STAGE3_VERIFICATION_FIELDS = ("reality", "verdict", "severity", "status")


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    item_count: int = 0
    array_key: Optional[str] = None

    def as_meta(self) -> Dict[str, Any]:
        meta: Dict[str, Any] = {"valid": self.valid, "itemCount": self.item_count}
        if self.error:
            meta["validation_error"] = self.error
        if self.array_key:
            meta["arrayKey"] = self.array_key
        return meta


def _has_any(item: Dict[str, Any], fields) -> bool:
    return any(item.get(field) for field in fields)


def validate_stage1(data: Any) -> ValidationResult:
    if not isinstance(data, dict):
        return ValidationResult(False, "missing_data")
    profile = data.get("claim_profile")
    if not isinstance(profile, list) or not profile:
        return ValidationResult(False, "missing_claim_profile")
    for item in profile:
        if not isinstance(item, dict) or not item.get("label"):
            return ValidationResult(False, "missing_claim_label", item_count=len(profile))
    return ValidationResult(True, item_count=len(profile), array_key="claim_profile")


def validate_stage2(data: Any) -> ValidationResult:
    if not isinstance(data, dict):
        return ValidationResult(False, "missing_data")
    signal = data.get("independent_signal")
    if not isinstance(signal, dict):
        return ValidationResult(False, "missing_independent_signal")
    praised = signal.get("most_praised")
    issues = signal.get("most_reported_issues")
    if not isinstance(praised, list) or not isinstance(issues, list):
        return ValidationResult(False, "missing_arrays")
    return ValidationResult(True, item_count=len(praised) + len(issues), array_key="independent_signal")


def validate_stage3(data: Any) -> ValidationResult:
    """Accept the first known discrepancy array; empty means nothing was found."""
    if not data or not isinstance(data, dict):
        return ValidationResult(False, "missing_data")

    found_key = next((key for key in STAGE3_ARRAY_KEYS if isinstance(data.get(key), list)), None)
    if found_key is None:
        return ValidationResult(False, "no_valid_array_found")

    items = data[found_key]
    if not items:
        return ValidationResult(True, item_count=0, array_key=found_key)

    for item in items:
        if not isinstance(item, dict) or not _has_any(item, STAGE3_CLAIM_FIELDS):
            return ValidationResult(False, "missing_claim_field", item_count=len(items))
        if not _has_any(item, STAGE3_VERIFICATION_FIELDS):
            return ValidationResult(False, "missing_verification_field", item_count=len(items))

    return ValidationResult(True, item_count=len(items), array_key=found_key)


def validate_stage3_5(data: Any) -> ValidationResult:
    if not isinstance(data, dict) or not isinstance(data.get("red_flags"), list):
        return ValidationResult(False, "missing_normalized_entries")
    if not isinstance(data.get("truth_index"), dict):
        return ValidationResult(False, "missing_truth_index")
    return ValidationResult(True, item_count=len(data["red_flags"]), array_key="red_flags")


def validate_stage4(data: Any) -> ValidationResult:
    if not isinstance(data, dict):
        return ValidationResult(False, "missing_truth_index")
    truth_index = data.get("truth_index")
    if isinstance(truth_index, bool) or not isinstance(truth_index, (int, float)):
        return ValidationResult(False, "missing_truth_index")
    interpretation = data.get("score_interpretation")
    if not isinstance(interpretation, str) or not interpretation.strip():
        return ValidationResult(False, "missing_score_interpretation")
    if not isinstance(data.get("strengths"), list) or not isinstance(data.get("limitations"), list):
        return ValidationResult(False, "missing_arrays")
    return ValidationResult(True)


VALIDATORS: Dict[str, Callable[[Any], ValidationResult]] = {
    "stage_1": validate_stage1,
    "stage_2": validate_stage2,
    "stage_3": validate_stage3,
    "stage_3.5": validate_stage3_5,
    "stage_4": validate_stage4,
}


def validate_stage(stage_name: str, data: Any) -> ValidationResult:
    return VALIDATORS[stage_name](data)


def raw_excerpt(output: Any) -> str:
    """Truncated copy of a rejected output, kept for diagnostics."""
    meta = output.get("_meta") if isinstance(output, dict) else None
    if isinstance(meta, dict) and isinstance(meta.get("raw_text"), str):
        text = meta["raw_text"]
    else:
        try:
            text = json.dumps(output, default=str)
        except (TypeError, ValueError):
            text = repr(output)
    return text[: settings.RAW_EXCERPT_CHARS]

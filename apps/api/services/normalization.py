"""
Deterministic discrepancy normalization and truth index scoring.

Stage 3 output is deduplicated, severity-normalized and tagged into three
scoring buckets. Bucket scores feed a weighted truth index that the verdict
stage may nudge by at most a few points.
"""

import re
from typing import Any, Dict, List

SEVERITY_PENALTY = {"severe": 15, "moderate": 10, "minor": 5}
TRUTH_INDEX_WEIGHTS = {
    "claims_accuracy": 0.45,
    "real_world_fit": 0.35,
    "operational_noise": 0.20,
}
MAX_LLM_ADJUSTMENT = 3

BUCKET_KEYWORDS: Dict[str, List[str]] = {
    "operational_noise": [
        "connectivity", "app", "firmware", "bluetooth", "wifi",
        "software", "pairing", "disconnect", "update", "sync",
        "noise", "fan", "loud", "decibel", "db",
    ],
    "real_world_fit": [
        "weight", "portab", "setup", "compatib", "voltage",
        "dimension", "size", "bulk", "transport", "placement",
        "proprietary", "cable", "expansion", "ecosystem",
    ],
    "claims_accuracy": [
        "spec", "mismatch", "runtime", "watt", "wh", "charging",
        "capacity", "output", "input", "efficiency", "cycle",
        "rated", "actual", "advertised", "claimed",
    ],
}

_ADDON_MARKERS = ("add-on", "expansion", "extra battery", "shelf")
_CAPACITY_MARKERS = ("capacity", "wh")


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _normalize_text(text: str) -> str:
    cleaned = re.sub(r"[^a-z0-9\s]", "", (text or "").lower())
    return re.sub(r"\s+", " ", cleaned).strip()


def normalize_severity(raw: Any) -> str:
    value = str(raw or "").strip().lower()
    if value in {"severe", "high", "critical"}:
        return "severe"
    if value in {"moderate", "medium", "med"}:
        return "moderate"
    return "minor"


def _derive_key(claim: str, reality: str, impact: str) -> str:
    norm_claim = _normalize_text(claim)
    norm_reality = _normalize_text(reality)
    if norm_claim and norm_reality:
        return f"{norm_claim}::{norm_reality}"
    if norm_claim and impact:
        return f"{norm_claim}::{_normalize_text(impact)}"
    return norm_claim or _normalize_text(impact) or "unknown"


def _assign_buckets(claim: str, reality: str, impact: str) -> List[str]:
    combined = " ".join([claim, reality, impact]).lower()
    tags = [bucket for bucket, keywords in BUCKET_KEYWORDS.items() if any(kw in combined for kw in keywords)]
    return tags or ["claims_accuracy"]


def _is_addon_false_positive(text: str) -> bool:
    # An optional add-on battery misread as the main unit's capacity.
    lowered = text.lower()
    return any(m in lowered for m in _CAPACITY_MARKERS) and any(m in lowered for m in _ADDON_MARKERS)


def normalize_stage3(raw: Any) -> Dict[str, Any]:
    """Dedupe and tag stage 3 entries; first occurrence of a key wins."""
    if not isinstance(raw, dict):
        return {"entries": [], "total_count": 0, "unique_count": 0}

    candidates = raw.get("red_flags")
    if not isinstance(candidates, list):
        candidates = next(
            (raw[key] for key in ("fact_checks", "checks", "discrepancies") if isinstance(raw.get(key), list)),
            [],
        )

    seen: Dict[str, Dict[str, Any]] = {}
    for item in candidates:
        if not isinstance(item, dict):
            continue
        claim = str(item.get("claim") or item.get("label") or item.get("issue") or "").strip()
        reality = str(item.get("reality") or item.get("description") or "").strip()
        raw_impact = str(item.get("impact") or "").strip()
        impact = raw_impact if not raw_impact or raw_impact.endswith(".") else f"{raw_impact}."

        if not claim and not reality:
            continue
        if _is_addon_false_positive(f"{claim} {reality} {impact}"):
            continue

        key = _derive_key(claim, reality, impact)
        if key in seen:
            continue
        seen[key] = {
            "key": key,
            "claim": claim,
            "reality": reality,
            "impact": impact,
            "severity": normalize_severity(item.get("severity")),
            "tags": _assign_buckets(claim, reality, impact),
        }

    entries = list(seen.values())
    return {"entries": entries, "total_count": len(candidates), "unique_count": len(entries)}


def compute_base_scores(entries: List[Dict[str, Any]]) -> Dict[str, int]:
    scores = {bucket: 100 for bucket in TRUTH_INDEX_WEIGHTS}
    for entry in entries:
        penalty = SEVERITY_PENALTY.get(entry.get("severity"), SEVERITY_PENALTY["minor"])
        for tag in entry.get("tags") or []:
            if tag in scores:
                scores[tag] -= penalty
    return {bucket: int(_clamp(score)) for bucket, score in scores.items()}


def _rating_label(score: float) -> str:
    if score >= 85:
        return "High"
    if score >= 60:
        return "Moderate"
    return "Low"


def build_metric_bars(scores: Dict[str, int]) -> List[Dict[str, Any]]:
    labels = {
        "claims_accuracy": "Claims Accuracy",
        "real_world_fit": "Real-World Fit",
        "operational_noise": "Operational Noise",
    }
    return [
        {"label": label, "rating": _rating_label(scores[bucket]), "percentage": scores[bucket]}
        for bucket, label in labels.items()
    ]


def adjust_truth_index(base: int, llm_index: Any) -> Dict[str, Any]:
    """Accept the verdict stage's score only when it stays near the base."""
    if isinstance(llm_index, bool) or not isinstance(llm_index, (int, float)):
        return {"final": base, "llm_index": None, "accepted": False}
    llm_index = int(_clamp(round(llm_index)))
    accepted = abs(llm_index - base) <= MAX_LLM_ADJUSTMENT
    return {"final": llm_index if accepted else base, "llm_index": llm_index, "accepted": accepted}


def compute_truth_index(entries: List[Dict[str, Any]], bucket_scores: Dict[str, int]) -> Dict[str, Any]:
    base = int(round(sum(weight * bucket_scores[bucket] for bucket, weight in TRUTH_INDEX_WEIGHTS.items())))

    counts = {"severe": 0, "moderate": 0, "minor": 0}
    for entry in entries:
        counts[entry.get("severity") if entry.get("severity") in counts else "minor"] += 1

    return {
        "base": base,
        "final": base,
        "weights": dict(TRUTH_INDEX_WEIGHTS),
        "component_scores": dict(bucket_scores),
        "penalties": {
            **counts,
            # Display only; bucket scores already carry the deductions.
            "total": -(counts["severe"] * 3 + counts["moderate"] * 2 + counts["minor"]),
        },
    }


def build_normalized_output(stage3_output: Any) -> Dict[str, Any]:
    """Stage 3.5 payload: normalized entries plus deterministic scores."""
    normalized = normalize_stage3(stage3_output)
    scores = compute_base_scores(normalized["entries"])
    return {
        "red_flags": normalized["entries"],
        "total_count": normalized["total_count"],
        "unique_count": normalized["unique_count"],
        "bucket_scores": scores,
        "metric_bars": build_metric_bars(scores),
        "truth_index": compute_truth_index(normalized["entries"], scores),
    }

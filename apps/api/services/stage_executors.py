"""
Stage executors.

Each executor takes the product snapshot plus the outputs of earlier stages
and returns the stage payload as a dict. Executors do not validate their own
output; the pipeline hands it to ``services.stage_validators``.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from services.errors import LLMUnavailableError, MalformedProductError, StageExecutionError
from services.llm_client import complete_json, parse_llm_json
from services.normalization import adjust_truth_index, build_normalized_output

logger = logging.getLogger(__name__)

_EMPTY_VALUES = {"not specified", "null", "undefined", "none", ""}

BANNED_PHRASES = [
    (re.compile(r"technical debt", re.IGNORECASE), "ongoing maintenance cost"),
    (re.compile(r"non-production environments?", re.IGNORECASE), "casual or secondary use"),
    (re.compile(r"\benterprise\b", re.IGNORECASE), "professional"),
    (re.compile(r"\bstakeholder", re.IGNORECASE), "user"),
    (re.compile(r"\bleverage\b", re.IGNORECASE), "use"),
    (re.compile(r"\bsynergy\b", re.IGNORECASE), "compatibility"),
    (re.compile(r"ecosystem lock-in", re.IGNORECASE), "vendor dependency"),
    (re.compile(r"\brobust\b", re.IGNORECASE), "reliable"),
    (re.compile(r"\bscalable\b", re.IGNORECASE), "expandable"),
    (re.compile(r"high raw (\w+ )?capacity", re.IGNORECASE), r"large advertised \1capacity"),
]


def product_snapshot(product: Any) -> Dict[str, Any]:
    """Plain-dict view of a Product row, safe to pass across sessions."""
    if isinstance(product, dict):
        return dict(product)
    return {
        "id": product.id,
        "slug": product.slug,
        "brand": product.brand,
        "model_name": product.model_name,
        "category": product.category,
        "technical_specs": product.technical_specs,
        "weight_lbs": product.weight_lbs,
        "msrp_usd": product.msrp_usd,
    }


def _display_name(product: Dict[str, Any]) -> str:
    return " ".join(part for part in (product.get("brand"), product.get("model_name")) if part) or "Unknown product"


def _is_meaningful(value: Any) -> bool:
    return str(value).strip().lower() not in _EMPTY_VALUES


def _format_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def sanitize_copy(text: Any) -> str:
    clean = str(text or "")
    for pattern, replacement in BANNED_PHRASES:
        clean = pattern.sub(replacement, clean)
    return clean


def _sanitize_list(values: Any) -> Any:
    if not isinstance(values, list):
        return values
    return [sanitize_copy(item) if isinstance(item, str) else item for item in values]


async def execute_stage1(product: Dict[str, Any], prior: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Map technical specs into a claim profile. No external calls."""
    specs = product.get("technical_specs")
    claim_profile: List[Dict[str, str]] = []

    if isinstance(specs, list):
        for spec in specs:
            if not isinstance(spec, dict):
                raise MalformedProductError(f"technical_specs entry is not an object: {spec!r}")
            label = spec.get("label") or spec.get("name") or "Unknown"
            value = spec.get("value") if spec.get("value") is not None else spec.get("spec_value")
            value = "Not specified" if value is None else str(value)
            if _is_meaningful(value):
                claim_profile.append({"label": str(label), "value": value})
    elif isinstance(specs, dict):
        for key, value in specs.items():
            if value is not None and _is_meaningful(value):
                claim_profile.append({"label": str(key), "value": str(value)})
    elif specs is not None:
        raise MalformedProductError(f"technical_specs has unsupported type {type(specs).__name__}")

    if not claim_profile:
        logger.info("No technical specs for %s, using fallback claim profile", product.get("id"))
        claim_profile = [
            {"label": "Brand", "value": product.get("brand") or "Unknown"},
            {"label": "Model", "value": product.get("model_name") or "Unknown"},
            {"label": "Category", "value": product.get("category") or "Unknown"},
        ]
        if product.get("weight_lbs"):
            claim_profile.append({"label": "Weight", "value": f"{_format_number(product['weight_lbs'])} lbs"})
        if product.get("msrp_usd"):
            claim_profile.append({"label": "MSRP", "value": f"${_format_number(product['msrp_usd'])}"})

    logger.info("Stage 1 mapped %s claims for %s", len(claim_profile), product.get("id"))
    return {"claim_profile": claim_profile}


def _claims_block(stage1: Dict[str, Any], limit: Optional[int] = None) -> str:
    claims = (stage1 or {}).get("claim_profile") or []
    if limit:
        claims = claims[:limit]
    return "\n".join(f"- {c.get('label')}: {c.get('value')}" for c in claims if isinstance(c, dict))


def _stage2_prompt(product: Dict[str, Any], stage1: Dict[str, Any]) -> str:
    return f"""You are analyzing community feedback for: {_display_name(product)}

CONTEXT (Manufacturer Claims):
{_claims_block(stage1, limit=10)}

Identify the most consistent praise (5-7 items) and the most reported issues
(3-5 items) from real-world user discussions. Include an estimated number of
sources for each item. Focus on objective, verifiable observations.

Return ONLY valid JSON:
{{
  "most_praised": [{{"text": "...", "sources": 8}}],
  "most_reported_issues": [{{"text": "...", "sources": 5}}]
}}"""


async def execute_stage2(product: Dict[str, Any], prior: Dict[str, Any]) -> Dict[str, Any]:
    """Gather community signal. Provider trouble degrades to empty lists."""
    stage1 = prior.get("stage_1") or {}
    try:
        raw = await complete_json(_stage2_prompt(product, stage1), temperature=0.3, max_tokens=2048)
    except LLMUnavailableError:
        raise
    except StageExecutionError as exc:
        logger.warning("Stage 2 degraded for %s: %s", product.get("id"), exc)
        return {
            "independent_signal": {"most_praised": [], "most_reported_issues": []},
            "_meta": {"degraded": True, "reason": str(exc)[:300]},
        }

    ok, data = parse_llm_json(raw)
    if not ok or not isinstance(data, dict):
        logger.warning("Stage 2 output unparseable for %s, using empty signal", product.get("id"))
        return {
            "independent_signal": {"most_praised": [], "most_reported_issues": []},
            "_meta": {"degraded": True, "reason": "parse_failed"},
        }

    praised = data.get("most_praised") if isinstance(data.get("most_praised"), list) else []
    issues = data.get("most_reported_issues") if isinstance(data.get("most_reported_issues"), list) else []
    logger.info("Stage 2 found %s praise items, %s issues for %s", len(praised), len(issues), product.get("id"))
    return {"independent_signal": {"most_praised": praised, "most_reported_issues": issues}}


def _signal_texts(items: Any) -> str:
    if not isinstance(items, list):
        return ""
    return "; ".join(str(item.get("text")) for item in items if isinstance(item, dict) and item.get("text"))


def _stage3_prompt(product: Dict[str, Any], stage1: Dict[str, Any], stage2: Dict[str, Any]) -> str:
    signal = (stage2 or {}).get("independent_signal") or {}
    return f"""Cross-reference manufacturer claims with real-world feedback for {_display_name(product)}.

MANUFACTURER CLAIMS:
{_claims_block(stage1)}

COMMUNITY FEEDBACK:
Most Praised: {_signal_texts(signal.get("most_praised"))}
Issues: {_signal_texts(signal.get("most_reported_issues"))}

TASK 1: For each claim give the real-world value ("Confirmed ...", "Actually ...", or "Not verified").
TASK 2: List only meaningful discrepancies (>3% variance or functional impact).

Return ONLY valid JSON:
{{
  "reality_ledger": [{{"label": "Battery Capacity", "value": "2850Wh (tested avg)"}}],
  "red_flags": [{{"claim": "...", "reality": "...", "severity": "minor|moderate|severe", "impact": "..."}}]
}}"""


async def execute_stage3(product: Dict[str, Any], prior: Dict[str, Any]) -> Dict[str, Any]:
    """Fact verification. Unparseable output is returned for the validator to reject."""
    raw = await complete_json(
        _stage3_prompt(product, prior.get("stage_1") or {}, prior.get("stage_2") or {}),
        temperature=0.2,
        max_tokens=8192,
    )
    ok, data = parse_llm_json(raw)
    if not ok or not isinstance(data, dict):
        return {"_meta": {"status": "error", "parse_error": "unparseable", "raw_text": raw}}

    logger.info(
        "Stage 3 found %s reality items, %s discrepancies for %s",
        len(data.get("reality_ledger") or []),
        len(data.get("red_flags") or []),
        product.get("id"),
    )
    return data


async def execute_stage3_5(product: Dict[str, Any], prior: Dict[str, Any]) -> Dict[str, Any]:
    return build_normalized_output(prior.get("stage_3") or {})


def _stage4_prompt(product: Dict[str, Any], prior: Dict[str, Any], base: int) -> str:
    normalized = prior.get("stage_3.5") or {}
    scores = normalized.get("bucket_scores") or {}
    signal = (prior.get("stage_2") or {}).get("independent_signal") or {}
    flags = "\n".join(
        f"- [{f.get('severity')}] CLAIM: {f.get('claim')} -> REALITY: {f.get('reality')} (Impact: {f.get('impact')})"
        for f in normalized.get("red_flags") or []
    )
    return f"""Synthesize a verdict for the following product audit.

PRODUCT: {_display_name(product)}

PRE-COMPUTED SCORES (deterministic, do not override)
Truth Index Base Score: {base}
Claims Accuracy: {scores.get("claims_accuracy", base)}
Real-World Fit: {scores.get("real_world_fit", base)}
Operational Noise: {scores.get("operational_noise", base)}

MANUFACTURER CLAIMS:
{_claims_block(prior.get("stage_1") or {}, limit=8)}

COMMUNITY SIGNALS:
Praised: {_signal_texts(signal.get("most_praised")) or "No community praise data available"}
Issues: {_signal_texts(signal.get("most_reported_issues")) or "No community issue data available"}

VERIFIED DISCREPANCIES:
{flags or "- none"}

Use the base score for truth_index; you may adjust it by at most 3 points.
Limitations must reference only the verified discrepancies.

Return ONLY valid JSON:
{{
  "truth_index": {base},
  "adjustment_reason": "...",
  "score_interpretation": "...",
  "strengths": ["..."],
  "limitations": ["Verified: ..."],
  "practical_impact": ["..."],
  "good_fit": ["..."],
  "consider_alternatives": ["..."]
}}"""


async def execute_stage4(product: Dict[str, Any], prior: Dict[str, Any]) -> Dict[str, Any]:
    """Verdict synthesis. The score stays within 3 points of the deterministic base."""
    normalized = prior.get("stage_3.5") or {}
    truth = normalized.get("truth_index") or {}
    base = int(truth.get("base", 75))

    raw = await complete_json(_stage4_prompt(product, prior, base), temperature=0.1, max_tokens=1536)
    ok, data = parse_llm_json(raw)
    if not ok or not isinstance(data, dict):
        return {"_meta": {"status": "error", "parse_error": "unparseable", "raw_text": raw}}

    adjusted = adjust_truth_index(base, data.get("truth_index"))
    truth_index = adjusted["final"]
    logger.info(
        "Stage 4 truth index for %s: base=%s llm=%s final=%s",
        product.get("id"),
        base,
        adjusted["llm_index"],
        truth_index,
    )

    result = dict(data)
    result["truth_index"] = truth_index
    result["truth_index_breakdown"] = {**truth, **adjusted}
    result["metric_bars"] = normalized.get("metric_bars") or []
    if isinstance(data.get("score_interpretation"), str):
        result["score_interpretation"] = sanitize_copy(data["score_interpretation"])
    for key in ("strengths", "limitations", "practical_impact", "good_fit", "consider_alternatives"):
        if key in data:
            result[key] = _sanitize_list(data[key])
    result["data_confidence"] = "Sources: manufacturer docs, community feedback"
    return result


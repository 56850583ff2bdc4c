from services.normalization import (
    adjust_truth_index,
    build_normalized_output,
    compute_base_scores,
    compute_truth_index,
    normalize_severity,
    normalize_stage3,
)


def test_severity_synonyms():
    assert normalize_severity("Critical") == "severe"
    assert normalize_severity("medium") == "moderate"
    assert normalize_severity(None) == "minor"


def test_duplicates_collapse_to_first_occurrence():
    raw = {
        "red_flags": [
            {"claim": "2042Wh capacity", "reality": "1850Wh usable", "severity": "moderate", "impact": "Less runtime"},
            {"claim": "2042Wh Capacity!", "reality": "1850Wh usable", "severity": "severe"},
        ]
    }
    normalized = normalize_stage3(raw)
    assert normalized["total_count"] == 2
    assert normalized["unique_count"] == 1
    entry = normalized["entries"][0]
    assert entry["severity"] == "moderate"
    assert entry["impact"] == "Less runtime."
    assert "claims_accuracy" in entry["tags"]


def test_addon_battery_capacity_is_filtered_out():
    raw = {"red_flags": [{"claim": "Capacity with extra battery", "reality": "6000Wh", "severity": "severe"}]}
    assert normalize_stage3(raw)["entries"] == []


def test_bucket_scores_apply_severity_penalties():
    entries = [
        {"severity": "severe", "tags": ["claims_accuracy"]},
        {"severity": "minor", "tags": ["operational_noise", "real_world_fit"]},
    ]
    assert compute_base_scores(entries) == {
        "claims_accuracy": 85,
        "real_world_fit": 95,
        "operational_noise": 95,
    }


def test_truth_index_is_the_weighted_bucket_average():
    scores = {"claims_accuracy": 100, "real_world_fit": 80, "operational_noise": 50}
    entries = [{"key": "fan noise::loud under load", "claim": "Whisper quiet fan", "severity": "minor"}]

    result = compute_truth_index(entries, scores)
    assert result["base"] == result["final"] == 83
    assert result["penalties"] == {"severe": 0, "moderate": 0, "minor": 1, "total": -1}


def test_verdict_score_may_move_the_base_by_three_points():
    assert adjust_truth_index(80, 78) == {"final": 78, "llm_index": 78, "accepted": True}
    assert adjust_truth_index(80, 88) == {"final": 80, "llm_index": 88, "accepted": False}
    assert adjust_truth_index(99, 140)["llm_index"] == 100
    assert adjust_truth_index(80, "83") == {"final": 80, "llm_index": None, "accepted": False}
    assert adjust_truth_index(80, True)["final"] == 80


def test_normalized_output_is_complete_for_clean_audit():
    output = build_normalized_output({"red_flags": []})
    assert output["red_flags"] == []
    assert output["truth_index"]["base"] == 100
    assert [bar["label"] for bar in output["metric_bars"]] == [
        "Claims Accuracy",
        "Real-World Fit",
        "Operational Noise",
    ]

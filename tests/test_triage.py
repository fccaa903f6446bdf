import pytest

from app.ai_client import AIScore
from app.services.triage import (
    AUTO_APPROVE, AUTO_REJECT, FLAG_FOR_HUMAN, Thresholds, triage,
)


def score(deepfake, quality):
    return AIScore(deepfake_score=deepfake, visual_quality_score=quality)


@pytest.mark.parametrize(
    "deepfake, quality, expected",
    [
        (0.10, 0.90, AUTO_APPROVE),
        (0.10, 0.50, FLAG_FOR_HUMAN),   # authentic but poor quality
        (0.50, 0.90, FLAG_FOR_HUMAN),   # middle band
        (0.92, 0.90, AUTO_REJECT),
        (0.85, 0.90, FLAG_FOR_HUMAN),   # boundary is strict
        (0.30, 0.90, FLAG_FOR_HUMAN),
        (0.10, 0.60, FLAG_FOR_HUMAN),
        (0.10, None, FLAG_FOR_HUMAN),
    ],
)
def test_three_way_rule(deepfake, quality, expected):
    assert triage(score(deepfake, quality)).action == expected


def test_missing_score_goes_to_human():
    decision = triage(None)
    assert decision.action == FLAG_FOR_HUMAN
    assert decision.verification_status is None


def test_only_auto_approve_sets_real():
    assert triage(score(0.05, 0.95)).verification_status == "REAL"
    # an automatic rejection never decides on its own
    assert triage(score(0.99, 0.95)).verification_status is None


def test_invalid_format_is_rejected():
    decision = triage(AIScore(None, None, format_valid=False, issues=["Empty file"]))
    assert decision.action == AUTO_REJECT
    assert "Empty file" in decision.reason


def test_custom_thresholds():
    strict = Thresholds(approve_below=0.05, reject_above=0.5, quality_floor=0.8)
    assert triage(score(0.10, 0.95), strict).action == FLAG_FOR_HUMAN
    assert triage(score(0.60, 0.95), strict).action == AUTO_REJECT

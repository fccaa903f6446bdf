"""
Classifies an AI score into approve / reject / human review.

The middle band is a real outcome: only clearly authentic, good-quality
photos are approved automatically, and an automatic rejection is only a
flag until an admin confirms it.
"""

from dataclasses import dataclass

from app import config
from app.ai_client import AIScore

AUTO_APPROVE = "AUTO_APPROVE"
AUTO_REJECT = "AUTO_REJECT"
FLAG_FOR_HUMAN = "FLAG_FOR_HUMAN"

AI_ACTIONS = (AUTO_APPROVE, AUTO_REJECT, FLAG_FOR_HUMAN)

REAL = "REAL"
FAKE = "FAKE"


@dataclass(frozen=True)
class Thresholds:
    approve_below: float = config.DEEPFAKE_APPROVE_BELOW
    reject_above: float = config.DEEPFAKE_REJECT_ABOVE
    quality_floor: float = config.QUALITY_FLOOR


DEFAULT_THRESHOLDS = Thresholds()


@dataclass(frozen=True)
class TriageDecision:
    action: str
    reason: str

    @property
    def verification_status(self) -> str | None:
        # AUTO_REJECT stays pending until an admin confirms it
        return REAL if self.action == AUTO_APPROVE else None


def _pct(value: float | None) -> str:
    return "n/a" if value is None else f"{value * 100:.1f}%"


def triage(score: AIScore | None, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> TriageDecision:
    if score is None:
        return TriageDecision(FLAG_FOR_HUMAN, "AI validation unavailable - requires human review")

    if not score.format_valid:
        return TriageDecision(
            AUTO_REJECT,
            f"Failed basic validation: {', '.join(score.issues) or 'unreadable image'}",
        )

    fake = score.deepfake_score
    quality = score.visual_quality_score

    if fake is None:
        return TriageDecision(FLAG_FOR_HUMAN, "No authenticity score - requires human review")

    if fake > thresholds.reject_above:
        return TriageDecision(
            AUTO_REJECT,
            f"AI-GENERATED/FAKE IMAGE DETECTED ({_pct(fake)} confidence) - "
            "Likely stock photo or synthetic content",
        )

    if fake < thresholds.approve_below and quality is not None and quality > thresholds.quality_floor:
        return TriageDecision(
            AUTO_APPROVE,
            f"All checks passed: Fake image score {_pct(fake)}, Visual quality {_pct(quality)}",
        )

    return TriageDecision(
        FLAG_FOR_HUMAN,
        f"Uncertain results - requires human review: Fake image {_pct(fake)}, Visual {_pct(quality)}",
    )

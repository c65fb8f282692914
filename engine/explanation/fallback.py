"""
Templated explanations built purely from the score breakdown.

Used as the base explanation stored with every match and as the labelled
fallback whenever an AI explanation cannot be produced.
"""
from collections.abc import Iterable, Mapping
from typing import Optional

from engine.matching.models import (
    ExplanationSource,
    FallbackReason,
    MatchExplanation,
    ReasonCode,
)

REASON_TEXT: dict[ReasonCode, str] = {
    ReasonCode.EXACT_CATEGORY_MATCH: "Your industry sector exactly matches the announcement category.",
    ReasonCode.INDUSTRY_MATCH: "The announcement targets your industry.",
    ReasonCode.TRL_IN_RANGE: "Your technology readiness level is within the required range.",
    ReasonCode.TRL_ADJACENT: "Your technology readiness level is just outside the required range.",
    ReasonCode.ORG_TYPE_ELIGIBLE: "Your organization type is eligible to apply.",
    ReasonCode.RD_EXPERIENCE_REWARDED: "Your prior R&D experience is explicitly valued by this program.",
    ReasonCode.RD_EXPERIENCE_PRESENT: "Your prior R&D experience strengthens the application.",
    ReasonCode.DEADLINE_FAR: "There is ample time to prepare an application.",
    ReasonCode.DEADLINE_MODERATE: "The deadline leaves reasonable time to prepare.",
}

WARNING_TEXT: dict[ReasonCode, str] = {
    ReasonCode.INDUSTRY_MISMATCH: "The announcement category differs from your industry sector.",
    ReasonCode.INDUSTRY_UNKNOWN: "Industry fit could not be assessed; add an industry sector to your profile.",
    ReasonCode.TRL_ADJACENT: "Confirm your technology readiness level with the program office.",
    ReasonCode.TRL_OUT_OF_RANGE: "Your technology readiness level is outside the required range.",
    ReasonCode.TRL_NOT_PROVIDED: "Add a technology readiness level to your profile for a more accurate match.",
    ReasonCode.ORG_TYPE_INELIGIBLE: "Your organization type is not listed as an eligible applicant.",
    ReasonCode.RD_EXPERIENCE_REQUIRED: "This program expects prior R&D experience.",
    ReasonCode.DEADLINE_URGENT: "The deadline is very close; prepare quickly.",
    ReasonCode.DEADLINE_PASSED: "The application deadline has passed.",
    ReasonCode.DEADLINE_UNKNOWN: "No deadline is published; check the announcement for dates.",
}


def _codes(reason_codes: Iterable[str]) -> list[ReasonCode]:
    codes = []
    for code in reason_codes:
        try:
            codes.append(ReasonCode(code))
        except ValueError:
            continue
    return codes


def build_template_explanation(
    score: int,
    bonus: int,
    breakdown: Mapping[str, int],
    reason_codes: Iterable[str],
    title: str = "",
    fallback_reason: Optional[FallbackReason] = None,
) -> MatchExplanation:
    """
    Build a deterministic explanation from a match's scoring data.

    Args:
        score: Weighted 0-100 score.
        bonus: Bonus points tracked outside the score.
        breakdown: Criterion -> points.
        reason_codes: Reason codes emitted by the scorer.
        title: Announcement title for the summary line.
        fallback_reason: Set when this replaces an AI explanation.

    Returns:
        MatchExplanation with source TEMPLATE.
    """
    codes = _codes(reason_codes)
    subject = f"'{title}'" if title else "This announcement"
    summary = f"{subject} scored {score}/100"
    if bonus:
        summary += f" (+{bonus} bonus)"
    summary += " against your organization profile."

    return MatchExplanation(
        summary=summary,
        breakdown=dict(breakdown),
        reasons=[REASON_TEXT[code] for code in codes if code in REASON_TEXT],
        warnings=[WARNING_TEXT[code] for code in codes if code in WARNING_TEXT],
        source=ExplanationSource.TEMPLATE,
        fallback_reason=fallback_reason,
    )

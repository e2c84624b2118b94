"""
Extraction Quality Gate

Decides whether a transcribed and extracted call can flow straight into the
CRM or needs a human to look at it first:
1. Transcription confidence
2. Per-field confidence
3. Deal value (qualification score, budget)
4. Call outcome and sentiment
5. Required fields present
6. User preference

Everything except a catastrophic transcription is advisory. The defaults keep
the pipeline frictionless; users opt into stricter review through their
preferences.
"""
from __future__ import annotations

import re
from typing import List, Optional, Sequence

from app.models.quality import (
    CallOutcome,
    ConfidenceIndicator,
    ExtractionReview,
    QualityCheckInput,
    QualityCheckResult,
    QualityRating,
    QualitySummary,
    RecommendedAction,
    ReviewTriggerConfig,
    ReviewTriggerReason,
    Sentiment,
)


DEFAULT_REVIEW_CONFIG = ReviewTriggerConfig()

CATASTROPHIC_CONFIDENCE_FLOOR = 0.6

TRIGGER_PRIORITY: tuple[ReviewTriggerReason, ...] = (
    ReviewTriggerReason.HIGH_VALUE_DEAL,
    ReviewTriggerReason.QUALIFIED_LEAD,
    ReviewTriggerReason.LOW_CONFIDENCE_TRANSCRIPTION,
    ReviewTriggerReason.LOW_CONFIDENCE_FIELDS,
    ReviewTriggerReason.MISSING_REQUIRED_FIELDS,
    ReviewTriggerReason.FOLLOW_UP_NEEDED,
    ReviewTriggerReason.HIGH_BUDGET,
    ReviewTriggerReason.NEGATIVE_SENTIMENT,
    ReviewTriggerReason.USER_PREFERENCE,
    ReviewTriggerReason.MANUAL_FLAG,
)

TRIGGER_MESSAGES = {
    ReviewTriggerReason.LOW_CONFIDENCE_TRANSCRIPTION: "Low transcription confidence",
    ReviewTriggerReason.LOW_CONFIDENCE_FIELDS: "Multiple low-confidence fields",
    ReviewTriggerReason.HIGH_VALUE_DEAL: "High-value deal detected",
    ReviewTriggerReason.HIGH_BUDGET: "Large budget mentioned",
    ReviewTriggerReason.QUALIFIED_LEAD: "Qualified lead",
    ReviewTriggerReason.FOLLOW_UP_NEEDED: "Follow-up required",
    ReviewTriggerReason.NEGATIVE_SENTIMENT: "Negative sentiment detected",
    ReviewTriggerReason.MISSING_REQUIRED_FIELDS: "Missing required information",
    ReviewTriggerReason.USER_PREFERENCE: "Review always required",
    ReviewTriggerReason.MANUAL_FLAG: "Manually flagged for review",
}

DEFAULT_REQUIRED_FIELDS = ("customer_company", "key_points", "next_steps")

REQUIRED_FIELDS_BY_CALL_TYPE = {
    "sales": ("qualification_score", "pain_points", "call_outcome"),
    "discovery": ("pain_points", "current_solution", "decision_process"),
}

_BUDGET_STRIP = re.compile(r"[$,\s]")
_BUDGET_NUMBER = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)")
_BUDGET_MULTIPLIERS = {"k": 1_000, "m": 1_000_000}


def parse_budget(budget: Optional[str]) -> Optional[float]:
    """
    Parse a spoken/free-text budget into dollars.

    Handles "$50,000", "50k", "2.5M" and plain numbers. Returns None when no
    leading number can be read.
    """
    if not budget:
        return None
    cleaned = _BUDGET_STRIP.sub("", str(budget)).lower()

    multiplier = 1
    for suffix, factor in _BUDGET_MULTIPLIERS.items():
        if suffix in cleaned:
            cleaned = cleaned.replace(suffix, "", 1)
            multiplier = factor
            break

    match = _BUDGET_NUMBER.match(cleaned)
    if not match:
        return None
    return float(match.group(0)) * multiplier


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def check_call_quality(
    data: QualityCheckInput,
    config: Optional[ReviewTriggerConfig] = None,
) -> QualityCheckResult:
    """Analyze transcript, fields and extraction and decide whether review is needed."""
    effective = (config or DEFAULT_REVIEW_CONFIG).merged(data.user_config)
    reasons: List[ReviewTriggerReason] = []

    # Flag only. Blocking on a bad transcript is is_catastrophic_failure's job.
    confidence = data.transcript.confidence_score
    low_confidence_transcription = confidence < effective.transcription_confidence_threshold

    low_fields = [
        field.field_name
        for field in data.fields
        if field.field_value is not None and field.confidence_score < effective.field_confidence_threshold
    ]
    if len(low_fields) > effective.max_low_confidence_fields:
        reasons.append(ReviewTriggerReason.LOW_CONFIDENCE_FIELDS)

    qualification_score = data.extraction.qualification_score or 0
    high_value_deal = qualification_score > effective.qualification_score_threshold
    if high_value_deal and effective.always_review_qualified:
        reasons.append(ReviewTriggerReason.HIGH_VALUE_DEAL)

    budget_amount = parse_budget(data.extraction.budget)
    high_budget = (
        budget_amount is not None
        and effective.budget_threshold is not None
        and budget_amount > effective.budget_threshold
    )
    if high_budget:
        reasons.append(ReviewTriggerReason.HIGH_BUDGET)

    outcome = data.extraction.call_outcome
    qualified_lead = outcome == CallOutcome.QUALIFIED
    follow_up_needed = outcome == CallOutcome.FOLLOW_UP_NEEDED
    negative_outcome = outcome == CallOutcome.NOT_INTERESTED

    if qualified_lead and effective.always_review_qualified:
        reasons.append(ReviewTriggerReason.QUALIFIED_LEAD)
    if follow_up_needed and effective.always_review_follow_up:
        reasons.append(ReviewTriggerReason.FOLLOW_UP_NEEDED)
    if negative_outcome and effective.always_review_negative:
        reasons.append(ReviewTriggerReason.NEGATIVE_SENTIMENT)

    values = {field.field_name: field.field_value for field in data.fields}
    missing_required = [name for name in data.required_fields if _is_blank(values.get(name))]
    if missing_required:
        reasons.append(ReviewTriggerReason.MISSING_REQUIRED_FIELDS)

    negative_sentiment = data.transcript.sentiment_overall == Sentiment.NEGATIVE
    if (
        negative_sentiment
        and effective.always_review_negative
        and ReviewTriggerReason.NEGATIVE_SENTIMENT not in reasons
    ):
        reasons.append(ReviewTriggerReason.NEGATIVE_SENTIMENT)

    if effective.always_require_review:
        reasons.append(ReviewTriggerReason.USER_PREFERENCE)

    requires_review = bool(reasons)
    if not requires_review:
        action = RecommendedAction.AUTO_APPROVE
    elif (high_value_deal or qualified_lead) and (low_confidence_transcription or len(low_fields) > 2):
        action = RecommendedAction.FLAG_URGENT
    else:
        action = RecommendedAction.MANUAL_REVIEW

    return QualityCheckResult(
        low_confidence_transcription=low_confidence_transcription,
        transcription_confidence=confidence,
        low_confidence_fields=len(low_fields),
        low_confidence_field_names=low_fields,
        high_value_deal=high_value_deal,
        qualification_score=qualification_score,
        budget=data.extraction.budget or None,
        budget_amount=budget_amount,
        high_budget=high_budget,
        qualified_lead=qualified_lead,
        follow_up_needed=follow_up_needed,
        negative_outcome=negative_outcome,
        missing_required_fields=missing_required,
        negative_sentiment=negative_sentiment,
        overall_sentiment=data.transcript.sentiment_overall,
        requires_review=requires_review,
        trigger_reasons=reasons,
        recommended_action=action,
    )


def format_trigger_reason(reasons: Sequence[ReviewTriggerReason]) -> str:
    """One-line label: the most important reason, plus a count of the rest."""
    if not reasons:
        return "No review required"
    resolved = [ReviewTriggerReason(reason) for reason in reasons]
    if len(resolved) == 1:
        return TRIGGER_MESSAGES[resolved[0]]

    top = next((reason for reason in TRIGGER_PRIORITY if reason in resolved), resolved[0])
    others = len(resolved) - 1
    return f"{TRIGGER_MESSAGES[top]} +{others} more"


def calculate_quality_score(result: QualityCheckResult) -> int:
    """Overall quality 0-100. A confident, complete extraction always scores 100."""
    if (
        result.transcription_confidence > 0.9
        and result.low_confidence_fields == 0
        and not result.missing_required_fields
    ):
        return 100

    score = 100
    if result.low_confidence_transcription:
        score -= 20
    score -= min(result.low_confidence_fields * 5, 30)
    score -= min(len(result.missing_required_fields) * 10, 30)
    if result.negative_sentiment:
        score -= 5
    return max(0, min(100, score))


def get_review_priority(result: QualityCheckResult) -> int:
    """Queue priority 1-5, 5 being most urgent."""
    if result.recommended_action == RecommendedAction.FLAG_URGENT:
        return 5
    if result.high_value_deal or result.qualified_lead:
        return 4
    if result.follow_up_needed or result.low_confidence_transcription or result.low_confidence_fields > 5:
        return 3
    if result.missing_required_fields:
        return 2
    return 1


def generate_quality_summary(result: QualityCheckResult) -> QualitySummary:
    score = calculate_quality_score(result)

    if score >= 90:
        return QualitySummary(
            overall_rating=QualityRating.EXCELLENT,
            message="High-quality transcription and extraction",
            should_notify_user=False,
        )

    if score >= 75:
        suggestions = []
        if result.low_confidence_field_names:
            suggestions.append(f"Consider reviewing: {', '.join(result.low_confidence_field_names[:2])}")
        return QualitySummary(
            overall_rating=QualityRating.GOOD,
            message="Good quality - minor improvements possible",
            should_notify_user=False,
            suggestions=suggestions,
        )

    if score >= 60:
        suggestions = [f"Review {name}" for name in result.low_confidence_field_names[:3]]
        if result.missing_required_fields:
            suggestions.append("Some information may be missing")
        return QualitySummary(
            overall_rating=QualityRating.FAIR,
            message="Acceptable quality - some fields may need review",
            should_notify_user=True,
            suggestions=suggestions,
        )

    return QualitySummary(
        overall_rating=QualityRating.POOR,
        message="Low quality - review recommended",
        should_notify_user=True,
        suggestions=[
            "Review transcript for accuracy",
            "Check extracted fields",
            "Add any missing information manually",
        ],
    )


def is_catastrophic_failure(confidence: float) -> bool:
    """The one gate condition that blocks automatic CRM writes."""
    return confidence < CATASTROPHIC_CONFIDENCE_FLOOR


def get_required_fields(call_type: Optional[str] = None) -> List[str]:
    extra = REQUIRED_FIELDS_BY_CALL_TYPE.get((call_type or "").strip().lower(), ())
    return [*DEFAULT_REQUIRED_FIELDS, *extra]


def get_confidence_indicator(confidence: float) -> ConfidenceIndicator:
    """Display-only confidence bucket."""
    if confidence >= 0.85:
        return ConfidenceIndicator.HIGH
    if confidence >= 0.70:
        return ConfidenceIndicator.MEDIUM
    return ConfidenceIndicator.LOW


def review_extraction(
    data: QualityCheckInput,
    config: Optional[ReviewTriggerConfig] = None,
    call_id: Optional[str] = None,
) -> ExtractionReview:
    """Run the gate and bundle everything the CRM write path needs."""
    effective = (config or DEFAULT_REVIEW_CONFIG).merged(data.user_config)
    result = check_call_quality(data, effective)
    catastrophic = is_catastrophic_failure(result.transcription_confidence)
    return ExtractionReview(
        call_id=call_id,
        result=result,
        quality_score=calculate_quality_score(result),
        review_priority=get_review_priority(result),
        trigger_reason=format_trigger_reason(result.trigger_reasons),
        summary=generate_quality_summary(result),
        catastrophic_failure=catastrophic,
        blocking_reason=(
            TRIGGER_MESSAGES[ReviewTriggerReason.LOW_CONFIDENCE_TRANSCRIPTION] if catastrophic else None
        ),
        auto_approved=not result.requires_review and not catastrophic,
        config=effective,
    )

"""Models for the extraction quality gate and review triggers."""
from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReviewTriggerReason(str, Enum):
    """Why an extracted call was routed to human review."""

    LOW_CONFIDENCE_TRANSCRIPTION = "low_confidence_transcription"
    LOW_CONFIDENCE_FIELDS = "low_confidence_fields"
    HIGH_VALUE_DEAL = "high_value_deal"
    HIGH_BUDGET = "high_budget"
    QUALIFIED_LEAD = "qualified_lead"
    FOLLOW_UP_NEEDED = "follow_up_needed"
    NEGATIVE_SENTIMENT = "negative_sentiment"
    MISSING_REQUIRED_FIELDS = "missing_required_fields"
    USER_PREFERENCE = "user_preference"
    MANUAL_FLAG = "manual_flag"


class RecommendedAction(str, Enum):
    AUTO_APPROVE = "auto_approve"
    MANUAL_REVIEW = "manual_review"
    FLAG_URGENT = "flag_urgent"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class CallOutcome(str, Enum):
    QUALIFIED = "qualified"
    NURTURE = "nurture"
    NOT_INTERESTED = "not_interested"
    FOLLOW_UP_NEEDED = "follow_up_needed"


class QualityRating(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class ConfidenceIndicator(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ReviewTriggerConfig(BaseModel):
    """Immutable review gate thresholds.

    Low transcription confidence is the only condition meant to block
    downstream writes outright; the rest only raise review flags, and all
    opt-in flags default to off.
    """

    model_config = ConfigDict(frozen=True)

    transcription_confidence_threshold: float = Field(default=0.6, ge=0, le=1)
    field_confidence_threshold: float = Field(default=0.5, ge=0, le=1)
    max_low_confidence_fields: int = Field(default=999, ge=0)
    qualification_score_threshold: float = 100
    budget_threshold: Optional[float] = Field(default=None, ge=0)
    always_review_qualified: bool = False
    always_review_follow_up: bool = False
    always_review_negative: bool = False
    always_require_review: bool = False

    def merged(self, overrides: Optional["ReviewTriggerOverrides"] = None) -> "ReviewTriggerConfig":
        """Return a new config with the non-null override values applied."""
        if overrides is None:
            return self
        patch = overrides.model_dump(exclude_none=True)
        if not patch:
            return self
        return self.model_validate({**self.model_dump(), **patch})


class ReviewTriggerOverrides(BaseModel):
    """Partial config supplied by user preferences or a single request."""

    transcription_confidence_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    field_confidence_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    max_low_confidence_fields: Optional[int] = Field(default=None, ge=0)
    qualification_score_threshold: Optional[float] = None
    budget_threshold: Optional[float] = Field(default=None, ge=0)
    always_review_qualified: Optional[bool] = None
    always_review_follow_up: Optional[bool] = None
    always_review_negative: Optional[bool] = None
    always_require_review: Optional[bool] = None


class TranscriptData(BaseModel):
    confidence_score: float = Field(ge=0, le=1)
    sentiment_overall: Optional[Sentiment] = None


class FieldData(BaseModel):
    field_name: str
    field_value: Optional[str] = None
    confidence_score: float = Field(default=0.0, ge=0, le=1)


class ExtractionData(BaseModel):
    call_outcome: Optional[CallOutcome] = None
    qualification_score: Optional[float] = None
    budget: Optional[str] = None
    urgency: Optional[str] = None
    next_steps: Optional[str] = None


class QualityCheckInput(BaseModel):
    """Everything the gate needs about one transcribed and extracted call."""

    transcript: TranscriptData
    fields: List[FieldData] = Field(default_factory=list)
    extraction: ExtractionData = Field(default_factory=ExtractionData)
    required_fields: List[str] = Field(default_factory=list)
    user_config: Optional[ReviewTriggerOverrides] = None


class QualityCheckResult(BaseModel):
    """Computed review decision for one call."""

    model_config = ConfigDict(frozen=True)

    low_confidence_transcription: bool
    transcription_confidence: float
    low_confidence_fields: int
    low_confidence_field_names: List[str] = Field(default_factory=list)

    high_value_deal: bool
    qualification_score: float = 0
    budget: Optional[str] = None
    budget_amount: Optional[float] = None
    high_budget: bool = False
    qualified_lead: bool
    follow_up_needed: bool
    negative_outcome: bool

    missing_required_fields: List[str] = Field(default_factory=list)

    negative_sentiment: bool
    overall_sentiment: Optional[Sentiment] = None

    requires_review: bool
    trigger_reasons: List[ReviewTriggerReason] = Field(default_factory=list)
    recommended_action: RecommendedAction


class QualitySummary(BaseModel):
    """User-facing quality tier. Informational only, never blocks."""

    overall_rating: QualityRating
    message: str
    should_notify_user: bool
    suggestions: List[str] = Field(default_factory=list)


class ExtractionReview(BaseModel):
    """Full gate output handed to the CRM write path."""

    call_id: Optional[str] = None
    result: QualityCheckResult
    quality_score: int
    review_priority: int
    trigger_reason: str
    summary: QualitySummary
    catastrophic_failure: bool
    blocking_reason: Optional[str] = None
    auto_approved: bool
    config: ReviewTriggerConfig


class QualityCheckRequest(QualityCheckInput):
    """HTTP payload for the review gate."""

    call_id: Optional[str] = None
    call_type: Optional[str] = None


class ReviewPreferences(BaseModel):
    """Stored per-user review overrides."""

    organization_id: str
    user_id: str
    overrides: ReviewTriggerOverrides = Field(default_factory=ReviewTriggerOverrides)
    effective: Optional[ReviewTriggerConfig] = None
    updated_at: Optional[str] = None

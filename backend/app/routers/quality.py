"""API routes for the extraction quality gate."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.core.auth import OrganizationContext, get_organization_context
from app.core.config import get_settings
from app.core.logging import logger
from app.models.quality import (
    ExtractionReview,
    QualityCheckRequest,
    ReviewPreferences,
    ReviewTriggerConfig,
    ReviewTriggerOverrides,
)
from app.services.load_state import load_state_store
from app.services.review_triggers import get_required_fields, review_extraction

router = APIRouter(prefix="/quality", tags=["quality"])


def _stored_overrides(context: OrganizationContext) -> tuple[ReviewTriggerOverrides, Optional[str]]:
    stored = load_state_store.get_review_preferences(context.organization_id, context.actor)
    if not stored:
        return ReviewTriggerOverrides(), None
    return ReviewTriggerOverrides(**stored["overrides"]), stored["updated_at"]


def _user_config(context: OrganizationContext) -> ReviewTriggerConfig:
    """Settings defaults with the caller's stored preferences applied."""
    base = ReviewTriggerConfig(**get_settings().review_defaults())
    overrides, _ = _stored_overrides(context)
    return base.merged(overrides)


@router.post("/check", response_model=ExtractionReview)
def check_quality(
    request: QualityCheckRequest,
    context: OrganizationContext = Depends(get_organization_context),
) -> ExtractionReview:
    """
    Run the review gate over one call extraction.

    Stored user preferences are applied first, then any ``user_config`` sent
    with the request. When ``required_fields`` is empty and ``call_type`` is
    given, the call type's default required fields are used.
    """
    if not request.required_fields and request.call_type:
        request = request.model_copy(update={"required_fields": get_required_fields(request.call_type)})

    review = review_extraction(request, config=_user_config(context), call_id=request.call_id)
    logger.info(
        "Extraction quality checked",
        organization_id=context.organization_id,
        call_id=request.call_id,
        requires_review=review.result.requires_review,
        recommended_action=review.result.recommended_action.value,
        quality_score=review.quality_score,
        priority=review.review_priority,
        catastrophic=review.catastrophic_failure,
    )
    return review


@router.get("/preferences", response_model=ReviewPreferences)
def get_preferences(context: OrganizationContext = Depends(get_organization_context)) -> ReviewPreferences:
    overrides, updated_at = _stored_overrides(context)
    return ReviewPreferences(
        organization_id=context.organization_id,
        user_id=context.actor,
        overrides=overrides,
        effective=_user_config(context),
        updated_at=updated_at,
    )


@router.put("/preferences", response_model=ReviewPreferences)
def update_preferences(
    overrides: ReviewTriggerOverrides,
    context: OrganizationContext = Depends(get_organization_context),
) -> ReviewPreferences:
    stored = load_state_store.set_review_preferences(
        context.organization_id,
        context.actor,
        overrides.model_dump(exclude_none=True),
    )
    return ReviewPreferences(
        organization_id=context.organization_id,
        user_id=context.actor,
        overrides=overrides,
        effective=_user_config(context),
        updated_at=stored["updated_at"],
    )


@router.get("/required-fields")
def required_fields(call_type: Optional[str] = Query(default=None)):
    return {"call_type": call_type, "required_fields": get_required_fields(call_type)}

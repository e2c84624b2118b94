"""API routes for the load lifecycle and rate-confirmation workflow."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from app.core.auth import OrganizationContext, get_organization_context, require_roles
from app.core.logging import logger
from app.models.loads import (
    AutoGenerateRequest,
    AutoGenerateResult,
    LoadCreateRequest,
    LoadRecord,
    LoadStatus,
    LoadStatusReverseRequest,
    LoadStatusTransitionRequest,
    LoadTransitionsResponse,
    RateConfirmationEventRequest,
    RateConfirmationEventResponse,
    RateConfirmationReadiness,
    StatusMetrics,
    StatusTimeline,
)
from app.services.load_engine import TransitionRejected, load_engine

router = APIRouter(prefix="/loads", tags=["loads"])


def _rejected(exc: TransitionRejected) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": exc.result.error,
            "missing_fields": exc.result.missing_fields,
        },
    )


@router.post("", response_model=LoadRecord)
def create_load(
    request: LoadCreateRequest,
    context: OrganizationContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        return load_engine.create_load(request, context.organization_id, actor=context.actor)
    except TransitionRejected as exc:
        return _rejected(exc)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.get("")
def list_loads(
    status: Optional[LoadStatus] = Query(default=None),
    context: OrganizationContext = Depends(get_organization_context),
):
    return {
        "organization_id": context.organization_id,
        "loads": load_engine.list_loads(context.organization_id, status=status),
    }


@router.get("/metrics/status", response_model=StatusMetrics)
def get_status_metrics(context: OrganizationContext = Depends(get_organization_context)):
    return load_engine.status_metrics(context.organization_id)


@router.post("/rate-confirmations/auto-generate", response_model=AutoGenerateResult)
def auto_generate_rate_confirmations(
    request: AutoGenerateRequest,
    context: OrganizationContext = Depends(require_roles("dispatcher", "admin")),
):
    return load_engine.auto_generate_rate_confirmations(request, context.organization_id, actor=context.actor)


@router.get("/{load_id}", response_model=LoadRecord)
def get_load(load_id: str, context: OrganizationContext = Depends(get_organization_context)):
    try:
        return load_engine.get_load(context.organization_id, load_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Load not found")


@router.get("/{load_id}/transitions", response_model=LoadTransitionsResponse)
def get_load_transitions(load_id: str, context: OrganizationContext = Depends(get_organization_context)):
    try:
        return load_engine.describe_transitions(context.organization_id, load_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Load not found")


@router.post("/{load_id}/status", response_model=LoadRecord)
def transition_load_status(
    load_id: str,
    request: LoadStatusTransitionRequest,
    context: OrganizationContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        return load_engine.transition_load_status(load_id, request, context.organization_id, actor=context.actor)
    except KeyError:
        raise HTTPException(status_code=404, detail="Load not found")
    except TransitionRejected as exc:
        return _rejected(exc)
    except ValueError as exc:
        logger.warning("Load status update conflict", load_id=load_id, error=str(exc))
        raise HTTPException(status_code=409, detail=str(exc))


@router.post("/{load_id}/status/reverse", response_model=LoadRecord)
def reverse_load_status(
    load_id: str,
    request: LoadStatusReverseRequest,
    context: OrganizationContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        return load_engine.reverse_load_status(load_id, request, context.organization_id, actor=context.actor)
    except KeyError:
        raise HTTPException(status_code=404, detail="Load not found")
    except TransitionRejected as exc:
        return _rejected(exc)
    except ValueError as exc:
        logger.warning("Load status reversal conflict", load_id=load_id, error=str(exc))
        raise HTTPException(status_code=409, detail=str(exc))


@router.get("/{load_id}/history")
def get_load_history(load_id: str, context: OrganizationContext = Depends(get_organization_context)):
    try:
        return {"load_id": load_id, "entries": load_engine.history(context.organization_id, load_id)}
    except KeyError:
        raise HTTPException(status_code=404, detail="Load not found")


@router.get("/{load_id}/timeline", response_model=StatusTimeline)
def get_load_timeline(load_id: str, context: OrganizationContext = Depends(get_organization_context)):
    try:
        return load_engine.timeline(context.organization_id, load_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Load not found")


@router.post("/{load_id}/rate-confirmation/events", response_model=RateConfirmationEventResponse)
def apply_rate_confirmation_event(
    load_id: str,
    request: RateConfirmationEventRequest,
    context: OrganizationContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        return load_engine.apply_rate_confirmation_event(load_id, request, context.organization_id, actor=context.actor)
    except KeyError:
        raise HTTPException(status_code=404, detail="Load not found")
    except ValueError as exc:
        logger.error("Rate confirmation event failed", load_id=load_id, rc_event=request.event.value, error=str(exc))
        raise HTTPException(status_code=409, detail=str(exc))


@router.get("/{load_id}/rate-confirmation/readiness", response_model=RateConfirmationReadiness)
def get_rate_confirmation_readiness(load_id: str, context: OrganizationContext = Depends(get_organization_context)):
    return load_engine.rate_confirmation_readiness(context.organization_id, load_id)

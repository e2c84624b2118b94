"""Domain models for the load lifecycle and rate-confirmation workflow."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoadStatus(str, Enum):
    """Operational lifecycle status for a load."""

    QUOTED = "quoted"
    NEEDS_CARRIER = "needs_carrier"
    DISPATCHED = "dispatched"
    CONFIRMED = "confirmed"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RateConfirmationStatus(str, Enum):
    """Lifecycle of the carrier-facing rate confirmation document."""

    NONE = "none"
    GENERATED = "generated"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class RateConfirmationEvent(str, Enum):
    """Events reported against a rate confirmation."""

    GENERATED = "generated"
    SENT = "sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class NextAction(str, Enum):
    """Recommended dispatcher action for the rate confirmation."""

    GENERATE_RATE_CONFIRMATION = "generate_rate_confirmation"
    SEND_TO_CARRIER = "send_to_carrier"
    WAIT_FOR_ACCEPTANCE = "wait_for_acceptance"
    FOLLOW_UP_WITH_CARRIER = "follow_up_with_carrier"
    PROCEED_WITH_DISPATCH = "proceed_with_dispatch"
    RENEGOTIATE_OR_FIND_NEW_CARRIER = "renegotiate_or_find_new_carrier"
    RESEND_OR_FIND_NEW_CARRIER = "resend_or_find_new_carrier"


class HistoryChangeType(str, Enum):
    """Kinds of entries written to the load status history."""

    LOAD_CREATED = "load_created"
    STATUS_TRANSITION = "status_transition"
    STATUS_REVERSAL = "status_reversal"
    RATE_CONFIRMATION_EVENT = "rate_confirmation_event"


class CarrierInfo(BaseModel):
    """Carrier identity as needed on a rate confirmation."""

    carrier_id: Optional[str] = None
    carrier_name: Optional[str] = None
    mc_number: Optional[str] = None
    dot_number: Optional[str] = None
    dispatch_email: Optional[str] = None
    email: Optional[str] = None


class LoadCreateRequest(BaseModel):
    """Request payload to create a load."""

    load_id: Optional[str] = None
    reference_number: Optional[str] = None
    status: LoadStatus = LoadStatus.QUOTED
    carrier_id: Optional[str] = None
    carrier: Optional[CarrierInfo] = None
    shipper_id: Optional[str] = None
    shipper_name: Optional[str] = None
    origin_city: Optional[str] = None
    origin_state: Optional[str] = None
    destination_city: Optional[str] = None
    destination_state: Optional[str] = None
    pickup_date: Optional[str] = None
    delivery_date: Optional[str] = None
    rate_to_carrier: Optional[float] = Field(default=None, ge=0)
    rate_to_shipper: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None
    source: str = "manual"


class LoadRecord(BaseModel):
    """Persisted load record."""

    load_id: str
    reference_number: Optional[str] = None
    status: LoadStatus = LoadStatus.QUOTED
    rate_confirmation_status: RateConfirmationStatus = RateConfirmationStatus.NONE
    rate_confirmation_id: Optional[str] = None
    carrier_id: Optional[str] = None
    carrier: Optional[CarrierInfo] = None
    shipper_id: Optional[str] = None
    shipper_name: Optional[str] = None
    origin_city: Optional[str] = None
    origin_state: Optional[str] = None
    destination_city: Optional[str] = None
    destination_state: Optional[str] = None
    pickup_date: Optional[str] = None
    delivery_date: Optional[str] = None
    rate_to_carrier: Optional[float] = None
    rate_to_shipper: Optional[float] = None
    carrier_confirmed: bool = False
    carrier_confirmed_at: Optional[datetime] = None
    notes: Optional[str] = None
    source: str = "manual"
    deleted: bool = False
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class StatusTransitionResult(BaseModel):
    """Outcome of a requested status change. Failures are values, not exceptions."""

    success: bool
    new_status: Optional[LoadStatus] = None
    error: Optional[str] = None
    missing_fields: List[str] = Field(default_factory=list)


class LoadStatusTransitionRequest(BaseModel):
    """Request to move a load to a new lifecycle status."""

    status: LoadStatus
    expected_version: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = None


class LoadStatusReverseRequest(BaseModel):
    """Request to undo the last forward status change."""

    expected_version: Optional[int] = Field(default=None, ge=1)
    reason: Optional[str] = None


class LoadTransitionsResponse(BaseModel):
    """Status-machine view of a load for the dispatcher UI."""

    load_id: str
    status: LoadStatus
    status_label: str
    available_transitions: List[LoadStatus]
    previous_status: Optional[LoadStatus] = None
    can_reverse: bool
    progress: int
    is_terminal: bool
    rate_confirmation_status: RateConfirmationStatus
    next_action: Optional[NextAction] = None


class LoadStatusUpdate(BaseModel):
    """Field changes produced by a rate-confirmation event."""

    status: Optional[LoadStatus] = None
    rate_confirmation_status: RateConfirmationStatus
    carrier_confirmed: Optional[bool] = None
    carrier_confirmed_at: Optional[datetime] = None
    notes: Optional[str] = None


class RateConfirmationEventRequest(BaseModel):
    """A rate-confirmation event reported for a load."""

    event: RateConfirmationEvent
    details: Dict[str, Any] = Field(default_factory=dict)


class RateConfirmationEventResponse(BaseModel):
    """Result of applying a rate-confirmation event."""

    load_id: str
    event: RateConfirmationEvent
    previous_status: LoadStatus
    update: LoadStatusUpdate
    load: LoadRecord


class RateConfirmationReadiness(BaseModel):
    """Checklist of everything blocking rate confirmation generation."""

    can_generate: bool
    missing_fields: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class AutoGenerateRequest(BaseModel):
    """Batch generation of rate confirmations for eligible loads."""

    statuses: Optional[List[LoadStatus]] = None
    auto_send: bool = False
    limit: Optional[int] = Field(default=None, ge=1, le=500)


class AutoGenerateResult(BaseModel):
    """Counters for a batch generation run."""

    processed: int = 0
    generated: int = 0
    sent: int = 0
    errors: List[str] = Field(default_factory=list)


class StatusHistoryEntry(BaseModel):
    """Append-only audit record for a load."""

    history_id: str
    load_id: str
    status: Optional[LoadStatus] = None
    change_type: HistoryChangeType
    change_reason: Optional[str] = None
    actor: str = "system"
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class StatusEvent(BaseModel):
    """A point in time at which a load entered a status."""

    status: LoadStatus
    timestamp: datetime
    user: Optional[str] = None
    notes: Optional[str] = None


class StatusTimeline(BaseModel):
    """Sorted status history with hours spent in each status."""

    current: LoadStatus
    history: List[StatusEvent] = Field(default_factory=list)
    duration: Dict[str, float] = Field(default_factory=dict)


class StatusTransitionCount(BaseModel):
    from_status: LoadStatus
    to_status: LoadStatus
    count: int


class StatusMetrics(BaseModel):
    """Aggregate lifecycle analytics across loads."""

    average_time_in_status: Dict[str, float] = Field(default_factory=dict)
    most_common_transitions: List[StatusTransitionCount] = Field(default_factory=list)
    cancellation_rate: float = 0.0
    completion_rate: float = 0.0
    average_time_to_completion: float = 0.0

"""
Load Status Workflow

Canonical lifecycle of a load:

    quoted -> needs_carrier -> dispatched -> in_transit -> delivered -> completed

Forward moves are one step at a time. Any status except ``completed`` can be
cancelled, and an undo moves exactly one step back. ``confirmed`` is the
carrier-accepted twin of ``dispatched``; only a rate confirmation event puts
a load there.

Everything in this module is pure: callers fetch the load, ask for a
decision, and persist it themselves.
"""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from app.models.loads import (
    LoadStatus,
    StatusEvent,
    StatusMetrics,
    StatusTimeline,
    StatusTransitionCount,
    StatusTransitionResult,
)


STATUS_ORDER: tuple[LoadStatus, ...] = (
    LoadStatus.QUOTED,
    LoadStatus.NEEDS_CARRIER,
    LoadStatus.DISPATCHED,
    LoadStatus.IN_TRANSIT,
    LoadStatus.DELIVERED,
    LoadStatus.COMPLETED,
)

# Forward successor of each status. Every member of LoadStatus has an entry.
NEXT_STATUS: Dict[LoadStatus, Optional[LoadStatus]] = {
    LoadStatus.QUOTED: LoadStatus.NEEDS_CARRIER,
    LoadStatus.NEEDS_CARRIER: LoadStatus.DISPATCHED,
    LoadStatus.DISPATCHED: LoadStatus.IN_TRANSIT,
    LoadStatus.CONFIRMED: LoadStatus.IN_TRANSIT,
    LoadStatus.IN_TRANSIT: LoadStatus.DELIVERED,
    LoadStatus.DELIVERED: LoadStatus.COMPLETED,
    LoadStatus.COMPLETED: None,
    LoadStatus.CANCELLED: None,
}

# Undo target of each status. Cancellation does not record where it came from.
PREVIOUS_STATUS: Dict[LoadStatus, Optional[LoadStatus]] = {
    LoadStatus.QUOTED: None,
    LoadStatus.NEEDS_CARRIER: LoadStatus.QUOTED,
    LoadStatus.DISPATCHED: LoadStatus.NEEDS_CARRIER,
    LoadStatus.CONFIRMED: LoadStatus.DISPATCHED,
    LoadStatus.IN_TRANSIT: LoadStatus.DISPATCHED,
    LoadStatus.DELIVERED: LoadStatus.IN_TRANSIT,
    LoadStatus.COMPLETED: LoadStatus.DELIVERED,
    LoadStatus.CANCELLED: None,
}

# Data a load must carry before it may enter a status.
REQUIRED_FIELDS: Dict[LoadStatus, tuple[str, ...]] = {
    LoadStatus.QUOTED: (),
    LoadStatus.NEEDS_CARRIER: (),
    LoadStatus.DISPATCHED: ("carrier_id", "rate_to_carrier"),
    LoadStatus.CONFIRMED: (),
    LoadStatus.IN_TRANSIT: (),
    LoadStatus.DELIVERED: (),
    LoadStatus.COMPLETED: ("rate_to_shipper", "rate_to_carrier"),
    LoadStatus.CANCELLED: (),
}

STATUS_LABELS: Dict[LoadStatus, str] = {
    LoadStatus.QUOTED: "Quoted",
    LoadStatus.NEEDS_CARRIER: "Needs Carrier",
    LoadStatus.DISPATCHED: "Dispatched",
    LoadStatus.CONFIRMED: "Confirmed",
    LoadStatus.IN_TRANSIT: "In Transit",
    LoadStatus.DELIVERED: "Delivered",
    LoadStatus.COMPLETED: "Completed",
    LoadStatus.CANCELLED: "Cancelled",
}

TERMINAL_STATUSES = frozenset({LoadStatus.COMPLETED, LoadStatus.CANCELLED})


def coerce_status(value: Any) -> Optional[LoadStatus]:
    """Map a status string or enum to LoadStatus, or None when unknown."""
    if isinstance(value, LoadStatus):
        return value
    try:
        return LoadStatus(str(value or "").strip().lower())
    except ValueError:
        return None


def _as_mapping(load_data: Any) -> Mapping[str, Any]:
    if load_data is None:
        return {}
    if hasattr(load_data, "model_dump"):
        return load_data.model_dump()
    return load_data


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


def is_valid_transition(current: Any, target: Any) -> bool:
    """True for a one-step forward move, or a cancellation of anything but a completed load."""
    current_status = coerce_status(current)
    target_status = coerce_status(target)
    if current_status is None or target_status is None:
        return False
    if target_status == LoadStatus.CANCELLED:
        return current_status != LoadStatus.COMPLETED
    return NEXT_STATUS[current_status] == target_status


def get_available_transitions(current: Any) -> List[LoadStatus]:
    status = coerce_status(current)
    if status is None:
        return []
    transitions: List[LoadStatus] = []
    successor = NEXT_STATUS[status]
    if successor is not None:
        transitions.append(successor)
    if status not in TERMINAL_STATUSES:
        transitions.append(LoadStatus.CANCELLED)
    return transitions


def missing_fields_for(target: Any, load_data: Any = None) -> List[str]:
    """Names of the fields ``load_data`` lacks to enter ``target``."""
    status = coerce_status(target)
    if status is None:
        return []
    data = _as_mapping(load_data)
    return [name for name in REQUIRED_FIELDS[status] if _is_blank(data.get(name))]


def transition_status(current: Any, target: Any, load_data: Any = None) -> StatusTransitionResult:
    """
    Validate a requested status change.

    Adjacency is checked first, then the data preconditions of the target
    status. A failed precondition reports every missing field at once so the
    caller can prompt for all of them.
    """
    if not is_valid_transition(current, target):
        current_label = getattr(current, "value", current)
        target_label = getattr(target, "value", target)
        return StatusTransitionResult(
            success=False,
            error=f"Cannot transition from {current_label} to {target_label}",
        )

    target_status = coerce_status(target)
    missing = missing_fields_for(target_status, load_data)
    if missing:
        return StatusTransitionResult(
            success=False,
            error="Missing required fields for this transition",
            missing_fields=missing,
        )

    return StatusTransitionResult(success=True, new_status=target_status)


def get_previous_status(current: Any) -> Optional[LoadStatus]:
    status = coerce_status(current)
    if status is None:
        return None
    return PREVIOUS_STATUS[status]


def can_reverse_status(current: Any) -> bool:
    return get_previous_status(current) is not None


def get_status_progress(current: Any) -> int:
    """Percent position along the linear lifecycle; cancelled is off the scale and reads 0."""
    status = coerce_status(current)
    if status is None or status == LoadStatus.CANCELLED:
        return 0
    if status == LoadStatus.CONFIRMED:
        status = LoadStatus.DISPATCHED
    index = STATUS_ORDER.index(status)
    return int(round((index + 1) / len(STATUS_ORDER) * 100))


def is_terminal_status(status: Any) -> bool:
    return coerce_status(status) in TERMINAL_STATUSES


def format_status(status: Any) -> str:
    resolved = coerce_status(status)
    if resolved is None:
        return str(getattr(status, "value", status))
    return STATUS_LABELS[resolved]


def _hours_between(start: datetime, end: datetime) -> float:
    return (_aware(end) - _aware(start)).total_seconds() / 3600


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_status_timeline(events: Iterable[StatusEvent], now: Optional[datetime] = None) -> StatusTimeline:
    """Sort status events and total the hours spent in each status.

    The latest status is measured up to ``now``.
    """
    ordered = sorted(events, key=lambda event: _aware(event.timestamp))
    if not ordered:
        return StatusTimeline(current=LoadStatus.QUOTED)

    reference = now or datetime.now(timezone.utc)
    duration: Dict[str, float] = {}
    for index, event in enumerate(ordered):
        end = ordered[index + 1].timestamp if index + 1 < len(ordered) else reference
        key = event.status.value
        duration[key] = duration.get(key, 0.0) + _hours_between(event.timestamp, end)

    return StatusTimeline(current=ordered[-1].status, history=ordered, duration=duration)


def calculate_status_metrics(
    loads: Sequence[Mapping[str, Any]],
    now: Optional[datetime] = None,
) -> StatusMetrics:
    """
    Lifecycle analytics over a set of loads.

    Each load is a mapping with ``status`` and an optional ``status_history``
    list of StatusEvent (or dicts in the same shape).
    """
    time_in_status: Dict[str, List[float]] = {status.value: [] for status in LoadStatus}
    transitions: Counter = Counter()
    completion_times: List[float] = []
    completed = 0
    cancelled = 0

    for load in loads:
        status = coerce_status(load.get("status"))
        if status == LoadStatus.COMPLETED:
            completed += 1
        elif status == LoadStatus.CANCELLED:
            cancelled += 1

        history = [
            event if isinstance(event, StatusEvent) else StatusEvent(**event)
            for event in (load.get("status_history") or [])
        ]
        if not history:
            continue

        timeline = get_status_timeline(history, now=now)
        for key, hours in timeline.duration.items():
            time_in_status[key].append(hours)

        for previous, following in zip(history, history[1:]):
            transitions[(previous.status, following.status)] += 1

        if status == LoadStatus.COMPLETED:
            completion_times.append(_hours_between(history[0].timestamp, history[-1].timestamp))

    total = len(loads)
    return StatusMetrics(
        average_time_in_status={
            key: sum(values) / len(values) for key, values in time_in_status.items() if values
        },
        most_common_transitions=[
            StatusTransitionCount(from_status=pair[0], to_status=pair[1], count=count)
            for pair, count in transitions.most_common(5)
        ],
        cancellation_rate=(cancelled / total * 100) if total else 0.0,
        completion_rate=(completed / total * 100) if total else 0.0,
        average_time_to_completion=(
            sum(completion_times) / len(completion_times) if completion_times else 0.0
        ),
    )

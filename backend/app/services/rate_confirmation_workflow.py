"""
Rate Confirmation Workflow

Keeps a load's operational status in step with its rate confirmation:
1. Sending a rate con to a quoted / unassigned load dispatches it
2. Carrier acceptance of a dispatched load confirms it
3. Rejection always sends the load back to carrier search
4. Expiry of a dispatched load's rate con sends it back to carrier search

The event policy is the RATE_CONFIRMATION_RULES table. Applying an event is
read -> single guarded write -> append history, with the store and the
history writer injected so the policy can be tested without a database.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional

from app.core.logging import logger
from app.models.loads import (
    AutoGenerateResult,
    HistoryChangeType,
    LoadStatus,
    LoadStatusUpdate,
    NextAction,
    RateConfirmationEvent,
    RateConfirmationReadiness,
    RateConfirmationStatus,
)
from app.services.status_workflow import coerce_status


@dataclass(frozen=True)
class RateConfirmationRule:
    """One row of the event policy. ``when`` of None matches any load status."""

    when: Optional[FrozenSet[LoadStatus]]
    rate_confirmation_status: RateConfirmationStatus
    load_status: Optional[LoadStatus] = None
    carrier_confirmed: Optional[bool] = None
    stamp_confirmation: bool = False
    note: Optional[str] = None

    def matches(self, status: LoadStatus) -> bool:
        return self.when is None or status in self.when


_ACCEPTANCE_RULES = (
    RateConfirmationRule(
        when=frozenset({LoadStatus.DISPATCHED}),
        load_status=LoadStatus.CONFIRMED,
        rate_confirmation_status=RateConfirmationStatus.ACCEPTED,
        carrier_confirmed=True,
        stamp_confirmation=True,
        note="Carrier confirmed acceptance",
    ),
    RateConfirmationRule(
        when=None,
        rate_confirmation_status=RateConfirmationStatus.ACCEPTED,
        carrier_confirmed=True,
        stamp_confirmation=True,
    ),
)

# First matching rule wins; every event ends with a catch-all row.
RATE_CONFIRMATION_RULES: Dict[RateConfirmationEvent, tuple[RateConfirmationRule, ...]] = {
    RateConfirmationEvent.GENERATED: (
        RateConfirmationRule(
            when=None,
            rate_confirmation_status=RateConfirmationStatus.GENERATED,
            note="Rate confirmation generated",
        ),
    ),
    RateConfirmationEvent.SENT: (
        RateConfirmationRule(
            when=frozenset({LoadStatus.QUOTED, LoadStatus.NEEDS_CARRIER}),
            load_status=LoadStatus.DISPATCHED,
            rate_confirmation_status=RateConfirmationStatus.SENT,
            note="Rate confirmation sent to carrier",
        ),
        RateConfirmationRule(when=None, rate_confirmation_status=RateConfirmationStatus.SENT),
    ),
    RateConfirmationEvent.VIEWED: (
        RateConfirmationRule(
            when=None,
            rate_confirmation_status=RateConfirmationStatus.VIEWED,
            note="Rate confirmation viewed by carrier",
        ),
    ),
    RateConfirmationEvent.SIGNED: _ACCEPTANCE_RULES,
    RateConfirmationEvent.ACCEPTED: _ACCEPTANCE_RULES,
    RateConfirmationEvent.REJECTED: (
        RateConfirmationRule(
            when=None,
            load_status=LoadStatus.NEEDS_CARRIER,
            rate_confirmation_status=RateConfirmationStatus.REJECTED,
            carrier_confirmed=False,
            note="Carrier rejected rate confirmation",
        ),
    ),
    RateConfirmationEvent.EXPIRED: (
        RateConfirmationRule(
            when=frozenset({LoadStatus.DISPATCHED}),
            load_status=LoadStatus.NEEDS_CARRIER,
            rate_confirmation_status=RateConfirmationStatus.EXPIRED,
            note="Rate confirmation expired without carrier acceptance",
        ),
        RateConfirmationRule(when=None, rate_confirmation_status=RateConfirmationStatus.EXPIRED),
    ),
}

STATUSES_REQUIRING_RATE_CONFIRMATION = frozenset({
    LoadStatus.QUOTED,
    LoadStatus.DISPATCHED,
    LoadStatus.CONFIRMED,
    LoadStatus.IN_TRANSIT,
    LoadStatus.DELIVERED,
})

NEXT_ACTIONS: Dict[RateConfirmationStatus, NextAction] = {
    RateConfirmationStatus.NONE: NextAction.GENERATE_RATE_CONFIRMATION,
    RateConfirmationStatus.GENERATED: NextAction.SEND_TO_CARRIER,
    RateConfirmationStatus.SENT: NextAction.WAIT_FOR_ACCEPTANCE,
    RateConfirmationStatus.VIEWED: NextAction.FOLLOW_UP_WITH_CARRIER,
    RateConfirmationStatus.ACCEPTED: NextAction.PROCEED_WITH_DISPATCH,
    RateConfirmationStatus.REJECTED: NextAction.RENEGOTIATE_OR_FIND_NEW_CARRIER,
    RateConfirmationStatus.EXPIRED: NextAction.RESEND_OR_FIND_NEW_CARRIER,
}

DEFAULT_AUTO_GENERATE_STATUSES = (LoadStatus.DISPATCHED, LoadStatus.CONFIRMED)


def find_rule(current_status: Any, event: Any) -> RateConfirmationRule:
    status = coerce_status(current_status)
    if status is None:
        raise ValueError(f"Unknown load status '{current_status}'")
    rules = RATE_CONFIRMATION_RULES[RateConfirmationEvent(event)]
    return next(rule for rule in rules if rule.matches(status))


def compute_rate_confirmation_update(
    current_status: Any,
    event: Any,
    details: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
) -> LoadStatusUpdate:
    """Look up what an event does to a load in ``current_status``."""
    rule = find_rule(current_status, event)
    note = rule.note
    if note and RateConfirmationEvent(event) == RateConfirmationEvent.REJECTED:
        reason = (details or {}).get("reason") or "Not specified"
        note = f"{note}. Reason: {reason}"

    return LoadStatusUpdate(
        status=rule.load_status,
        rate_confirmation_status=rule.rate_confirmation_status,
        carrier_confirmed=rule.carrier_confirmed,
        carrier_confirmed_at=(now or datetime.now(timezone.utc)) if rule.stamp_confirmation else None,
        notes=note,
    )


def requires_rate_confirmation(load_status: Any) -> bool:
    return coerce_status(load_status) in STATUSES_REQUIRING_RATE_CONFIRMATION


def get_next_action(load_status: Any, rate_confirmation_status: Any = None) -> Optional[NextAction]:
    if not requires_rate_confirmation(load_status):
        return None
    if rate_confirmation_status is None or rate_confirmation_status == "":
        return NextAction.GENERATE_RATE_CONFIRMATION
    try:
        resolved = RateConfirmationStatus(rate_confirmation_status)
    except ValueError:
        return None
    return NEXT_ACTIONS[resolved]


def _field(load: Any, name: str) -> Any:
    if isinstance(load, Mapping):
        return load.get(name)
    return getattr(load, name, None)


def can_generate_rate_confirmation(load: Any) -> RateConfirmationReadiness:
    """Collect every reason a rate confirmation cannot be generated yet."""
    if load is None:
        return RateConfirmationReadiness(can_generate=False, errors=["Load not found"])

    missing_fields: List[str] = []
    errors: List[str] = []

    carrier = _field(load, "carrier")
    if not _field(load, "carrier_id"):
        missing_fields.append("carrier")
    if not carrier:
        errors.append("Carrier information not found")
    if _field(load, "rate_to_carrier") is None and _field(load, "carrier_rate") is None:
        missing_fields.append("carrier_rate")
    for name in (
        "origin_city",
        "origin_state",
        "destination_city",
        "destination_state",
        "pickup_date",
        "delivery_date",
    ):
        if not _field(load, name):
            missing_fields.append(name)

    if carrier and not _field(carrier, "mc_number") and not _field(carrier, "dot_number"):
        errors.append("Carrier must have MC or DOT number")

    return RateConfirmationReadiness(
        can_generate=not missing_fields and not errors,
        missing_fields=missing_fields,
        errors=errors,
    )


class RateConfirmationWorkflow:
    """
    Applies rate-confirmation events to stored loads.

    ``store`` must provide ``get_load(organization_id, load_id)``,
    ``list_loads(organization_id, ...)`` and
    ``apply_load_update(organization_id, load_id, fields, expected_status=..., history=...)``,
    where ``history`` is written in the same transaction as the load fields.
    """

    def __init__(self, store: Any, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def handle_event(
        self,
        organization_id: str,
        load_id: str,
        event: RateConfirmationEvent,
        details: Optional[Dict[str, Any]] = None,
        actor: str = "system",
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> tuple[LoadStatus, LoadStatusUpdate, Dict[str, Any]]:
        """
        Apply one event and return (previous status, update, stored load).

        ``extra_fields`` are merged into the same write as the event's fields.
        Raises KeyError when the load does not exist and ValueError when the
        load changed status between the read and the write.
        """
        load = self.store.get_load(organization_id, load_id)
        if not load:
            raise KeyError(load_id)

        event = RateConfirmationEvent(event)
        current_status = coerce_status(load.get("status"))
        update = compute_rate_confirmation_update(current_status, event, details, now=self.clock())

        fields = dict(extra_fields or {})
        fields.update(update.model_dump(mode="json", exclude_none=True))
        fields.pop("notes", None)

        history_details = {
            **update.model_dump(mode="json", exclude_none=True),
            "previous_status": current_status.value,
        }
        if details:
            history_details["event_details"] = dict(details)

        row = self.store.apply_load_update(
            organization_id,
            load_id,
            fields,
            expected_status=current_status,
            history={
                "change_type": HistoryChangeType.RATE_CONFIRMATION_EVENT,
                "status": update.status,
                "change_reason": event.value,
                "actor": actor,
                "details": history_details,
            },
        )

        logger.info(
            "Rate confirmation event applied",
            organization_id=organization_id,
            load_id=load_id,
            rc_event=event.value,
            previous_status=current_status.value,
            new_status=row.get("status"),
            rate_confirmation_status=update.rate_confirmation_status.value,
        )
        return current_status, update, row

    def auto_generate(
        self,
        organization_id: str,
        statuses: Optional[List[LoadStatus]] = None,
        auto_send: bool = False,
        limit: Optional[int] = None,
        actor: str = "system",
    ) -> AutoGenerateResult:
        """Generate (and optionally send) rate confirmations for loads that have none."""
        wanted = set(statuses or DEFAULT_AUTO_GENERATE_STATUSES)
        result = AutoGenerateResult()

        candidates = [
            load
            for load in self.store.list_loads(organization_id)
            if coerce_status(load.get("status")) in wanted
            and not load.get("rate_confirmation_id")
            and not load.get("deleted")
        ]
        if limit:
            candidates = candidates[:limit]

        for load in candidates:
            result.processed += 1
            label = load.get("reference_number") or load["load_id"]

            readiness = can_generate_rate_confirmation(load)
            if not readiness.can_generate:
                problems = ", ".join(readiness.errors) or "Missing: " + ", ".join(readiness.missing_fields)
                result.errors.append(f"Load {label}: {problems}")
                continue

            try:
                self.handle_event(
                    organization_id,
                    load["load_id"],
                    RateConfirmationEvent.GENERATED,
                    actor=actor,
                    extra_fields={"rate_confirmation_id": f"RC-{load['load_id']}"},
                )
                result.generated += 1

                carrier = load.get("carrier") or {}
                carrier_email = carrier.get("dispatch_email") or carrier.get("email")
                if auto_send and carrier_email:
                    self.handle_event(
                        organization_id,
                        load["load_id"],
                        RateConfirmationEvent.SENT,
                        details={"to_emails": [carrier_email]},
                        actor=actor,
                    )
                    result.sent += 1
            except (KeyError, ValueError) as exc:
                logger.warning("Rate confirmation auto-generation failed", load_id=load["load_id"], error=str(exc))
                result.errors.append(f"Error processing load {label}: {exc}")

        logger.info(
            "Rate confirmation batch finished",
            organization_id=organization_id,
            processed=result.processed,
            generated=result.generated,
            sent=result.sent,
            errors=len(result.errors),
        )
        return result

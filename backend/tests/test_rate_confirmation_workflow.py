"""Unit tests for the rate-confirmation event policy and workflow."""
from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_state"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["LOAD_DB_PATH"] = str(TMP / "loads.db")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.models.loads import (  # noqa: E402
    LoadRecord,
    LoadStatus,
    NextAction,
    RateConfirmationEvent,
    RateConfirmationStatus,
)
from app.services.load_state import LoadStateStore  # noqa: E402
from app.services.rate_confirmation_workflow import (  # noqa: E402
    RateConfirmationWorkflow,
    can_generate_rate_confirmation,
    compute_rate_confirmation_update,
    get_next_action,
    requires_rate_confirmation,
)


NOW = datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)


class InMemoryLoadStore:
    """Dict-backed stand-in exposing the store calls the workflow makes."""

    def __init__(self, loads):
        self.loads = {load["load_id"]: dict(load) for load in loads}
        self.writes = []
        self.history = []
        self.fail_writes = 0

    def get_load(self, organization_id, load_id):
        load = self.loads.get(load_id)
        return dict(load) if load else None

    def list_loads(self, organization_id, status=None, include_deleted=False):
        return [dict(load) for load in self.loads.values()]

    def apply_load_update(
        self,
        organization_id,
        load_id,
        fields,
        expected_status=None,
        expected_version=None,
        history=None,
    ):
        load = self.loads[load_id]
        expected = getattr(expected_status, "value", expected_status)
        if expected is not None and load["status"] != expected:
            raise ValueError(f"Status conflict for {load_id}")
        if self.fail_writes:
            self.fail_writes -= 1
            raise ValueError(f"Concurrent update detected for {load_id}")
        load.update(fields)
        self.writes.append((load_id, dict(fields)))
        if history is not None:
            self.history.append({"load_id": load_id, **history})
        return dict(load)


def _ready_load(load_id="LOAD01000", status="dispatched", **overrides):
    load = {
        "load_id": load_id,
        "status": status,
        "carrier_id": "CAR-1",
        "carrier": {"carrier_id": "CAR-1", "mc_number": "MC123456", "dispatch_email": "dispatch@carrier.test"},
        "rate_to_carrier": 1850.0,
        "origin_city": "Dallas",
        "origin_state": "TX",
        "destination_city": "Memphis",
        "destination_state": "TN",
        "pickup_date": "2026-03-03",
        "delivery_date": "2026-03-04",
    }
    load.update(overrides)
    return load


def _workflow(*loads):
    store = InMemoryLoadStore(loads)
    return RateConfirmationWorkflow(store, clock=lambda: NOW), store


@pytest.mark.parametrize("status", ["quoted", "needs_carrier"])
def test_sent_dispatches_unassigned_loads(status):
    update = compute_rate_confirmation_update(status, "sent")
    assert update.status == LoadStatus.DISPATCHED
    assert update.rate_confirmation_status == RateConfirmationStatus.SENT
    assert update.notes == "Rate confirmation sent to carrier"


def test_sent_leaves_moving_loads_alone():
    update = compute_rate_confirmation_update(LoadStatus.IN_TRANSIT, RateConfirmationEvent.SENT)
    assert update.status is None
    assert update.rate_confirmation_status == RateConfirmationStatus.SENT
    assert update.notes is None


@pytest.mark.parametrize("event", ["accepted", "signed"])
def test_acceptance_confirms_dispatched_load(event):
    update = compute_rate_confirmation_update("dispatched", event, now=NOW)
    assert update.status == LoadStatus.CONFIRMED
    assert update.rate_confirmation_status == RateConfirmationStatus.ACCEPTED
    assert update.carrier_confirmed is True
    assert update.carrier_confirmed_at == NOW


def test_acceptance_elsewhere_only_marks_the_carrier():
    update = compute_rate_confirmation_update("in_transit", "accepted", now=NOW)
    assert update.status is None
    assert update.carrier_confirmed is True
    assert update.carrier_confirmed_at == NOW


@pytest.mark.parametrize("status", [status.value for status in LoadStatus])
def test_rejection_always_returns_to_carrier_search(status):
    update = compute_rate_confirmation_update(status, "rejected", {"reason": "Rate too low"})
    assert update.status == LoadStatus.NEEDS_CARRIER
    assert update.rate_confirmation_status == RateConfirmationStatus.REJECTED
    assert update.carrier_confirmed is False
    assert update.notes == "Carrier rejected rate confirmation. Reason: Rate too low"


def test_rejection_without_reason():
    update = compute_rate_confirmation_update("dispatched", "rejected")
    assert update.notes.endswith("Reason: Not specified")


def test_expiry_only_reverts_dispatched_loads():
    dispatched = compute_rate_confirmation_update("dispatched", "expired")
    assert dispatched.status == LoadStatus.NEEDS_CARRIER
    assert dispatched.rate_confirmation_status == RateConfirmationStatus.EXPIRED

    confirmed = compute_rate_confirmation_update("confirmed", "expired")
    assert confirmed.status is None
    assert confirmed.rate_confirmation_status == RateConfirmationStatus.EXPIRED


def test_generated_and_viewed_never_move_the_load():
    for event in ("generated", "viewed"):
        update = compute_rate_confirmation_update("dispatched", event)
        assert update.status is None
        assert update.rate_confirmation_status.value == event


def test_unknown_status_is_rejected():
    with pytest.raises(ValueError):
        compute_rate_confirmation_update("teleported", "sent")


def test_next_action():
    assert get_next_action("dispatched", None) == NextAction.GENERATE_RATE_CONFIRMATION
    assert get_next_action("dispatched", "") == NextAction.GENERATE_RATE_CONFIRMATION
    assert get_next_action("dispatched", "sent") == NextAction.WAIT_FOR_ACCEPTANCE
    assert get_next_action("in_transit", "rejected") == NextAction.RENEGOTIATE_OR_FIND_NEW_CARRIER
    assert get_next_action("needs_carrier", "generated") is None
    assert get_next_action("completed", "accepted") is None
    assert get_next_action("dispatched", "misplaced") is None

    assert requires_rate_confirmation("quoted") is True
    assert requires_rate_confirmation("cancelled") is False


def test_readiness_collects_every_problem():
    readiness = can_generate_rate_confirmation({"load_id": "LOAD01000"})
    assert readiness.can_generate is False
    assert readiness.missing_fields == [
        "carrier",
        "carrier_rate",
        "origin_city",
        "origin_state",
        "destination_city",
        "destination_state",
        "pickup_date",
        "delivery_date",
    ]
    assert readiness.errors == ["Carrier information not found"]


def test_readiness_requires_mc_or_dot():
    load = _ready_load(carrier={"carrier_id": "CAR-1"})
    readiness = can_generate_rate_confirmation(load)
    assert readiness.can_generate is False
    assert readiness.missing_fields == []
    assert readiness.errors == ["Carrier must have MC or DOT number"]

    assert can_generate_rate_confirmation(_ready_load()).can_generate is True
    assert can_generate_rate_confirmation(LoadRecord(**_ready_load())).can_generate is True
    assert can_generate_rate_confirmation(None).errors == ["Load not found"]


def test_zero_rate_counts_as_present():
    readiness = can_generate_rate_confirmation(_ready_load(rate_to_carrier=0.0))
    assert "carrier_rate" not in readiness.missing_fields


def test_handle_event_writes_once_and_keeps_notes_in_history():
    workflow, store = _workflow(_ready_load(status="needs_carrier"))
    previous, update, row = workflow.handle_event(
        "org", "LOAD01000", RateConfirmationEvent.SENT, details={"to_emails": ["a@b.test"]}, actor="dana"
    )

    assert previous == LoadStatus.NEEDS_CARRIER
    assert row["status"] == "dispatched"
    assert row["rate_confirmation_status"] == "sent"
    assert len(store.writes) == 1
    assert "notes" not in store.writes[0][1]

    entry = store.history[0]
    assert entry["change_reason"] == "sent"
    assert entry["actor"] == "dana"
    assert entry["status"] == LoadStatus.DISPATCHED
    assert entry["details"]["notes"] == "Rate confirmation sent to carrier"
    assert entry["details"]["previous_status"] == "needs_carrier"
    assert entry["details"]["event_details"] == {"to_emails": ["a@b.test"]}


def test_event_details_cannot_overwrite_recorded_outcome():
    workflow, store = _workflow(_ready_load(status="dispatched"))
    workflow.handle_event(
        "org",
        "LOAD01000",
        RateConfirmationEvent.REJECTED,
        details={
            "reason": "Rate too low",
            "status": "completed",
            "rate_confirmation_status": "accepted",
            "previous_status": "quoted",
            "notes": "all good",
        },
    )

    details = store.history[0]["details"]
    assert details["status"] == "needs_carrier"
    assert details["rate_confirmation_status"] == "rejected"
    assert details["previous_status"] == "dispatched"
    assert details["notes"] == "Carrier rejected rate confirmation. Reason: Rate too low"
    assert details["event_details"]["status"] == "completed"
    assert store.loads["LOAD01000"]["status"] == "needs_carrier"


def test_handle_event_missing_load():
    workflow, store = _workflow()
    with pytest.raises(KeyError):
        workflow.handle_event("org", "LOAD09999", RateConfirmationEvent.VIEWED)
    assert store.history == []


def test_auto_generate_generates_and_sends():
    workflow, store = _workflow(
        _ready_load("LOAD01000"),
        _ready_load("LOAD01001", carrier={"carrier_id": "CAR-2", "dot_number": "998877"}),
        _ready_load("LOAD01002", status="in_transit"),
        _ready_load("LOAD01003", rate_confirmation_id="RC-EXISTING"),
        _ready_load("LOAD01004", origin_city=None, reference_number="REF-4"),
    )
    result = workflow.auto_generate("org", auto_send=True)

    assert result.processed == 3
    assert result.generated == 2
    assert result.sent == 1
    assert result.errors == ["Load REF-4: Missing: origin_city"]

    assert store.loads["LOAD01000"]["rate_confirmation_id"] == "RC-LOAD01000"
    assert store.loads["LOAD01000"]["rate_confirmation_status"] == "sent"
    assert store.loads["LOAD01001"]["rate_confirmation_status"] == "generated"
    assert store.loads["LOAD01002"].get("rate_confirmation_id") is None
    assert [entry["change_reason"] for entry in store.history] == ["generated", "sent", "generated"]

    generated_writes = [fields for load_id, fields in store.writes if load_id == "LOAD01001"]
    assert generated_writes == [{"rate_confirmation_id": "RC-LOAD01001", "rate_confirmation_status": "generated"}]


def test_failed_generation_leaves_load_eligible_for_next_batch():
    workflow, store = _workflow(_ready_load("LOAD01000"))
    store.fail_writes = 1

    first = workflow.auto_generate("org")
    assert first.generated == 0
    assert first.errors == ["Error processing load LOAD01000: Concurrent update detected for LOAD01000"]
    assert store.loads["LOAD01000"].get("rate_confirmation_id") is None
    assert store.history == []

    second = workflow.auto_generate("org")
    assert second.processed == 1
    assert second.generated == 1
    assert store.loads["LOAD01000"]["rate_confirmation_id"] == "RC-LOAD01000"
    assert store.loads["LOAD01000"]["rate_confirmation_status"] == "generated"


def test_auto_generate_respects_limit_and_statuses():
    workflow, _ = _workflow(
        _ready_load("LOAD01000", status="in_transit"),
        _ready_load("LOAD01001", status="in_transit"),
    )
    result = workflow.auto_generate("org", statuses=[LoadStatus.IN_TRANSIT], limit=1)
    assert result.processed == 1
    assert result.generated == 1
    assert result.sent == 0


def test_store_backed_rejection_round_trip():
    store = LoadStateStore()
    organization_id = f"rc_{uuid4().hex[:8]}"
    store.upsert_load(organization_id, LoadRecord(**_ready_load()))
    workflow = RateConfirmationWorkflow(store, clock=lambda: NOW)

    workflow.handle_event(organization_id, "LOAD01000", RateConfirmationEvent.ACCEPTED)
    accepted = store.get_load(organization_id, "LOAD01000")
    assert accepted["status"] == "confirmed"
    assert accepted["carrier_confirmed"] is True
    assert accepted["version"] == 2

    workflow.handle_event(organization_id, "LOAD01000", RateConfirmationEvent.REJECTED, details={"reason": "No truck"})
    rejected = store.get_load(organization_id, "LOAD01000")
    assert rejected["status"] == "needs_carrier"
    assert rejected["carrier_confirmed"] is False
    assert rejected["rate_confirmation_status"] == "rejected"

    history = store.list_history(organization_id, "LOAD01000")
    assert [entry["change_reason"] for entry in history] == ["accepted", "rejected"]
    assert history[-1]["details"]["notes"] == "Carrier rejected rate confirmation. Reason: No truck"
    assert history[-1]["details"]["event_details"] == {"reason": "No truck"}


@pytest.mark.parametrize("status", ["cancelled", "completed"])
def test_rejection_reopens_terminal_loads(status):
    store = LoadStateStore()
    organization_id = f"rc_{uuid4().hex[:8]}"
    store.upsert_load(organization_id, LoadRecord(**_ready_load(status=status, rate_to_shipper=2400.0)))
    workflow = RateConfirmationWorkflow(store, clock=lambda: NOW)

    previous, _, row = workflow.handle_event(organization_id, "LOAD01000", RateConfirmationEvent.REJECTED)
    assert previous.value == status
    assert row["status"] == "needs_carrier"

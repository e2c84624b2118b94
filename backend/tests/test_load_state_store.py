"""Unit tests for load state persistence."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import os
import sys
from pathlib import Path
from uuid import uuid4

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_state"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["LOAD_DB_PATH"] = str(TMP / "loads.db")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.models.loads import HistoryChangeType, LoadRecord, LoadStatus  # noqa: E402
from app.services.load_state import LoadStateStore  # noqa: E402


def _tenant(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:8]}"


def test_load_ids_are_sequential_per_organization():
    store = LoadStateStore()
    tenant = _tenant("seq")
    other = _tenant("seq")
    assert store.generate_load_id(tenant) == "LOAD01000"
    assert store.generate_load_id(tenant) == "LOAD01001"
    assert store.generate_load_id(other) == "LOAD01000"


def test_upsert_get_and_list_by_status():
    store = LoadStateStore()
    tenant = _tenant("list")
    store.upsert_load(tenant, LoadRecord(load_id="LOAD01000", status=LoadStatus.QUOTED))
    store.upsert_load(tenant, LoadRecord(load_id="LOAD01001", status=LoadStatus.DISPATCHED))
    store.upsert_load(tenant, LoadRecord(load_id="LOAD01002", status=LoadStatus.DISPATCHED, deleted=True))

    row = store.get_load(tenant, "LOAD01000")
    assert row["status"] == "quoted"
    assert row["rate_confirmation_status"] == "none"
    assert store.get_load(tenant, "LOAD09999") is None
    assert store.get_load(_tenant("list"), "LOAD01000") is None

    dispatched = store.list_loads(tenant, status=LoadStatus.DISPATCHED)
    assert [load["load_id"] for load in dispatched] == ["LOAD01001"]
    assert len(store.list_loads(tenant, include_deleted=True)) == 3


def test_guarded_update_bumps_version_and_rejects_stale_writes():
    store = LoadStateStore()
    tenant = _tenant("guard")
    store.upsert_load(tenant, LoadRecord(load_id="LOAD01000", status=LoadStatus.NEEDS_CARRIER))

    row = store.apply_load_update(
        tenant,
        "LOAD01000",
        {"status": "dispatched", "carrier_id": "CAR-1", "rate_to_carrier": 1500},
        expected_status=LoadStatus.NEEDS_CARRIER,
        expected_version=1,
    )
    assert row["status"] == "dispatched"
    assert row["version"] == 2

    with pytest.raises(ValueError, match="Status conflict"):
        store.apply_load_update(tenant, "LOAD01000", {"status": "in_transit"}, expected_status="needs_carrier")
    with pytest.raises(ValueError, match="Version conflict"):
        store.apply_load_update(tenant, "LOAD01000", {"status": "in_transit"}, expected_version=1)
    with pytest.raises(KeyError):
        store.apply_load_update(tenant, "LOAD09999", {"status": "in_transit"})

    assert store.get_load(tenant, "LOAD01000")["version"] == 2


def test_update_rejects_invalid_field_values():
    store = LoadStateStore()
    tenant = _tenant("invalid")
    store.upsert_load(tenant, LoadRecord(load_id="LOAD01000"))
    with pytest.raises(ValueError):
        store.apply_load_update(tenant, "LOAD01000", {"status": "teleported"})
    assert store.get_load(tenant, "LOAD01000")["status"] == "quoted"


def test_concurrent_guarded_updates_allow_a_single_winner():
    store = LoadStateStore()
    tenant = _tenant("race")
    store.upsert_load(tenant, LoadRecord(load_id="LOAD01000", status=LoadStatus.IN_TRANSIT))

    def _deliver(_: int) -> bool:
        try:
            store.apply_load_update(
                tenant,
                "LOAD01000",
                {"status": "delivered"},
                expected_status=LoadStatus.IN_TRANSIT,
            )
            return True
        except ValueError:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(_deliver, range(16)))

    assert outcomes.count(True) == 1
    final = store.get_load(tenant, "LOAD01000")
    assert final["status"] == "delivered"
    assert final["version"] == 2


def test_history_is_append_only_and_ordered():
    store = LoadStateStore()
    tenant = _tenant("hist")
    store.append_history(tenant, "LOAD01000", HistoryChangeType.LOAD_CREATED, status=LoadStatus.QUOTED)
    store.append_history(
        tenant,
        "LOAD01000",
        HistoryChangeType.STATUS_TRANSITION,
        status=LoadStatus.NEEDS_CARRIER,
        change_reason="Shipper confirmed",
        actor="dana",
        details={"from_status": "quoted"},
    )
    store.append_history(tenant, "LOAD01001", HistoryChangeType.LOAD_CREATED, status=LoadStatus.QUOTED)

    entries = store.list_history(tenant, "LOAD01000")
    assert [entry["history_id"] for entry in entries] == ["HIST-0000001", "HIST-0000002"]
    assert entries[1]["change_type"] == "status_transition"
    assert entries[1]["actor"] == "dana"
    assert entries[1]["details"] == {"from_status": "quoted"}
    assert len(store.list_history(tenant)) == 3


def test_review_preferences_round_trip():
    store = LoadStateStore()
    tenant = _tenant("prefs")
    assert store.get_review_preferences(tenant, "dana") is None

    store.set_review_preferences(tenant, "dana", {"always_review_qualified": True})
    stored = store.set_review_preferences(tenant, "dana", {"budget_threshold": 25000})
    fetched = store.get_review_preferences(tenant, "dana")
    assert fetched["overrides"] == {"budget_threshold": 25000}
    assert fetched["updated_at"] == stored["updated_at"]
    assert store.get_review_preferences(tenant, "sam") is None


def test_history_keeps_the_newest_entries_past_retention():
    store = LoadStateStore(history_retention=100)
    tenant = _tenant("retain")
    for _ in range(104):
        store.append_history(tenant, "LOAD01000", HistoryChangeType.STATUS_TRANSITION, status=LoadStatus.QUOTED)
    store.append_history(tenant, "LOAD01000", HistoryChangeType.STATUS_TRANSITION, status=LoadStatus.NEEDS_CARRIER)

    entries = store.list_history(tenant, "LOAD01000")
    assert len(entries) == 100
    assert entries[0]["history_id"] == "HIST-0000006"
    assert entries[-1]["history_id"] == "HIST-0000105"
    assert entries[-1]["status"] == "needs_carrier"
    assert len(store.list_history(tenant)) == 100


def test_update_and_history_commit_together():
    store = LoadStateStore()
    tenant = _tenant("atomic")
    store.upsert_load(tenant, LoadRecord(load_id="LOAD01000", status=LoadStatus.QUOTED))

    row = store.apply_load_update(
        tenant,
        "LOAD01000",
        {"status": "needs_carrier"},
        expected_status=LoadStatus.QUOTED,
        history={
            "change_type": HistoryChangeType.STATUS_TRANSITION,
            "status": LoadStatus.NEEDS_CARRIER,
            "actor": "dana",
            "details": {"from_status": "quoted", "to_status": "needs_carrier"},
        },
    )
    assert row["version"] == 2
    entries = store.list_history(tenant, "LOAD01000")
    assert [entry["status"] for entry in entries] == ["needs_carrier"]
    assert entries[0]["actor"] == "dana"


def test_failed_history_write_rolls_back_the_update():
    store = LoadStateStore()
    tenant = _tenant("rollback")
    store.upsert_load(tenant, LoadRecord(load_id="LOAD01000", status=LoadStatus.QUOTED))

    with pytest.raises(TypeError):
        store.apply_load_update(
            tenant,
            "LOAD01000",
            {"status": "needs_carrier"},
            expected_status=LoadStatus.QUOTED,
            history={
                "change_type": HistoryChangeType.STATUS_TRANSITION,
                "status": LoadStatus.NEEDS_CARRIER,
                "details": {"unserializable": object()},
            },
        )

    load = store.get_load(tenant, "LOAD01000")
    assert load["status"] == "quoted"
    assert load["version"] == 1
    assert store.list_history(tenant, "LOAD01000") == []

    store.append_history(tenant, "LOAD01000", HistoryChangeType.LOAD_CREATED, status=LoadStatus.QUOTED)
    assert [entry["history_id"] for entry in store.list_history(tenant)] == ["HIST-0000001"]


def test_failed_history_write_rolls_back_a_new_load():
    store = LoadStateStore()
    tenant = _tenant("rollback_new")

    with pytest.raises(TypeError):
        store.upsert_load(
            tenant,
            LoadRecord(load_id="LOAD01000"),
            history={"change_type": HistoryChangeType.LOAD_CREATED, "details": {"bad": object()}},
        )
    assert store.get_load(tenant, "LOAD01000") is None

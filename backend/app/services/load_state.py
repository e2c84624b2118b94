"""SQLite-backed state store for loads, status history, and review preferences."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterator, List, Optional

from app.core.config import get_settings
from app.core.logging import logger
from app.models.loads import HistoryChangeType, LoadRecord, LoadStatus


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _status_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


class LoadStateStore:
    """Durable state for the load lifecycle, keyed by organization."""

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | Path | None = None, history_retention: int | None = None) -> None:
        settings = get_settings()
        self._history_retention = max(100, int(history_retention or settings.history_retention))
        self._db_path = Path(db_path or settings.load_db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    organization_id TEXT NOT NULL,
                    key_name TEXT NOT NULL,
                    next_value INTEGER NOT NULL,
                    PRIMARY KEY (organization_id, key_name)
                );

                CREATE TABLE IF NOT EXISTS loads (
                    organization_id TEXT NOT NULL,
                    load_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    data_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (organization_id, load_id)
                );

                CREATE INDEX IF NOT EXISTS idx_loads_org_status ON loads (organization_id, status);

                CREATE TABLE IF NOT EXISTS load_status_history (
                    organization_id TEXT NOT NULL,
                    history_id TEXT NOT NULL,
                    load_id TEXT NOT NULL,
                    status TEXT,
                    change_type TEXT NOT NULL,
                    change_reason TEXT,
                    actor TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    details_json TEXT NOT NULL,
                    PRIMARY KEY (organization_id, history_id)
                );

                CREATE INDEX IF NOT EXISTS idx_history_org_load
                    ON load_status_history (organization_id, load_id, created_at);

                CREATE TABLE IF NOT EXISTS review_preferences (
                    organization_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (organization_id, user_id)
                );
                """
            )
            self._conn.commit()

    @staticmethod
    def _default_sequence_start(key: str) -> int:
        if key == "load":
            return 1000
        return 1

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Hold the store lock; commit on success, roll back everything on error."""
        with self._lock:
            try:
                yield
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()

    def _take_sequence(self, organization_id: str, key: str) -> int:
        row = self._conn.execute(
            "SELECT next_value FROM sequences WHERE organization_id = ? AND key_name = ?",
            (organization_id, key),
        ).fetchone()
        if row is None:
            current = self._default_sequence_start(key)
            self._conn.execute(
                "INSERT INTO sequences (organization_id, key_name, next_value) VALUES (?, ?, ?)",
                (organization_id, key, current + 1),
            )
        else:
            current = int(row["next_value"])
            self._conn.execute(
                "UPDATE sequences SET next_value = ? WHERE organization_id = ? AND key_name = ?",
                (current + 1, organization_id, key),
            )
        return current

    def next_sequence(self, organization_id: str, key: str) -> int:
        with self._transaction():
            return self._take_sequence(organization_id, key)

    def generate_load_id(self, organization_id: str) -> str:
        return f"LOAD{self.next_sequence(organization_id, 'load'):05d}"

    # ==================== LOADS ====================

    def upsert_load(
        self,
        organization_id: str,
        load: LoadRecord,
        history: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Insert or replace a load; ``history`` (append_history kwargs) lands in the same commit."""
        row = load.model_dump(mode="json")
        row["updated_at"] = _utc_now_iso()
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO loads (organization_id, load_id, status, version, data_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(organization_id, load_id)
                DO UPDATE SET
                    status = excluded.status,
                    version = excluded.version,
                    data_json = excluded.data_json,
                    updated_at = excluded.updated_at
                """,
                (organization_id, load.load_id, row["status"], row["version"], _json_dumps(row), row["updated_at"]),
            )
            if history is not None:
                self._insert_history(organization_id, load.load_id, **history)
        return row

    def get_load(self, organization_id: str, load_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM loads WHERE organization_id = ? AND load_id = ?",
                (organization_id, load_id),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def list_loads(
        self,
        organization_id: str,
        status: Optional[LoadStatus] = None,
        include_deleted: bool = False,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            if status is not None:
                rows = self._conn.execute(
                    """
                    SELECT data_json FROM loads
                    WHERE organization_id = ? AND status = ?
                    ORDER BY updated_at DESC
                    """,
                    (organization_id, _status_value(status)),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT data_json FROM loads WHERE organization_id = ? ORDER BY updated_at DESC",
                    (organization_id,),
                ).fetchall()
        loads = [json.loads(row["data_json"]) for row in rows]
        if not include_deleted:
            loads = [row for row in loads if not row.get("deleted")]
        return loads

    def apply_load_update(
        self,
        organization_id: str,
        load_id: str,
        fields: Dict[str, Any],
        expected_status: Any = None,
        expected_version: Optional[int] = None,
        history: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Merge ``fields`` into a load as one guarded UPDATE.

        The write only lands if the row still has ``expected_status`` /
        ``expected_version`` (when given); otherwise ValueError is raised and
        nothing changes. ``updated_at`` and ``version`` are always bumped.
        ``history`` takes the keyword arguments of ``append_history`` and is
        inserted in the same transaction, so the load never changes without
        its audit row.
        """
        with self._transaction():
            row = self._conn.execute(
                "SELECT status, version, data_json FROM loads WHERE organization_id = ? AND load_id = ?",
                (organization_id, load_id),
            ).fetchone()
            if row is None:
                raise KeyError(load_id)

            current_version = int(row["version"])
            if expected_version is not None and int(expected_version) != current_version:
                raise ValueError(
                    f"Version conflict for {load_id}. expected={expected_version} current={current_version}"
                )
            expected = _status_value(expected_status)
            if expected is not None and row["status"] != expected:
                raise ValueError(
                    f"Status conflict for {load_id}. expected={expected} current={row['status']}"
                )

            merged = json.loads(row["data_json"])
            merged.update(fields)
            merged["version"] = current_version + 1
            merged["updated_at"] = _utc_now_iso()
            record = LoadRecord(**merged).model_dump(mode="json")

            cursor = self._conn.execute(
                """
                UPDATE loads
                SET status = ?, version = ?, data_json = ?, updated_at = ?
                WHERE organization_id = ? AND load_id = ? AND status = ? AND version = ?
                """,
                (
                    record["status"],
                    record["version"],
                    _json_dumps(record),
                    record["updated_at"],
                    organization_id,
                    load_id,
                    row["status"],
                    current_version,
                ),
            )
            if cursor.rowcount != 1:
                raise ValueError(f"Concurrent update detected for {load_id}")
            if history is not None:
                self._insert_history(organization_id, load_id, **history)
        return record

    # ==================== HISTORY ====================

    def _insert_history(
        self,
        organization_id: str,
        load_id: str,
        change_type: HistoryChangeType,
        status: Any = None,
        change_reason: Optional[str] = None,
        actor: str = "system",
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry = {
            "history_id": f"HIST-{self._take_sequence(organization_id, 'history'):07d}",
            "load_id": load_id,
            "status": _status_value(status),
            "change_type": _status_value(change_type),
            "change_reason": change_reason,
            "actor": actor,
            "created_at": _utc_now_iso(),
            "details": details or {},
        }
        self._conn.execute(
            """
            INSERT INTO load_status_history
                (organization_id, history_id, load_id, status, change_type, change_reason, actor, created_at, details_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                organization_id,
                entry["history_id"],
                load_id,
                entry["status"],
                entry["change_type"],
                change_reason,
                actor,
                entry["created_at"],
                _json_dumps(entry["details"]),
            ),
        )
        return entry

    def append_history(
        self,
        organization_id: str,
        load_id: str,
        change_type: HistoryChangeType,
        status: Any = None,
        change_reason: Optional[str] = None,
        actor: str = "system",
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        with self._transaction():
            return self._insert_history(
                organization_id,
                load_id,
                change_type,
                status=status,
                change_reason=change_reason,
                actor=actor,
                details=details,
            )

    def list_history(self, organization_id: str, load_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """The newest entries up to the configured retention, returned oldest first."""
        with self._lock:
            if load_id:
                rows = self._conn.execute(
                    """
                    SELECT history_id, load_id, status, change_type, change_reason, actor, created_at, details_json
                    FROM load_status_history
                    WHERE organization_id = ? AND load_id = ?
                    ORDER BY created_at DESC, history_id DESC
                    LIMIT ?
                    """,
                    (organization_id, load_id, self._history_retention),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    """
                    SELECT history_id, load_id, status, change_type, change_reason, actor, created_at, details_json
                    FROM load_status_history
                    WHERE organization_id = ?
                    ORDER BY created_at DESC, history_id DESC
                    LIMIT ?
                    """,
                    (organization_id, self._history_retention),
                ).fetchall()

        return [
            {
                "history_id": row["history_id"],
                "load_id": row["load_id"],
                "status": row["status"],
                "change_type": row["change_type"],
                "change_reason": row["change_reason"],
                "actor": row["actor"],
                "created_at": row["created_at"],
                "details": json.loads(row["details_json"]),
            }
            for row in reversed(rows)
        ]

    # ==================== REVIEW PREFERENCES ====================

    def get_review_preferences(self, organization_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json, updated_at FROM review_preferences WHERE organization_id = ? AND user_id = ?",
                (organization_id, user_id),
            ).fetchone()
        if not row:
            return None
        return {"overrides": json.loads(row["data_json"]), "updated_at": row["updated_at"]}

    def set_review_preferences(self, organization_id: str, user_id: str, overrides: Dict[str, Any]) -> Dict[str, Any]:
        updated_at = _utc_now_iso()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO review_preferences (organization_id, user_id, updated_at, data_json)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(organization_id, user_id)
                DO UPDATE SET updated_at = excluded.updated_at, data_json = excluded.data_json
                """,
                (organization_id, user_id, updated_at, _json_dumps(overrides)),
            )
            self._conn.commit()
        logger.info(
            "Review preferences updated",
            organization_id=organization_id,
            user_id=user_id,
            fields=sorted(overrides.keys()),
        )
        return {"overrides": overrides, "updated_at": updated_at}


load_state_store = LoadStateStore()

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from calhook.models import WatchedResource


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_resource(row: sqlite3.Row) -> WatchedResource:
    expiration = row["expiration"]
    return WatchedResource(
        resource_id=str(row["resource_id"]),
        channel_id=row["channel_id"],
        channel_resource_id=row["channel_resource_id"],
        expiration=int(expiration) if expiration is not None else None,
        sync_token=row["sync_token"],
        version=int(row["version"]),
    )


class StateStore:
    """SQLite-backed persistence for watch channels, sync cursors and emitted events.

    Every ``watched_resources`` row carries a ``version`` counter. Channel
    fields are always written in a single statement so a crash never leaves a
    half-registered watch behind, and sync-token writes are compare-and-swap
    on that counter.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            emitted INTEGER NOT NULL,
            skipped INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            resource_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS watched_resources (
            resource_id TEXT PRIMARY KEY,
            channel_id TEXT,
            channel_resource_id TEXT,
            expiration INTEGER,
            sync_token TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS emitted_events (
            dedupe_id TEXT PRIMARY KEY,
            resource_id TEXT NOT NULL,
            summary TEXT,
            ts INTEGER NOT NULL,
            payload_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # -- sync runs -----------------------------------------------------------

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, emitted, skipped)
                    VALUES (?, ?, 'running', ?, 0, 0, 0)
                    """,
                    (_utc_now(), trigger, message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        emitted: int,
        skipped: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, emitted = ?, skipped = ?
                    WHERE id = ?
                    """,
                    (str(status), str(message), int(duration_ms), int(emitted), int(skipped), int(run_id)),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, emitted, skipped
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    # -- audit ---------------------------------------------------------------

    def record_audit_event(
        self,
        *,
        resource_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, resource_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), resource_id, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, action: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if action is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, resource_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, resource_id, action, details_json
                        FROM audit_events
                        WHERE action = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(action), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    # -- watched resources ---------------------------------------------------

    def get_resource(self, resource_id: str) -> WatchedResource | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT resource_id, channel_id, channel_resource_id, expiration, sync_token, version
                    FROM watched_resources
                    WHERE resource_id = ?
                    """,
                    (str(resource_id),),
                ).fetchone()
        return _row_to_resource(row) if row else None

    def list_resources(self) -> list[WatchedResource]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT resource_id, channel_id, channel_resource_id, expiration, sync_token, version
                    FROM watched_resources
                    ORDER BY resource_id
                    """
                ).fetchall()
        return [_row_to_resource(row) for row in rows]

    def save_watch(
        self,
        *,
        resource_id: str,
        channel_id: str,
        channel_resource_id: str,
        expiration: int | None,
        sync_token: str | None,
    ) -> WatchedResource:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO watched_resources(
                        resource_id, channel_id, channel_resource_id, expiration, sync_token, version, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, 1, ?)
                    ON CONFLICT(resource_id) DO UPDATE SET
                        channel_id = excluded.channel_id,
                        channel_resource_id = excluded.channel_resource_id,
                        expiration = excluded.expiration,
                        sync_token = excluded.sync_token,
                        version = watched_resources.version + 1,
                        updated_at = excluded.updated_at
                    """,
                    (resource_id, channel_id, channel_resource_id, expiration, sync_token, _utc_now()),
                )
                row = conn.execute(
                    """
                    SELECT resource_id, channel_id, channel_resource_id, expiration, sync_token, version
                    FROM watched_resources
                    WHERE resource_id = ?
                    """,
                    (resource_id,),
                ).fetchone()
                conn.commit()
        return _row_to_resource(row)

    def update_sync_token(self, resource_id: str, sync_token: str | None, *, expected_version: int) -> bool:
        """Replace the sync token if the record is still at ``expected_version``."""
        with self._lock:
            with self._connect() as conn:
                if expected_version == 0:
                    cursor = conn.execute(
                        """
                        INSERT INTO watched_resources(resource_id, sync_token, version, updated_at)
                        VALUES (?, ?, 1, ?)
                        ON CONFLICT(resource_id) DO NOTHING
                        """,
                        (resource_id, sync_token, _utc_now()),
                    )
                else:
                    cursor = conn.execute(
                        """
                        UPDATE watched_resources
                        SET sync_token = ?, version = version + 1, updated_at = ?
                        WHERE resource_id = ? AND version = ?
                        """,
                        (sync_token, _utc_now(), resource_id, int(expected_version)),
                    )
                conn.commit()
                return cursor.rowcount == 1

    def clear_resource(self, resource_id: str, *, channel_id: str | None = None) -> bool:
        """Null out channel and sync fields, optionally only while ``channel_id`` is still current."""
        with self._lock:
            with self._connect() as conn:
                if channel_id is None:
                    cursor = conn.execute(
                        """
                        UPDATE watched_resources
                        SET channel_id = NULL, channel_resource_id = NULL, expiration = NULL,
                            sync_token = NULL, version = version + 1, updated_at = ?
                        WHERE resource_id = ?
                        """,
                        (_utc_now(), resource_id),
                    )
                else:
                    cursor = conn.execute(
                        """
                        UPDATE watched_resources
                        SET channel_id = NULL, channel_resource_id = NULL, expiration = NULL,
                            sync_token = NULL, version = version + 1, updated_at = ?
                        WHERE resource_id = ? AND channel_id = ?
                        """,
                        (_utc_now(), resource_id, channel_id),
                    )
                conn.commit()
                return cursor.rowcount == 1

    # -- emitted events ------------------------------------------------------

    def insert_emitted_event(
        self,
        *,
        dedupe_id: str,
        resource_id: str,
        summary: str,
        ts: int,
        payload: dict[str, Any],
    ) -> bool:
        """Store an emitted event; returns False when ``dedupe_id`` was already seen."""
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO emitted_events(dedupe_id, resource_id, summary, ts, payload_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(dedupe_id) DO NOTHING
                    """,
                    (
                        dedupe_id,
                        resource_id,
                        summary,
                        int(ts),
                        json.dumps(payload, ensure_ascii=False),
                        _utc_now(),
                    ),
                )
                conn.commit()
                return cursor.rowcount == 1

    def recent_emitted_events(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT dedupe_id, resource_id, summary, ts, payload_json, created_at
                    FROM emitted_events
                    ORDER BY created_at DESC, ts DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["payload"] = json.loads(item.pop("payload_json") or "{}")
            output.append(item)
        return output

    # -- key/value -----------------------------------------------------------

    def set(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from davsync.errors import StoreApplyError
from davsync.models import (
    CalendarRef,
    CalendarSyncState,
    CanonicalEvent,
    ChangeEntry,
    EncryptedSecret,
    ProviderConnection,
    RemoteCalendar,
    SyncCursor,
    parse_iso_datetime,
    serialize_datetime,
)
from davsync.reconciler import href_key


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """SQLite-backed provider, cursor and event store.

    Every public method opens its own connection; `sync_events` applies a whole
    change-set inside one transaction.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS providers (
            id TEXT PRIMARY KEY,
            provider_type TEXT NOT NULL,
            username TEXT NOT NULL,
            server_url TEXT NOT NULL,
            credential_ciphertext TEXT NOT NULL,
            credential_iv TEXT NOT NULL,
            credential_tag TEXT NOT NULL,
            needs_reauth INTEGER NOT NULL DEFAULT 0,
            last_sync_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS calendars (
            provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
            calendar_id TEXT NOT NULL,
            display_name TEXT NOT NULL,
            color TEXT,
            sync_enabled INTEGER NOT NULL DEFAULT 1,
            is_primary INTEGER NOT NULL DEFAULT 0,
            ctag TEXT,
            sync_token TEXT,
            sync_state TEXT NOT NULL DEFAULT 'unsynced',
            last_error TEXT,
            position INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (provider_id, calendar_id)
        );

        CREATE TABLE IF NOT EXISTS events (
            provider_id TEXT NOT NULL REFERENCES providers(id) ON DELETE CASCADE,
            calendar_id TEXT NOT NULL,
            provider_event_id TEXT NOT NULL,
            series_id TEXT NOT NULL,
            remote_url TEXT NOT NULL DEFAULT '',
            etag TEXT,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (provider_id, calendar_id, provider_event_id)
        );

        CREATE INDEX IF NOT EXISTS idx_events_series
            ON events(provider_id, calendar_id, series_id);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            provider_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            mode TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            changes_applied INTEGER NOT NULL,
            parse_skips INTEGER NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Providers

    def save_provider(
        self,
        *,
        provider_type: str,
        username: str,
        server_url: str,
        credential: EncryptedSecret,
    ) -> ProviderConnection:
        """Create a connection, or refresh the credential of the matching one."""
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id FROM providers
                    WHERE provider_type = ? AND username = ? AND server_url = ?
                    """,
                    (provider_type, username, server_url),
                ).fetchone()
                if row is None:
                    provider_id = uuid.uuid4().hex
                    conn.execute(
                        """
                        INSERT INTO providers(
                            id, provider_type, username, server_url,
                            credential_ciphertext, credential_iv, credential_tag,
                            needs_reauth, created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                        """,
                        (
                            provider_id,
                            provider_type,
                            username,
                            server_url,
                            credential.ciphertext,
                            credential.iv,
                            credential.tag,
                            now,
                            now,
                        ),
                    )
                else:
                    provider_id = str(row["id"])
                    conn.execute(
                        """
                        UPDATE providers
                        SET credential_ciphertext = ?, credential_iv = ?, credential_tag = ?,
                            needs_reauth = 0, updated_at = ?
                        WHERE id = ?
                        """,
                        (credential.ciphertext, credential.iv, credential.tag, now, provider_id),
                    )
                conn.commit()
        provider = self.get_provider(provider_id)
        assert provider is not None
        return provider

    def _provider_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> ProviderConnection:
        calendar_rows = conn.execute(
            """
            SELECT calendar_id, display_name, color, sync_enabled, is_primary,
                   ctag, sync_token, sync_state, last_error
            FROM calendars
            WHERE provider_id = ?
            ORDER BY position, calendar_id
            """,
            (row["id"],),
        ).fetchall()
        return ProviderConnection(
            provider_id=str(row["id"]),
            provider_type=str(row["provider_type"]),
            username=str(row["username"]),
            server_url=str(row["server_url"]),
            credential=EncryptedSecret(
                ciphertext=str(row["credential_ciphertext"]),
                iv=str(row["credential_iv"]),
                tag=str(row["credential_tag"]),
            ),
            calendars=[
                CalendarRef(
                    calendar_id=str(cal["calendar_id"]),
                    display_name=str(cal["display_name"]),
                    color=cal["color"],
                    sync_enabled=bool(cal["sync_enabled"]),
                    is_primary=bool(cal["is_primary"]),
                    ctag=cal["ctag"],
                    sync_token=cal["sync_token"],
                    sync_state=CalendarSyncState(cal["sync_state"]),
                    last_error=cal["last_error"],
                )
                for cal in calendar_rows
            ],
            needs_reauth=bool(row["needs_reauth"]),
            last_sync_at=parse_iso_datetime(row["last_sync_at"]),
        )

    def get_provider(self, provider_id: str) -> ProviderConnection | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
                if row is None:
                    return None
                return self._provider_from_row(conn, row)

    def list_providers(self) -> list[ProviderConnection]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT * FROM providers ORDER BY created_at, id").fetchall()
                return [self._provider_from_row(conn, row) for row in rows]

    def delete_provider(self, provider_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM providers WHERE id = ?", (provider_id,))
                conn.commit()
                return cursor.rowcount > 0

    def set_needs_reauth(self, provider_id: str, needs_reauth: bool) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE providers SET needs_reauth = ?, updated_at = ? WHERE id = ?",
                    (int(needs_reauth), _utc_now(), provider_id),
                )
                conn.commit()

    def update_last_sync(self, provider_id: str, timestamp: datetime) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE providers SET last_sync_at = ?, updated_at = ? WHERE id = ?",
                    (serialize_datetime(timestamp), _utc_now(), provider_id),
                )
                conn.commit()

    # Calendars and cursors

    def merge_calendars(
        self,
        provider_id: str,
        discovered: Iterable[RemoteCalendar],
        *,
        enable_new: bool = True,
    ) -> list[CalendarRef]:
        """Record newly discovered calendars and refresh names/colours.

        Cursors are left alone; only `update_cursor` moves them.
        """
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                for position, remote in enumerate(discovered):
                    conn.execute(
                        """
                        INSERT INTO calendars(
                            provider_id, calendar_id, display_name, color,
                            sync_enabled, position, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(provider_id, calendar_id) DO UPDATE SET
                            display_name = excluded.display_name,
                            color = COALESCE(excluded.color, calendars.color),
                            position = excluded.position,
                            updated_at = excluded.updated_at
                        """,
                        (
                            provider_id,
                            remote.calendar_id,
                            remote.display_name or remote.calendar_id,
                            remote.color,
                            int(enable_new),
                            position,
                            now,
                        ),
                    )
                has_primary = conn.execute(
                    "SELECT 1 FROM calendars WHERE provider_id = ? AND is_primary = 1",
                    (provider_id,),
                ).fetchone()
                if has_primary is None:
                    conn.execute(
                        """
                        UPDATE calendars SET is_primary = 1
                        WHERE provider_id = ? AND calendar_id = (
                            SELECT calendar_id FROM calendars
                            WHERE provider_id = ?
                            ORDER BY position, calendar_id
                            LIMIT 1
                        )
                        """,
                        (provider_id, provider_id),
                    )
                conn.commit()
        provider = self.get_provider(provider_id)
        return provider.calendars if provider else []

    def update_calendar_settings(
        self,
        provider_id: str,
        calendar_id: str,
        *,
        sync_enabled: bool | None = None,
        is_primary: bool | None = None,
    ) -> bool:
        with self._lock:
            with self._connect() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM calendars WHERE provider_id = ? AND calendar_id = ?",
                    (provider_id, calendar_id),
                ).fetchone()
                if exists is None:
                    return False
                if sync_enabled is not None:
                    conn.execute(
                        """
                        UPDATE calendars SET sync_enabled = ?, updated_at = ?
                        WHERE provider_id = ? AND calendar_id = ?
                        """,
                        (int(sync_enabled), _utc_now(), provider_id, calendar_id),
                    )
                if is_primary:
                    conn.execute(
                        "UPDATE calendars SET is_primary = (calendar_id = ?) WHERE provider_id = ?",
                        (calendar_id, provider_id),
                    )
                elif is_primary is not None:
                    conn.execute(
                        "UPDATE calendars SET is_primary = 0 WHERE provider_id = ? AND calendar_id = ?",
                        (provider_id, calendar_id),
                    )
                conn.commit()
                return True

    def get_cursor(self, provider_id: str, calendar_id: str) -> SyncCursor | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT calendar_id, ctag, sync_token FROM calendars
                    WHERE provider_id = ? AND calendar_id = ?
                    """,
                    (provider_id, calendar_id),
                ).fetchone()
        if row is None:
            return None
        return SyncCursor(calendar_id=str(row["calendar_id"]), ctag=row["ctag"], sync_token=row["sync_token"])

    def update_cursor(
        self, provider_id: str, calendar_id: str, ctag: str | None, sync_token: str | None
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE calendars SET ctag = ?, sync_token = ?, updated_at = ?
                    WHERE provider_id = ? AND calendar_id = ?
                    """,
                    (ctag, sync_token, _utc_now(), provider_id, calendar_id),
                )
                conn.commit()

    def set_calendar_state(
        self,
        provider_id: str,
        calendar_id: str,
        state: CalendarSyncState,
        last_error: str | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE calendars SET sync_state = ?, last_error = ?, updated_at = ?
                    WHERE provider_id = ? AND calendar_id = ?
                    """,
                    (state.value, last_error, _utc_now(), provider_id, calendar_id),
                )
                conn.commit()

    # Events

    def sync_events(self, provider_id: str, changes: list[ChangeEntry], cursor: SyncCursor) -> int:
        """Apply a change-set for `cursor.calendar_id` atomically.

        Upserts are keyed on the provider event id and only touch rows whose
        payload differs, so re-applying a change-set leaves the store as is.
        """
        calendar_id = cursor.calendar_id
        now = _utc_now()
        # A master and its overrides arrive together from one resource, so
        # any stored override missing from the batch was dropped upstream.
        series_members: dict[str, set[str]] = {}
        upserted_masters: set[str] = set()
        for entry in changes:
            if entry.action != "upsert" or entry.event is None:
                continue
            series_id = entry.event.series_id or entry.provider_event_id
            series_members.setdefault(series_id, set()).add(entry.provider_event_id)
            if entry.event.recurrence_id is None:
                upserted_masters.add(series_id)
        try:
            with self._lock:
                with self._connect() as conn:
                    for entry in changes:
                        if entry.action == "upsert":
                            if entry.event is None:
                                raise StoreApplyError(f"upsert without event data: {entry.provider_event_id}")
                            event = entry.event
                            conn.execute(
                                """
                                INSERT INTO events(
                                    provider_id, calendar_id, provider_event_id, series_id,
                                    remote_url, etag, payload_json, updated_at
                                )
                                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                                ON CONFLICT(provider_id, calendar_id, provider_event_id) DO UPDATE SET
                                    series_id = excluded.series_id,
                                    remote_url = excluded.remote_url,
                                    etag = excluded.etag,
                                    payload_json = excluded.payload_json,
                                    updated_at = excluded.updated_at
                                WHERE events.payload_json != excluded.payload_json
                                """,
                                (
                                    provider_id,
                                    calendar_id,
                                    entry.provider_event_id,
                                    event.series_id or entry.provider_event_id,
                                    event.metadata.remote_url,
                                    event.etag,
                                    json.dumps(event.to_dict(), ensure_ascii=False, sort_keys=True),
                                    now,
                                ),
                            )
                        elif entry.action == "delete":
                            conn.execute(
                                """
                                DELETE FROM events
                                WHERE provider_id = ? AND calendar_id = ?
                                  AND (provider_event_id = ? OR series_id = ?)
                                """,
                                (provider_id, calendar_id, entry.provider_event_id, entry.provider_event_id),
                            )
                        else:
                            raise StoreApplyError(f"unknown change action: {entry.action}")
                    for series_id in sorted(upserted_masters):
                        kept = sorted(series_members[series_id])
                        placeholders = ", ".join("?" for _ in kept)
                        conn.execute(
                            f"""
                            DELETE FROM events
                            WHERE provider_id = ? AND calendar_id = ? AND series_id = ?
                              AND provider_event_id NOT IN ({placeholders})
                            """,
                            (provider_id, calendar_id, series_id, *kept),
                        )
                    conn.commit()
        except sqlite3.Error as exc:
            raise StoreApplyError(f"failed to apply {len(changes)} changes to {calendar_id}: {exc}") from exc
        return len(changes)

    def _event_rows(self, sql: str, params: tuple[Any, ...]) -> list[CanonicalEvent]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        return [CanonicalEvent.from_dict(json.loads(row["payload_json"])) for row in rows]

    def list_events(self, provider_id: str, calendar_id: str | None = None) -> list[CanonicalEvent]:
        if calendar_id is None:
            return self._event_rows(
                """
                SELECT payload_json FROM events
                WHERE provider_id = ?
                ORDER BY calendar_id, provider_event_id
                """,
                (provider_id,),
            )
        return self._event_rows(
            """
            SELECT payload_json FROM events
            WHERE provider_id = ? AND calendar_id = ?
            ORDER BY provider_event_id
            """,
            (provider_id, calendar_id),
        )

    def get_event(
        self, provider_id: str, provider_event_id: str, calendar_id: str | None = None
    ) -> CanonicalEvent | None:
        if calendar_id is None:
            events = self._event_rows(
                "SELECT payload_json FROM events WHERE provider_id = ? AND provider_event_id = ? LIMIT 1",
                (provider_id, provider_event_id),
            )
        else:
            events = self._event_rows(
                """
                SELECT payload_json FROM events
                WHERE provider_id = ? AND calendar_id = ? AND provider_event_id = ?
                """,
                (provider_id, calendar_id, provider_event_id),
            )
        return events[0] if events else None

    def event_ids_by_href(self, provider_id: str, calendar_id: str) -> dict[str, str]:
        """Map stored remote URLs (path only) to master event ids."""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT remote_url, series_id FROM events
                    WHERE provider_id = ? AND calendar_id = ? AND remote_url != ''
                    """,
                    (provider_id, calendar_id),
                ).fetchall()
        return {href_key(row["remote_url"]): str(row["series_id"]) for row in rows}

    # Sync runs

    def start_sync_run(self, *, provider_id: str, mode: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(provider_id, run_at, mode, status, message, duration_ms, changes_applied, parse_skips)
                    VALUES (?, ?, ?, 'running', 'running', 0, 0, 0)
                    """,
                    (provider_id, _utc_now(), mode),
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
        changes_applied: int,
        parse_skips: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, changes_applied = ?, parse_skips = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(changes_applied),
                        int(parse_skips),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20, provider_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if provider_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, provider_id, run_at, mode, status, message, duration_ms, changes_applied, parse_skips
                        FROM sync_runs
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, provider_id, run_at, mode, status, message, duration_ms, changes_applied, parse_skips
                        FROM sync_runs
                        WHERE provider_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (provider_id, max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]

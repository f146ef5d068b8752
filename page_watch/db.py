from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from page_watch.models import (
    CheckLogEntry,
    CheckResult,
    Monitor,
    NotificationChannel,
    NotificationRecord,
    SmsUsage,
    STATUS_PENDING,
)
from page_watch.store import StoreError


SCHEMA_VERSION = 2

T = TypeVar("T")


def _uuid() -> str:
    return str(uuid.uuid4())


def _ts(value: datetime) -> float:
    return float(value.timestamp())


def _dt(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def _json_loads(s: Any) -> Any:
    if s is None:
        return None
    if isinstance(s, (dict, list)):
        return s
    try:
        return json.loads(str(s))
    except ValueError:
        return None


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # WAL lets concurrent readers proceed while a check writes.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.Error:
        pass
    return conn


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        _apply_v2(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    if cur == 1:
        _apply_v2(conn)
        conn.execute("UPDATE schema_meta SET v=? WHERE k='version'", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monitors (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL,
          name TEXT NOT NULL,
          url TEXT NOT NULL,
          pattern TEXT NOT NULL,
          pattern_type TEXT NOT NULL DEFAULT 'contains',
          check_interval INTEGER NOT NULL DEFAULT 300,
          is_active INTEGER NOT NULL DEFAULT 1,
          last_checked_ts REAL,
          last_status TEXT NOT NULL DEFAULT 'pending',
          notification_channels_json TEXT NOT NULL DEFAULT '[]',
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_monitors_user_id ON monitors(user_id);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monitor_logs (
          id TEXT PRIMARY KEY,
          monitor_id TEXT NOT NULL REFERENCES monitors(id) ON DELETE CASCADE,
          status TEXT NOT NULL,
          response_time_ms INTEGER,
          error_message TEXT,
          content_snippet TEXT,
          checked_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_monitor_logs_monitor_id ON monitor_logs(monitor_id, checked_at_ts);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS notifications (
          id TEXT PRIMARY KEY,
          monitor_id TEXT NOT NULL,
          user_id TEXT NOT NULL,
          type TEXT NOT NULL,
          channel TEXT NOT NULL,
          message TEXT NOT NULL,
          status TEXT NOT NULL DEFAULT 'sent',
          sent_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user_id ON notifications(user_id, sent_at_ts);")


def _apply_v2(conn: sqlite3.Connection) -> None:
    # SMS delivery tracking + per-user usage counters.
    for column, ddl in (
        ("error_message", "ALTER TABLE notifications ADD COLUMN error_message TEXT;"),
        ("message_id", "ALTER TABLE notifications ADD COLUMN message_id TEXT;"),
        ("updated_at_ts", "ALTER TABLE notifications ADD COLUMN updated_at_ts REAL;"),
    ):
        if not _column_exists(conn, "notifications", column):
            conn.execute(ddl)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_notifications_message_id ON notifications(message_id) "
        "WHERE message_id IS NOT NULL;"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sms_usage (
          user_id TEXT PRIMARY KEY,
          hourly_count INTEGER NOT NULL DEFAULT 0 CHECK (hourly_count >= 0),
          daily_count INTEGER NOT NULL DEFAULT 0 CHECK (daily_count >= 0),
          monthly_count INTEGER NOT NULL DEFAULT 0 CHECK (monthly_count >= 0),
          monthly_cost_usd REAL NOT NULL DEFAULT 0 CHECK (monthly_cost_usd >= 0),
          last_reset_hour_ts REAL NOT NULL,
          last_reset_day_ts REAL NOT NULL,
          last_reset_month_ts REAL NOT NULL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    return any(str(r["name"]) == str(column) for r in rows)


def _row_to_monitor(row: sqlite3.Row) -> Monitor:
    channels: list[NotificationChannel] = []
    for item in _json_loads(row["notification_channels_json"]) or []:
        if isinstance(item, dict) and item.get("type") and item.get("address"):
            channels.append(NotificationChannel(type=str(item["type"]), address=str(item["address"])))
    return Monitor(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        name=str(row["name"]),
        url=str(row["url"]),
        pattern=str(row["pattern"]),
        pattern_type=str(row["pattern_type"]),
        check_interval=int(row["check_interval"]),
        is_active=bool(row["is_active"]),
        last_status=str(row["last_status"] or STATUS_PENDING),
        last_checked=_dt(row["last_checked_ts"]),
        notification_channels=tuple(channels),
    )


def _row_to_usage(row: sqlite3.Row) -> SmsUsage:
    return SmsUsage(
        user_id=str(row["user_id"]),
        hourly_count=int(row["hourly_count"] or 0),
        daily_count=int(row["daily_count"] or 0),
        monthly_count=int(row["monthly_count"] or 0),
        monthly_cost_usd=float(row["monthly_cost_usd"] or 0.0),
        last_reset_hour=_dt(row["last_reset_hour_ts"]),
        last_reset_day=_dt(row["last_reset_day_ts"]),
        last_reset_month=_dt(row["last_reset_month_ts"]),
    )


def _row_to_notification(row: sqlite3.Row) -> NotificationRecord:
    return NotificationRecord(
        id=str(row["id"]),
        monitor_id=str(row["monitor_id"]),
        user_id=str(row["user_id"]),
        type=str(row["type"]),
        channel=str(row["channel"]),
        message=str(row["message"]),
        status=str(row["status"]),
        error_message=row["error_message"],
        message_id=row["message_id"],
        created_at=_dt(row["sent_at_ts"]),
    )


# Single statement: rollover and increment happen atomically for concurrent senders.
_INCREMENT_USAGE_SQL = """
INSERT INTO sms_usage (
  user_id, hourly_count, daily_count, monthly_count, monthly_cost_usd,
  last_reset_hour_ts, last_reset_day_ts, last_reset_month_ts, created_at_ts, updated_at_ts
) VALUES (?, 1, 1, 1, ?, ?, ?, ?, ?, ?)
ON CONFLICT(user_id) DO UPDATE SET
  hourly_count = CASE WHEN sms_usage.last_reset_hour_ts < excluded.last_reset_hour_ts
                      THEN 1 ELSE sms_usage.hourly_count + 1 END,
  daily_count = CASE WHEN sms_usage.last_reset_day_ts < excluded.last_reset_day_ts
                     THEN 1 ELSE sms_usage.daily_count + 1 END,
  monthly_count = CASE WHEN sms_usage.last_reset_month_ts < excluded.last_reset_month_ts
                       THEN 1 ELSE sms_usage.monthly_count + 1 END,
  monthly_cost_usd = CASE WHEN sms_usage.last_reset_month_ts < excluded.last_reset_month_ts
                          THEN excluded.monthly_cost_usd
                          ELSE sms_usage.monthly_cost_usd + excluded.monthly_cost_usd END,
  last_reset_hour_ts = MAX(sms_usage.last_reset_hour_ts, excluded.last_reset_hour_ts),
  last_reset_day_ts = MAX(sms_usage.last_reset_day_ts, excluded.last_reset_day_ts),
  last_reset_month_ts = MAX(sms_usage.last_reset_month_ts, excluded.last_reset_month_ts),
  updated_at_ts = excluded.updated_at_ts
"""


class SqliteStore:
    """WatchStore backed by a single SQLite file."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        try:
            conn = _connect(self.db_path)
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"database unavailable: {exc}") from exc
        try:
            _ensure_schema_conn(conn)
            return fn(conn)
        except sqlite3.Error as exc:
            raise StoreError(f"database error: {exc}") from exc
        finally:
            conn.close()

    async def _call(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        return await asyncio.to_thread(self._run, fn)

    def ensure_schema(self) -> None:
        self._run(lambda conn: None)

    # --- monitors ---

    async def create_monitor(self, monitor: Monitor) -> Monitor:
        monitor_id = str(monitor.id or "").strip() or _uuid()

        def _op(conn: sqlite3.Connection) -> None:
            now = datetime.now(timezone.utc).timestamp()
            conn.execute(
                """
                INSERT INTO monitors (
                  id, user_id, name, url, pattern, pattern_type, check_interval, is_active,
                  last_checked_ts, last_status, notification_channels_json, created_at_ts, updated_at_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    monitor_id,
                    monitor.user_id,
                    monitor.name.strip(),
                    monitor.url.strip(),
                    monitor.pattern,
                    monitor.pattern_type,
                    int(monitor.check_interval),
                    1 if monitor.is_active else 0,
                    _ts(monitor.last_checked) if monitor.last_checked else None,
                    monitor.last_status or STATUS_PENDING,
                    _json_dumps([c.to_dict() for c in monitor.notification_channels]),
                    now,
                    now,
                ),
            )

        await self._call(_op)
        created = await self.get_monitor(monitor_id, monitor.user_id)
        if created is None:
            raise StoreError(f"monitor {monitor_id} vanished after insert")
        return created

    async def get_monitor(self, monitor_id: str, user_id: str) -> Monitor | None:
        def _op(conn: sqlite3.Connection) -> Monitor | None:
            row = conn.execute(
                "SELECT * FROM monitors WHERE id=? AND user_id=?",
                (monitor_id, user_id),
            ).fetchone()
            return _row_to_monitor(row) if row else None

        return await self._call(_op)

    async def update_monitor_status(self, monitor_id: str, *, status: str, checked_at: datetime) -> None:
        def _op(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE monitors SET last_status=?, last_checked_ts=?, updated_at_ts=? WHERE id=?",
                (status, _ts(checked_at), _ts(checked_at), monitor_id),
            )

        await self._call(_op)

    # --- check log ---

    async def insert_check_log(self, monitor_id: str, result: CheckResult, *, checked_at: datetime) -> str:
        log_id = _uuid()

        def _op(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO monitor_logs (
                  id, monitor_id, status, response_time_ms, error_message, content_snippet, checked_at_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log_id,
                    monitor_id,
                    result.status,
                    int(result.response_time_ms),
                    result.error_message,
                    result.content_snippet,
                    _ts(checked_at),
                ),
            )

        await self._call(_op)
        return log_id

    async def list_check_logs(self, monitor_id: str, *, limit: int = 50) -> list[CheckLogEntry]:
        def _op(conn: sqlite3.Connection) -> list[CheckLogEntry]:
            rows = conn.execute(
                """
                SELECT * FROM monitor_logs WHERE monitor_id=?
                ORDER BY checked_at_ts DESC, rowid DESC LIMIT ?
                """,
                (monitor_id, int(limit)),
            ).fetchall()
            return [
                CheckLogEntry(
                    id=str(r["id"]),
                    monitor_id=str(r["monitor_id"]),
                    status=str(r["status"]),
                    response_time_ms=int(r["response_time_ms"]) if r["response_time_ms"] is not None else None,
                    content_snippet=r["content_snippet"],
                    error_message=r["error_message"],
                    checked_at=_dt(r["checked_at_ts"]),
                )
                for r in rows
            ]

        return await self._call(_op)

    # --- notifications ---

    async def insert_notification(self, record: NotificationRecord) -> str:
        record_id = record.id or _uuid()
        created = record.created_at or datetime.now(timezone.utc)

        def _op(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO notifications (
                  id, monitor_id, user_id, type, channel, message, status, error_message, message_id,
                  sent_at_ts, updated_at_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    record.monitor_id,
                    record.user_id,
                    record.type,
                    record.channel,
                    record.message,
                    record.status,
                    record.error_message,
                    record.message_id,
                    _ts(created),
                    _ts(created),
                ),
            )

        await self._call(_op)
        return record_id

    async def list_notifications(self, user_id: str, *, since: datetime | None = None) -> list[NotificationRecord]:
        def _op(conn: sqlite3.Connection) -> list[NotificationRecord]:
            if since is None:
                rows = conn.execute(
                    "SELECT * FROM notifications WHERE user_id=? ORDER BY sent_at_ts DESC, rowid DESC",
                    (user_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM notifications WHERE user_id=? AND sent_at_ts>=?
                    ORDER BY sent_at_ts DESC, rowid DESC
                    """,
                    (user_id, _ts(since)),
                ).fetchall()
            return [_row_to_notification(r) for r in rows]

        return await self._call(_op)

    async def update_notification_delivery(
        self, message_id: str, *, status: str, error_message: str | None, updated_at: datetime
    ) -> bool:
        def _op(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                """
                UPDATE notifications
                SET status=?, error_message=COALESCE(?, error_message), updated_at_ts=?
                WHERE message_id=? AND channel='sms'
                """,
                (status, error_message, _ts(updated_at), message_id),
            )
            return cur.rowcount > 0

        return await self._call(_op)

    # --- sms usage ---

    async def get_sms_usage(self, user_id: str) -> SmsUsage | None:
        def _op(conn: sqlite3.Connection) -> SmsUsage | None:
            row = conn.execute("SELECT * FROM sms_usage WHERE user_id=?", (user_id,)).fetchone()
            return _row_to_usage(row) if row else None

        return await self._call(_op)

    async def increment_sms_usage(
        self,
        user_id: str,
        *,
        cost_usd: float,
        hour_start: datetime,
        day_start: datetime,
        month_start: datetime,
        now: datetime,
    ) -> None:
        def _op(conn: sqlite3.Connection) -> None:
            conn.execute(
                _INCREMENT_USAGE_SQL,
                (
                    user_id,
                    float(cost_usd),
                    _ts(hour_start),
                    _ts(day_start),
                    _ts(month_start),
                    _ts(now),
                    _ts(now),
                ),
            )

        await self._call(_op)

    async def list_sms_usage(self) -> list[SmsUsage]:
        def _op(conn: sqlite3.Connection) -> list[SmsUsage]:
            rows = conn.execute("SELECT * FROM sms_usage ORDER BY monthly_cost_usd DESC, user_id").fetchall()
            return [_row_to_usage(r) for r in rows]

        return await self._call(_op)

    async def reset_monthly_usage(self, *, month_start: datetime, now: datetime) -> int:
        def _op(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                """
                UPDATE sms_usage
                SET monthly_count=0, monthly_cost_usd=0, last_reset_month_ts=?, updated_at_ts=?
                WHERE monthly_count<>0 OR monthly_cost_usd<>0
                """,
                (_ts(month_start), _ts(now)),
            )
            return int(cur.rowcount)

        return await self._call(_op)

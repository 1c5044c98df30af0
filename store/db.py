from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Database:
    conn: sqlite3.Connection
    lock: threading.Lock


_MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version INTEGER NOT NULL PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS sources (
          source_id TEXT NOT NULL PRIMARY KEY,
          name TEXT NOT NULL,
          url TEXT NOT NULL,
          enabled INTEGER NOT NULL DEFAULT 1,

          last_fetch_at TEXT NULL,
          last_success_at TEXT NULL,
          last_error_at TEXT NULL,
          consecutive_failures INTEGER NOT NULL DEFAULT 0,
          last_status_code INTEGER NULL,
          last_fetch_ms INTEGER NULL,
          last_error TEXT NULL,
          last_candidates INTEGER NOT NULL DEFAULT 0,
          success_count INTEGER NOT NULL DEFAULT 0,
          error_count INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS alerts (
          alert_id TEXT NOT NULL PRIMARY KEY,
          dedup_key TEXT NOT NULL,
          type TEXT NOT NULL,
          severity TEXT NOT NULL,
          severity_rank INTEGER NOT NULL,
          title TEXT NOT NULL,
          description TEXT NOT NULL DEFAULT '',
          affected_areas TEXT NOT NULL DEFAULT '[]',
          source TEXT NOT NULL,
          sources TEXT NOT NULL DEFAULT '[]',
          source_url TEXT NOT NULL DEFAULT '',
          issued_at TEXT NOT NULL,
          expires_at TEXT NULL,
          is_verified INTEGER NOT NULL DEFAULT 0,
          is_active INTEGER NOT NULL DEFAULT 1,
          deactivated_reason TEXT NULL,
          notifications_sent INTEGER NOT NULL DEFAULT 0,
          priority INTEGER NOT NULL DEFAULT 1,
          views INTEGER NOT NULL DEFAULT 0,
          instructions TEXT NOT NULL DEFAULT '[]',
          emergency_contacts TEXT NOT NULL DEFAULT '[]',
          tags TEXT NOT NULL DEFAULT '[]',
          raw TEXT NOT NULL DEFAULT '{}',
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS alerts_dedup_key_uq ON alerts(dedup_key);
        CREATE INDEX IF NOT EXISTS alerts_type_severity_active_idx
          ON alerts(type, severity, is_active);
        CREATE INDEX IF NOT EXISTS alerts_priority_issued_idx
          ON alerts(priority DESC, issued_at DESC);
        CREATE INDEX IF NOT EXISTS alerts_issued_at_idx ON alerts(issued_at);
        CREATE INDEX IF NOT EXISTS alerts_expires_at_idx ON alerts(expires_at);

        CREATE TABLE IF NOT EXISTS alert_areas (
          alert_id TEXT NOT NULL,
          city TEXT NOT NULL,
          state TEXT NOT NULL,
          district TEXT NOT NULL DEFAULT '',
          city_norm TEXT NOT NULL,
          state_norm TEXT NOT NULL,
          PRIMARY KEY (alert_id, city_norm, state_norm),
          FOREIGN KEY (alert_id) REFERENCES alerts(alert_id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS alert_areas_state_city_idx
          ON alert_areas(state_norm, city_norm);
        CREATE INDEX IF NOT EXISTS alert_areas_city_idx ON alert_areas(city_norm);
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS subscriptions (
          recipient_id TEXT NOT NULL,
          city TEXT NULL,
          state TEXT NOT NULL,
          endpoint TEXT NOT NULL,
          alerts_enabled INTEGER NOT NULL DEFAULT 1,
          PRIMARY KEY (recipient_id, endpoint)
        );

        CREATE INDEX IF NOT EXISTS subscriptions_state_city_idx
          ON subscriptions(state COLLATE NOCASE, city COLLATE NOCASE);
        CREATE INDEX IF NOT EXISTS subscriptions_recipient_idx
          ON subscriptions(recipient_id);
        """,
    ),
]


def open_database(path: Path) -> Database:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    _apply_migrations(conn)
    return Database(conn=conn, lock=threading.Lock())


def close_database(db: Database) -> None:
    with db.lock:
        db.conn.close()


def _apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER NOT NULL PRIMARY KEY);"
    )
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) AS v FROM schema_migrations;"
    ).fetchone()
    current_version = int(row["v"])

    for version, sql in _MIGRATIONS:
        if version <= current_version:
            continue
        conn.executescript(sql)
        conn.execute("INSERT INTO schema_migrations(version) VALUES (?);", (version,))

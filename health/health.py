from __future__ import annotations

from collections.abc import Iterable

from ingest.sources import SourceAdapter
from normalize.alert import utc_now_iso
from store.db import Database


def ensure_sources(db: Database, adapters: Iterable[SourceAdapter]) -> None:
    with db.lock:
        for adapter in adapters:
            db.conn.execute(
                """
                INSERT INTO sources(source_id, name, url, enabled)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                  name = excluded.name,
                  url = excluded.url,
                  enabled = excluded.enabled;
                """,
                (adapter.source, adapter.name, adapter.url, 1 if adapter.enabled else 0),
            )


def record_fetch_success(
    db: Database,
    *,
    source_id: str,
    status_code: int | None,
    fetch_ms: int,
    candidates: int,
) -> None:
    now_iso = utc_now_iso()
    with db.lock:
        db.conn.execute(
            """
            UPDATE sources
            SET last_fetch_at = ?,
                last_success_at = ?,
                last_status_code = ?,
                last_fetch_ms = ?,
                last_candidates = ?,
                consecutive_failures = 0,
                last_error = NULL,
                last_error_at = NULL,
                success_count = success_count + 1
            WHERE source_id = ?;
            """,
            (now_iso, now_iso, status_code, fetch_ms, candidates, source_id),
        )


def record_fetch_error(
    db: Database,
    *,
    source_id: str,
    status_code: int | None,
    fetch_ms: int | None,
    error: str,
) -> int:
    """Record a failed fetch and return the source's consecutive failure count."""
    now_iso = utc_now_iso()
    with db.lock:
        row = db.conn.execute(
            "SELECT consecutive_failures FROM sources WHERE source_id = ?;",
            (source_id,),
        ).fetchone()
        if row is None:
            return 0
        failures = int(row["consecutive_failures"]) + 1
        db.conn.execute(
            """
            UPDATE sources
            SET last_fetch_at = ?,
                last_error_at = ?,
                last_status_code = COALESCE(?, last_status_code),
                last_fetch_ms = COALESCE(?, last_fetch_ms),
                consecutive_failures = ?,
                last_error = ?,
                error_count = error_count + 1
            WHERE source_id = ?;
            """,
            (now_iso, now_iso, status_code, fetch_ms, failures, error, source_id),
        )
    return failures


def list_source_health(db: Database) -> list[dict]:
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT source_id, name, url, enabled, last_fetch_at, last_success_at,
                   last_error_at, consecutive_failures, last_status_code,
                   last_fetch_ms, last_error, last_candidates, success_count, error_count
            FROM sources
            ORDER BY source_id ASC;
            """
        ).fetchall()
    return [
        {
            "source": str(r["source_id"]),
            "name": str(r["name"]),
            "url": str(r["url"]),
            "enabled": bool(r["enabled"]),
            "lastFetchAt": r["last_fetch_at"],
            "lastSuccessAt": r["last_success_at"],
            "lastErrorAt": r["last_error_at"],
            "consecutiveFailures": int(r["consecutive_failures"]),
            "lastStatusCode": r["last_status_code"],
            "lastFetchMs": r["last_fetch_ms"],
            "lastError": r["last_error"],
            "lastCandidates": int(r["last_candidates"]),
            "successCount": int(r["success_count"]),
            "errorCount": int(r["error_count"]),
        }
        for r in rows
    ]

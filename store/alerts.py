from __future__ import annotations

import json
import math
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from geo.places import is_generic_area
from normalize.alert import (
    INSERT,
    SEVERITIES,
    SEVERITY_RANK,
    UPDATE,
    Alert,
    Area,
    ReconcileAction,
    normalize_place_name,
    to_iso,
)
from normalize.dedupe import decide
from normalize.normalize import compute_priority
from store.db import Database
from store.errors import StoreError


@dataclass(frozen=True)
class AlertFilters:
    type: str | None = None
    severity: str | None = None
    city: str | None = None
    state: str | None = None


@dataclass
class AlertPage:
    alerts: list[Alert]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


@dataclass(frozen=True)
class UpsertResult:
    action: str
    alert: Alert
    escalated: bool = False
    previous_severity: str | None = None


@dataclass
class AlertStats:
    total: int = 0
    by_severity: dict[str, int] = field(default_factory=dict)
    by_type: list[tuple[str, int]] = field(default_factory=list)
    by_source: list[tuple[str, int]] = field(default_factory=list)


_ALERT_COLUMNS = """
    alert_id, dedup_key, type, severity, severity_rank, title, description,
    affected_areas, source, sources, source_url, issued_at, expires_at,
    is_verified, is_active, deactivated_reason, notifications_sent, priority,
    views, instructions, emergency_contacts, tags, raw, created_at, updated_at
"""

_GENERIC_STATES = ("india", "multiple", "all")


def _now_iso(now: datetime | None = None) -> str:
    return to_iso(now or datetime.now(tz=UTC))


def _row_to_alert(row: sqlite3.Row) -> Alert:
    return Alert(
        alert_id=str(row["alert_id"]),
        dedup_key=str(row["dedup_key"]),
        type=str(row["type"]),
        severity=str(row["severity"]),
        title=str(row["title"]),
        description=str(row["description"]),
        affected_areas=[Area.from_dict(a) for a in json.loads(row["affected_areas"])],
        source=str(row["source"]),
        sources=list(json.loads(row["sources"])),
        source_url=str(row["source_url"]),
        issued_at=str(row["issued_at"]),
        expires_at=row["expires_at"],
        is_verified=bool(row["is_verified"]),
        is_active=bool(row["is_active"]),
        deactivated_reason=row["deactivated_reason"],
        notifications_sent=int(row["notifications_sent"]),
        priority=int(row["priority"]),
        views=int(row["views"]),
        instructions=list(json.loads(row["instructions"])),
        emergency_contacts=list(json.loads(row["emergency_contacts"])),
        tags=list(json.loads(row["tags"])),
        raw=dict(json.loads(row["raw"])),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _alert_params(alert: Alert) -> dict:
    return {
        "alert_id": alert.alert_id,
        "dedup_key": alert.dedup_key,
        "type": alert.type,
        "severity": alert.severity,
        "severity_rank": SEVERITY_RANK[alert.severity],
        "title": alert.title,
        "description": alert.description,
        "affected_areas": json.dumps(
            [a.to_dict() for a in alert.affected_areas], ensure_ascii=False
        ),
        "source": alert.source,
        "sources": json.dumps(alert.sources, ensure_ascii=False),
        "source_url": alert.source_url,
        "issued_at": alert.issued_at,
        "expires_at": alert.expires_at,
        "is_verified": 1 if alert.is_verified else 0,
        "is_active": 1 if alert.is_active else 0,
        "deactivated_reason": alert.deactivated_reason,
        "notifications_sent": alert.notifications_sent,
        "priority": alert.priority,
        "views": alert.views,
        "instructions": json.dumps(alert.instructions, ensure_ascii=False),
        "emergency_contacts": json.dumps(alert.emergency_contacts, ensure_ascii=False),
        "tags": json.dumps(alert.tags, ensure_ascii=False),
        "raw": json.dumps(alert.raw, ensure_ascii=False, default=str),
        "created_at": alert.created_at,
        "updated_at": alert.updated_at,
    }


class AlertStore:
    """SQLite-backed alert persistence.

    All writes go through ``_transaction`` which holds the process lock and a
    ``BEGIN IMMEDIATE`` write lock, so a read-decide-write sequence on one
    dedup key cannot interleave with another writer, in this process or in
    another process sharing the database file.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    @property
    def db(self) -> Database:
        return self._db

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._db.lock:
            conn = self._db.conn
            try:
                conn.execute("BEGIN IMMEDIATE;")
            except sqlite3.Error as exc:
                raise StoreError(f"begin failed: {exc}") from exc
            try:
                yield conn
            except sqlite3.Error as exc:
                conn.execute("ROLLBACK;")
                raise StoreError(str(exc)) from exc
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            else:
                try:
                    conn.execute("COMMIT;")
                except sqlite3.Error as exc:
                    conn.execute("ROLLBACK;")
                    raise StoreError(f"commit failed: {exc}") from exc

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._db.lock:
            try:
                yield self._db.conn
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    # ── Writes ──────────────────────────────────────────────────

    def _insert(self, conn: sqlite3.Connection, alert: Alert) -> None:
        conn.execute(
            f"""
            INSERT INTO alerts({_ALERT_COLUMNS})
            VALUES(
              :alert_id, :dedup_key, :type, :severity, :severity_rank, :title, :description,
              :affected_areas, :source, :sources, :source_url, :issued_at, :expires_at,
              :is_verified, :is_active, :deactivated_reason, :notifications_sent, :priority,
              :views, :instructions, :emergency_contacts, :tags, :raw, :created_at, :updated_at
            );
            """,
            _alert_params(alert),
        )
        self._write_areas(conn, alert)

    def _update(self, conn: sqlite3.Connection, alert: Alert) -> None:
        conn.execute(
            """
            UPDATE alerts
            SET type = :type,
                severity = :severity,
                severity_rank = :severity_rank,
                title = :title,
                description = :description,
                affected_areas = :affected_areas,
                source = :source,
                sources = :sources,
                source_url = :source_url,
                issued_at = :issued_at,
                expires_at = :expires_at,
                is_verified = :is_verified,
                is_active = :is_active,
                deactivated_reason = :deactivated_reason,
                priority = :priority,
                instructions = :instructions,
                emergency_contacts = :emergency_contacts,
                tags = :tags,
                raw = :raw,
                updated_at = :updated_at
            WHERE alert_id = :alert_id;
            """,
            _alert_params(alert),
        )
        conn.execute("DELETE FROM alert_areas WHERE alert_id = ?;", (alert.alert_id,))
        self._write_areas(conn, alert)

    def _write_areas(self, conn: sqlite3.Connection, alert: Alert) -> None:
        conn.executemany(
            """
            INSERT OR IGNORE INTO alert_areas(
              alert_id, city, state, district, city_norm, state_norm
            )
            VALUES(?, ?, ?, ?, ?, ?);
            """,
            [
                (alert.alert_id, a.city, a.state, a.district, a.key[0], a.key[1])
                for a in alert.affected_areas
            ],
        )

    def _get_by_key(self, conn: sqlite3.Connection, key: str) -> Alert | None:
        row = conn.execute(
            f"SELECT {_ALERT_COLUMNS} FROM alerts WHERE dedup_key = ?;", (key,)
        ).fetchone()
        return _row_to_alert(row) if row is not None else None

    def upsert_by_key(
        self, key: str, alert: Alert, now: datetime | None = None
    ) -> UpsertResult:
        """Insert or merge *alert* into the record holding *key*, atomically.

        The insert/update/discard decision is taken again against the row read
        inside the write transaction, so the returned action (and escalation
        flag) is authoritative even when another cycle touched the key first.
        """
        now = now or datetime.now(tz=UTC)
        now_iso = _now_iso(now)
        if alert.dedup_key != key:
            alert = replace(alert, dedup_key=key)

        with self._transaction() as conn:
            existing = self._get_by_key(conn, key)
            decision: ReconcileAction = decide(alert, existing, now)
            if decision.action == INSERT:
                stored = replace(
                    decision.alert,
                    notifications_sent=0,
                    views=0,
                    created_at=now_iso,
                    updated_at=now_iso,
                )
                self._insert(conn, stored)
            elif decision.action == UPDATE:
                stored = replace(decision.alert, updated_at=now_iso)
                self._update(conn, stored)
            else:
                stored = decision.alert

        return UpsertResult(
            action=decision.action,
            alert=stored,
            escalated=decision.escalated,
            previous_severity=decision.previous_severity,
        )

    def insert_manual(self, alert: Alert, now: datetime | None = None) -> Alert:
        now_iso = _now_iso(now)
        stored = replace(alert, created_at=now_iso, updated_at=now_iso)
        with self._transaction() as conn:
            self._insert(conn, stored)
        return stored

    def update_fields(
        self, alert_id: str, changes: dict, now: datetime | None = None
    ) -> tuple[Alert, bool] | None:
        """Apply an admin edit. Returns (alert, escalated) or None if unknown.

        Unlike scraped updates an admin edit may lower severity or replace the
        area set outright.
        """
        now = now or datetime.now(tz=UTC)
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_ALERT_COLUMNS} FROM alerts WHERE alert_id = ?;", (alert_id,)
            ).fetchone()
            if row is None:
                return None
            existing = _row_to_alert(row)
            updated = replace(existing, **changes, updated_at=_now_iso(now))
            if "priority" not in changes and (
                "severity" in changes or "type" in changes
            ):
                updated = replace(
                    updated,
                    priority=compute_priority(
                        updated.severity, updated.type, updated.issued_at, now
                    ),
                )
            if "is_active" in changes:
                updated = replace(
                    updated,
                    deactivated_reason=None if updated.is_active else "admin",
                )
            self._update(conn, updated)
        return updated, updated.severity_rank > existing.severity_rank

    def deactivate(self, alert_id: str, now: datetime | None = None) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE alerts
                SET is_active = 0, deactivated_reason = 'admin', updated_at = ?
                WHERE alert_id = ?;
                """,
                (_now_iso(now), alert_id),
            )
        return cur.rowcount > 0

    def verify(self, alert_id: str, now: datetime | None = None) -> Alert | None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE alerts SET is_verified = 1, updated_at = ? WHERE alert_id = ?;",
                (_now_iso(now), alert_id),
            )
        return self.get(alert_id)

    def deactivate_expired(self, now: datetime | None = None) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE alerts
                SET is_active = 0, deactivated_reason = 'expired', updated_at = :now
                WHERE is_active = 1
                  AND expires_at IS NOT NULL
                  AND expires_at <= :now;
                """,
                {"now": _now_iso(now)},
            )
        return cur.rowcount

    def increment_notifications(self, alert_id: str, count: int) -> None:
        if count <= 0:
            return
        with self._transaction() as conn:
            conn.execute(
                "UPDATE alerts SET notifications_sent = notifications_sent + ? WHERE alert_id = ?;",
                (count, alert_id),
            )

    def increment_views(self, alert_ids: list[str]) -> None:
        if not alert_ids:
            return
        with self._transaction() as conn:
            conn.executemany(
                "UPDATE alerts SET views = views + 1 WHERE alert_id = ?;",
                [(alert_id,) for alert_id in alert_ids],
            )

    # ── Reads ───────────────────────────────────────────────────

    def get(self, alert_id: str) -> Alert | None:
        with self._reading() as conn:
            row = conn.execute(
                f"SELECT {_ALERT_COLUMNS} FROM alerts WHERE alert_id = ?;", (alert_id,)
            ).fetchone()
        return _row_to_alert(row) if row is not None else None

    def get_by_key(self, key: str) -> Alert | None:
        with self._reading() as conn:
            return self._get_by_key(conn, key)

    def _query(
        self,
        where: list[str],
        params: list[object],
        page: int,
        page_size: int,
        order_by: str = "a.priority DESC, a.issued_at DESC",
    ) -> AlertPage:
        page = max(1, page)
        page_size = max(1, min(page_size, 100))
        where_sql = " AND ".join(where) if where else "1 = 1"
        with self._reading() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS n FROM alerts a WHERE {where_sql};", params
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT {", ".join("a." + c.strip() for c in _ALERT_COLUMNS.split(","))}
                FROM alerts a
                WHERE {where_sql}
                ORDER BY {order_by}
                LIMIT ? OFFSET ?;
                """,
                [*params, page_size, (page - 1) * page_size],
            ).fetchall()
        return AlertPage(
            alerts=[_row_to_alert(r) for r in rows],
            total=int(total_row["n"]),
            page=page,
            page_size=page_size,
        )

    def _filter_clauses(
        self, filters: AlertFilters, now_iso: str, include_inactive: bool
    ) -> tuple[list[str], list[object]]:
        where: list[str] = []
        params: list[object] = []
        if not include_inactive:
            where.append("a.is_active = 1")
            where.append("(a.expires_at IS NULL OR a.expires_at > ?)")
            params.append(now_iso)
        if filters.type:
            where.append("a.type = ?")
            params.append(filters.type)
        if filters.severity:
            where.append("a.severity = ?")
            params.append(filters.severity)
        if filters.city:
            where.append(
                """
                EXISTS (
                  SELECT 1 FROM alert_areas aa
                  WHERE aa.alert_id = a.alert_id
                    AND (instr(aa.city_norm, ?) > 0 OR instr(aa.state_norm, ?) > 0)
                )
                """
            )
            city_norm = normalize_place_name(filters.city)
            params.extend([city_norm, city_norm])
        if filters.state:
            where.append(
                """
                EXISTS (
                  SELECT 1 FROM alert_areas aa
                  WHERE aa.alert_id = a.alert_id AND instr(aa.state_norm, ?) > 0
                )
                """
            )
            params.append(normalize_place_name(filters.state))
        return where, params

    def find_active(
        self,
        filters: AlertFilters,
        page: int = 1,
        page_size: int = 20,
        now: datetime | None = None,
    ) -> AlertPage:
        where, params = self._filter_clauses(filters, _now_iso(now), False)
        return self._query(where, params, page, page_size)

    def find_history(
        self,
        filters: AlertFilters,
        page: int = 1,
        page_size: int = 20,
    ) -> AlertPage:
        where, params = self._filter_clauses(filters, _now_iso(), True)
        return self._query(where, params, page, page_size, "a.issued_at DESC")

    def find_for_location(
        self,
        *,
        state: str | None,
        city: str | None,
        filters: AlertFilters,
        page: int = 1,
        page_size: int = 10,
        now: datetime | None = None,
    ) -> AlertPage:
        """Active alerts touching the caller's state or city, plus nationwide ones."""
        where, params = self._filter_clauses(filters, _now_iso(now), False)
        if state or city:
            location: list[str] = []
            location_params: list[object] = []
            if state:
                location.append("instr(aa.state_norm, ?) > 0")
                location_params.append(normalize_place_name(state))
            if city:
                location.append("instr(aa.city_norm, ?) > 0")
                location_params.append(normalize_place_name(city))
            for generic in _GENERIC_STATES:
                location.append("instr(aa.state_norm, ?) > 0")
                location_params.append(generic)
            where.append(
                f"""
                EXISTS (
                  SELECT 1 FROM alert_areas aa
                  WHERE aa.alert_id = a.alert_id AND ({" OR ".join(location)})
                )
                """
            )
            params.extend(location_params)
        return self._query(where, params, page, page_size)

    def recent(
        self, since: datetime, limit: int = 20, now: datetime | None = None
    ) -> list[Alert]:
        where, params = self._filter_clauses(AlertFilters(), _now_iso(now), False)
        where.append("a.issued_at >= ?")
        params.append(to_iso(since))
        return self._query(where, params, 1, limit, "a.issued_at DESC").alerts

    def stats(self, now: datetime | None = None) -> AlertStats:
        now_iso = _now_iso(now)
        active = "is_active = 1 AND (expires_at IS NULL OR expires_at > ?)"
        with self._reading() as conn:
            by_severity = {
                str(r["severity"]): int(r["n"])
                for r in conn.execute(
                    f"SELECT severity, COUNT(*) AS n FROM alerts WHERE {active} GROUP BY severity;",
                    (now_iso,),
                ).fetchall()
            }
            by_type = [
                (str(r["type"]), int(r["n"]))
                for r in conn.execute(
                    f"""
                    SELECT type, COUNT(*) AS n FROM alerts WHERE {active}
                    GROUP BY type ORDER BY n DESC, type ASC;
                    """,
                    (now_iso,),
                ).fetchall()
            ]
            by_source = [
                (str(r["source"]), int(r["n"]))
                for r in conn.execute(
                    f"""
                    SELECT source, COUNT(*) AS n FROM alerts WHERE {active}
                    GROUP BY source ORDER BY n DESC, source ASC;
                    """,
                    (now_iso,),
                ).fetchall()
            ]
        return AlertStats(
            total=sum(by_severity.values()),
            by_severity={s: by_severity.get(s, 0) for s in SEVERITIES},
            by_type=by_type,
            by_source=by_source,
        )

    def cities_available(self, limit: int = 100, now: datetime | None = None) -> list[dict]:
        with self._reading() as conn:
            rows = conn.execute(
                """
                SELECT aa.state AS state, aa.city AS city,
                       COUNT(*) AS alert_count,
                       SUM(CASE WHEN a.severity = 'critical' THEN 1 ELSE 0 END) AS critical_count,
                       SUM(CASE WHEN a.severity = 'high' THEN 1 ELSE 0 END) AS high_count,
                       SUM(CASE WHEN a.severity = 'medium' THEN 1 ELSE 0 END) AS medium_count,
                       SUM(CASE WHEN a.severity = 'low' THEN 1 ELSE 0 END) AS low_count
                FROM alert_areas aa
                JOIN alerts a ON a.alert_id = aa.alert_id
                WHERE a.is_active = 1
                  AND (a.expires_at IS NULL OR a.expires_at > ?)
                  AND aa.state <> '' AND aa.city <> ''
                GROUP BY aa.state_norm, aa.city_norm
                ORDER BY alert_count DESC, aa.state ASC, aa.city ASC;
                """,
                (_now_iso(now),),
            ).fetchall()
        cities = [
            {
                "state": str(r["state"]),
                "city": str(r["city"]),
                "alertCount": int(r["alert_count"]),
                "criticalCount": int(r["critical_count"]),
                "highCount": int(r["high_count"]),
                "mediumCount": int(r["medium_count"]),
                "lowCount": int(r["low_count"]),
            }
            for r in rows
            if not is_generic_area(Area(city=str(r["city"]), state=str(r["state"])))
        ]
        return cities[:limit]

    def count_rows(self) -> int:
        with self._reading() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM alerts;").fetchone()
        return int(row["n"])

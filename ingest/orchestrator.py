from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx
import structlog

from app.settings import Settings
from health.health import record_fetch_error, record_fetch_success
from ingest.fetch import SourceResult, fetch_source
from ingest.sources import SourceAdapter
from normalize.alert import DISCARD, INSERT, UPDATE, Alert, RawCandidate, to_iso
from normalize.dedupe import merge_candidates, reconcile
from notify.dispatcher import DeliveryReport, NotificationDispatcher
from realtime.bus import ALERT_CREATED, ALERT_UPDATED, SCRAPE_COMPLETED, Event, EventBus
from store.alerts import AlertStore
from store.errors import StoreError


logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

# Cycle phases, in order.
IDLE = "idle"
FETCHING = "fetching"
RECONCILING = "reconciling"
PERSISTING = "persisting"
NOTIFYING = "notifying"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class CycleReport:
    trigger: str
    started_at: str
    finished_at: str | None = None
    phase: str = IDLE
    ok: bool = True
    error: str | None = None
    sources: list[SourceResult] = field(default_factory=list)
    candidates: int = 0
    inserted: int = 0
    updated: int = 0
    escalated: int = 0
    discarded: int = 0
    deactivated: int = 0
    deliveries: list[DeliveryReport] = field(default_factory=list)

    @property
    def failed_sources(self) -> list[str]:
        return [r.source for r in self.sources if not r.ok]

    @property
    def notifications_dispatched(self) -> int:
        return len(self.deliveries)

    def to_dict(self) -> dict:
        return {
            "trigger": self.trigger,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "phase": self.phase,
            "status": "ok" if self.ok else "failed",
            "error": self.error,
            "counts": {
                "candidates": self.candidates,
                "inserted": self.inserted,
                "updated": self.updated,
                "escalated": self.escalated,
                "discarded": self.discarded,
                "deactivated": self.deactivated,
                "notificationBatches": self.notifications_dispatched,
                "notificationsSent": sum(d.succeeded for d in self.deliveries),
            },
            "sources": [r.to_dict() for r in self.sources],
        }


@dataclass
class SearchResult:
    city: str
    searched_at: str
    alerts: list[Alert] = field(default_factory=list)
    sources: list[SourceResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[str]:
        return [r.source for r in self.sources if r.ok]

    @property
    def all_failed(self) -> bool:
        return bool(self.sources) and not self.succeeded

    def to_dict(self) -> dict:
        alerts = []
        for alert in self.alerts:
            data = alert.to_dict()
            data["live"] = True
            data["searchedAt"] = self.searched_at
            alerts.append(data)
        return {
            "city": self.city,
            "alerts": alerts,
            "total": len(alerts),
            "live": True,
            "sources": {
                "succeeded": self.succeeded,
                "failed": [
                    {"source": r.source, "reason": r.reason}
                    for r in self.sources
                    if not r.ok
                ],
            },
            "searchedAt": self.searched_at,
        }


class ScrapeOrchestrator:
    """Runs scrape cycles and live city searches over the adapter registry.

    Cycles may overlap (scheduled tick plus "scrape now"); the store's
    per-key upsert is the only coordination between them.
    """

    def __init__(
        self,
        *,
        adapters: dict[str, SourceAdapter],
        store: AlertStore,
        dispatcher: NotificationDispatcher,
        client: httpx.AsyncClient,
        settings: Settings,
        bus: EventBus | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        self._adapters = adapters
        self._store = store
        self._dispatcher = dispatcher
        self._client = client
        self._settings = settings
        self._bus = bus
        self._clock = clock
        self._last_report: CycleReport | None = None
        self._running = 0

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    @property
    def running_cycles(self) -> int:
        return self._running

    @property
    def adapters(self) -> list[SourceAdapter]:
        return list(self._adapters.values())

    def _enabled(self) -> list[SourceAdapter]:
        return [a for a in self._adapters.values() if a.enabled]

    async def _publish(self, event: Event) -> None:
        if self._bus is not None:
            await self._bus.publish(event)

    def _fetch(self, adapter: SourceAdapter, city: str | None = None):
        return fetch_source(
            self._client,
            adapter,
            user_agent=self._settings.user_agent,
            timeout_seconds=self._settings.source_timeout_seconds,
            city=city,
        )

    def _record_health(self, results: list[SourceResult]) -> None:
        db = self._store.db
        for result in results:
            try:
                if result.ok:
                    record_fetch_success(
                        db,
                        source_id=result.source,
                        status_code=result.status_code,
                        fetch_ms=result.elapsed_ms,
                        candidates=len(result.candidates),
                    )
                else:
                    record_fetch_error(
                        db,
                        source_id=result.source,
                        status_code=result.status_code,
                        fetch_ms=result.elapsed_ms,
                        error=result.reason or "unknown",
                    )
            except sqlite3.Error:
                logger.exception("source_health_write_failed", source=result.source)

    async def run_cycle(self, trigger: str = "scheduled") -> CycleReport:
        """One full Fetching -> Reconciling -> Persisting -> Notifying pass.

        Never raises: source failures are per-source entries in the report and
        a store failure marks the whole report failed.
        """
        now = self._clock()
        report = CycleReport(trigger=trigger, started_at=to_iso(now))
        self._running += 1
        log = logger.bind(trigger=trigger)
        log.info("scrape_cycle_started")
        to_notify: list[tuple[Alert, str]] = []
        try:
            try:
                await self._fetch_and_persist(report, to_notify, now)
            except StoreError as exc:
                report.ok = False
                report.error = f"store_error: {exc}"
                log.exception("scrape_cycle_failed", phase=report.phase)

            # Rows committed before a store failure are still notified; the
            # next tick would see them as unchanged and discard them.
            failed_phase = report.phase
            report.phase = NOTIFYING
            for alert, reason in to_notify:
                try:
                    report.deliveries.append(await self._dispatcher.notify(alert, reason))
                except (StoreError, sqlite3.Error):
                    logger.exception("notify_failed", alert_id=alert.alert_id)
            if not report.ok:
                report.phase = failed_phase
        finally:
            self._running -= 1
            report.finished_at = to_iso(self._clock())
            if report.ok:
                report.phase = IDLE
            self._last_report = report

        log.info(
            "scrape_cycle_completed",
            ok=report.ok,
            inserted=report.inserted,
            updated=report.updated,
            discarded=report.discarded,
            failed_sources=report.failed_sources,
        )
        await self._publish(Event(SCRAPE_COMPLETED, report.to_dict()))
        return report

    async def _fetch_and_persist(
        self,
        report: CycleReport,
        to_notify: list[tuple[Alert, str]],
        now: datetime,
    ) -> None:
        now_iso = to_iso(now)
        report.phase = FETCHING
        report.sources = list(
            await asyncio.gather(*(self._fetch(a) for a in self._enabled()))
        )
        self._record_health(report.sources)

        report.phase = RECONCILING
        candidates: list[RawCandidate] = [
            c for r in report.sources if r.ok for c in r.candidates
        ]
        report.candidates = len(candidates)
        actions = reconcile(candidates, self._store.get_by_key, now)

        report.phase = PERSISTING
        for action in actions:
            if action.action == DISCARD:
                report.discarded += 1
                continue
            result = self._store.upsert_by_key(action.alert.dedup_key, action.alert, now)
            live = result.alert.is_active and not result.alert.is_expired(now_iso)
            if result.action == INSERT:
                report.inserted += 1
                if live:
                    to_notify.append((result.alert, "insert"))
                await self._publish(Event(ALERT_CREATED, result.alert.to_dict()))
            elif result.action == UPDATE:
                report.updated += 1
                if result.escalated:
                    report.escalated += 1
                    if live:
                        to_notify.append((result.alert, "escalation"))
                await self._publish(
                    Event(
                        ALERT_UPDATED,
                        {
                            **result.alert.to_dict(),
                            "escalated": result.escalated,
                            "previousSeverity": result.previous_severity,
                        },
                    )
                )
            else:
                report.discarded += 1
        report.deactivated = self._store.deactivate_expired(now)
        if report.deactivated:
            logger.info("alerts_deactivated", count=report.deactivated)

    async def search_city(self, city: str) -> SearchResult:
        """Query every adapter for *city* right now, without touching the store.

        Returns whatever arrived before the overall deadline; sources still
        running at the deadline are cancelled and reported as ``deadline``.
        """
        now = self._clock()
        result = SearchResult(city=city, searched_at=to_iso(now))
        adapters = self._enabled()
        if not adapters:
            return result

        tasks = {
            asyncio.create_task(self._fetch(adapter, city)): adapter.source
            for adapter in adapters
        }
        done, pending = await asyncio.wait(
            tasks, timeout=self._settings.search_deadline_seconds
        )
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        by_source: dict[str, SourceResult] = {}
        for task in done:
            by_source[tasks[task]] = task.result()
        for task in pending:
            source = tasks[task]
            logger.warning("source_search_deadline", source=source, city=city)
            by_source[source] = SourceResult(source=source, ok=False, reason="deadline")

        result.sources = [by_source[a.source] for a in adapters]
        merged = merge_candidates(
            [c for r in result.sources if r.ok for c in r.candidates], now
        )
        merged.sort(key=lambda a: (a.priority, a.issued_at), reverse=True)
        result.alerts = merged
        logger.info(
            "city_search_completed",
            city=city,
            alerts=len(merged),
            succeeded=result.succeeded,
        )
        return result

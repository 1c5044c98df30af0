from __future__ import annotations

from datetime import UTC, datetime, timedelta

import structlog

from ingest.orchestrator import ScrapeOrchestrator, SearchResult
from normalize.alert import Alert
from notify.subscriptions import SubscriptionRegistry
from store.alerts import AlertFilters, AlertPage, AlertStore


logger = structlog.get_logger(__name__)


def page_to_dict(page: AlertPage) -> dict:
    return {
        "alerts": [a.to_dict() for a in page.alerts],
        "total": page.total,
        "totalPages": page.total_pages,
        "currentPage": page.page,
    }


class QueryService:
    """Read side of the alert API.

    Everything except ``search_city_real_time`` reads the last committed store
    state; the live search goes to the adapters and never writes.
    """

    def __init__(
        self,
        *,
        store: AlertStore,
        orchestrator: ScrapeOrchestrator,
        registry: SubscriptionRegistry,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._registry = registry

    def list_alerts(self, filters: AlertFilters, page: int = 1, page_size: int = 20) -> AlertPage:
        return self._store.find_active(filters, page, page_size)

    def history(self, filters: AlertFilters, page: int = 1, page_size: int = 20) -> AlertPage:
        return self._store.find_history(filters, page, page_size)

    def for_city(
        self, city: str, filters: AlertFilters, page: int = 1, page_size: int = 20
    ) -> AlertPage:
        return self._store.find_active(
            AlertFilters(
                type=filters.type, severity=filters.severity, city=city, state=filters.state
            ),
            page,
            page_size,
        )

    def for_recipient(
        self,
        recipient_id: str,
        filters: AlertFilters,
        page: int = 1,
        page_size: int = 10,
    ) -> tuple[AlertPage, dict]:
        city, state = self._registry.location_for(recipient_id)
        page_result = self._store.find_for_location(
            state=state, city=city, filters=filters, page=page, page_size=page_size
        )
        return page_result, {"city": city, "state": state}

    def get(self, alert_id: str, *, count_view: bool = True) -> Alert | None:
        alert = self._store.get(alert_id)
        if alert is not None and count_view:
            self._store.increment_views([alert_id])
            alert.views += 1
        return alert

    def stats(self) -> dict:
        stats = self._store.stats()
        return {
            "overview": {
                "totalAlerts": stats.total,
                "criticalAlerts": stats.by_severity["critical"],
                "highAlerts": stats.by_severity["high"],
                "mediumAlerts": stats.by_severity["medium"],
                "lowAlerts": stats.by_severity["low"],
            },
            "byType": [{"_id": t, "count": n} for t, n in stats.by_type],
            "bySource": [{"_id": s, "count": n} for s, n in stats.by_source],
        }

    def recent(self, hours: int = 24, limit: int = 20) -> list[Alert]:
        since = datetime.now(tz=UTC) - timedelta(hours=hours)
        return self._store.recent(since, limit)

    def cities_available(self) -> list[dict]:
        return self._store.cities_available()

    async def search_city_real_time(self, city: str) -> SearchResult:
        return await self._orchestrator.search_city(city)

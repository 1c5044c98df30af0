from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import httpx
import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from app.logging import setup_logging
from app.query import QueryService, page_to_dict
from app.settings import Settings
from geo.places import default_area
from health.health import ensure_sources, list_source_health
from ingest.orchestrator import ScrapeOrchestrator
from ingest.scheduler import ScrapeScheduler
from ingest.source_config import load_source_overrides
from ingest.sources import build_registry
from normalize.alert import DEFAULT_INSTRUCTIONS, Alert, to_iso
from normalize.normalize import (
    AlertValidationError,
    compute_priority,
    validate_manual_alert,
)
from notify.dispatcher import NotificationDispatcher
from notify.subscriptions import SqliteSubscriptionRegistry
from notify.transport import HttpPushTransport, PushTransport
from realtime.bus import EventBus
from realtime.sse import router as sse_router
from store.alerts import AlertFilters, AlertStore
from store.db import close_database, open_database


logger = structlog.get_logger(__name__)

router = APIRouter()

_NOT_FOUND = {"error": "not_found"}


class AreaIn(BaseModel):
    city: str
    state: str
    district: str = ""


class ContactIn(BaseModel):
    name: str
    phone: str
    type: str = ""


class AlertIn(BaseModel):
    """Admin create/update body. Every field is optional here; required
    fields for a create are enforced by ``validate_manual_alert``."""

    model_config = ConfigDict(populate_by_name=True)

    title: str | None = None
    description: str | None = None
    type: str | None = None
    severity: str | None = None
    affected_areas: list[AreaIn] | None = Field(default=None, alias="affectedAreas")
    expires_at: str | None = Field(default=None, alias="expiresAt")
    instructions: list[str] | None = None
    tags: list[str] | None = None
    emergency_contacts: list[ContactIn] | None = Field(
        default=None, alias="emergencyContacts"
    )
    priority: int | None = None
    source_url: str | None = Field(default=None, alias="sourceUrl")
    is_active: bool | None = Field(default=None, alias="isActive")
    is_verified: bool | None = Field(default=None, alias="isVerified")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _filters(
    type: str | None = None,
    severity: str | None = None,
    city: str | None = None,
    state: str | None = None,
) -> AlertFilters:
    return AlertFilters(type=type, severity=severity, city=city, state=state)


class _AdminRequired(Exception):
    pass


def require_admin(
    request: Request, x_admin_token: str | None = Header(default=None)
) -> None:
    settings: Settings = request.app.state.settings
    if not settings.admin_token or x_admin_token != settings.admin_token:
        raise _AdminRequired()


def _validation_error(exc: AlertValidationError) -> JSONResponse:
    return JSONResponse(
        {"error": "validation_error", "message": str(exc)}, status_code=422
    )


@router.get("/health")
def health(request: Request) -> JSONResponse:
    scheduler: ScrapeScheduler = request.app.state.scheduler
    return JSONResponse({"status": "ok", "scheduler": scheduler.status()})


@router.get("/alerts")
def list_alerts(
    request: Request,
    filters: AlertFilters = Depends(_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> JSONResponse:
    query: QueryService = request.app.state.query
    orchestrator: ScrapeOrchestrator = request.app.state.orchestrator
    last = orchestrator.last_report
    return JSONResponse(
        {
            **page_to_dict(query.list_alerts(filters, page, limit)),
            "lastUpdate": last.finished_at if last else None,
        }
    )


@router.get("/alerts/my-location")
def my_location_alerts(
    request: Request,
    filters: AlertFilters = Depends(_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    x_user_id: str | None = Header(default=None),
) -> JSONResponse:
    if not x_user_id:
        return JSONResponse({"error": "unauthenticated"}, status_code=401)
    query: QueryService = request.app.state.query
    page_result, location = query.for_recipient(x_user_id, filters, page, limit)
    return JSONResponse({**page_to_dict(page_result), "location": location})


@router.get("/alerts/history", dependencies=[Depends(require_admin)])
def alert_history(
    request: Request,
    filters: AlertFilters = Depends(_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> JSONResponse:
    query: QueryService = request.app.state.query
    return JSONResponse(page_to_dict(query.history(filters, page, limit)))


@router.get("/alerts/stats/overview")
def alert_stats(request: Request) -> JSONResponse:
    query: QueryService = request.app.state.query
    return JSONResponse(query.stats())


@router.get("/alerts/recent/24h")
def recent_alerts(request: Request) -> JSONResponse:
    query: QueryService = request.app.state.query
    alerts = query.recent(hours=24, limit=20)
    return JSONResponse(
        {
            "alerts": [a.to_dict() for a in alerts],
            "count": len(alerts),
            "timeframe": "24 hours",
        }
    )


@router.get("/alerts/cities/available")
def cities_available(request: Request) -> JSONResponse:
    query: QueryService = request.app.state.query
    return JSONResponse({"cities": query.cities_available()})


@router.get("/alerts/city/{city}")
def city_alerts(
    request: Request,
    city: str,
    type: str | None = None,
    severity: str | None = None,
    state: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> JSONResponse:
    query: QueryService = request.app.state.query
    filters = AlertFilters(type=type, severity=severity, state=state)
    return JSONResponse(
        {
            **page_to_dict(query.for_city(city, filters, page, limit)),
            "city": city,
            "state": state or "All States",
        }
    )


@router.get("/alerts/search/{city}")
async def search_city(request: Request, city: str) -> JSONResponse:
    query: QueryService = request.app.state.query
    result = await query.search_city_real_time(city)
    body = result.to_dict()
    if result.all_failed:
        return JSONResponse(
            {**body, "error": "all sources failed"},
            status_code=502,
        )
    return JSONResponse(body)


@router.post("/alerts/scrape", dependencies=[Depends(require_admin)])
async def trigger_scrape(request: Request) -> JSONResponse:
    orchestrator: ScrapeOrchestrator = request.app.state.orchestrator
    report = await orchestrator.run_cycle("manual")
    return JSONResponse(
        {
            "message": "Scraping completed" if report.ok else "Scraping failed",
            "result": report.to_dict(),
        },
        status_code=200 if report.ok else 500,
    )


@router.get("/alerts/scrape/status", dependencies=[Depends(require_admin)])
def scrape_status(request: Request) -> JSONResponse:
    orchestrator: ScrapeOrchestrator = request.app.state.orchestrator
    scheduler: ScrapeScheduler = request.app.state.scheduler
    last = orchestrator.last_report
    return JSONResponse(
        {
            "status": {
                "lastCycle": last.to_dict() if last else None,
                "runningCycles": orchestrator.running_cycles,
                "scheduler": scheduler.status(),
                "sources": list_source_health(request.app.state.db),
            }
        }
    )


@router.post("/alerts", dependencies=[Depends(require_admin)])
async def create_alert(request: Request, body: AlertIn) -> JSONResponse:
    try:
        fields = validate_manual_alert(body.model_dump(exclude_unset=True))
    except AlertValidationError as exc:
        return _validation_error(exc)

    store: AlertStore = request.app.state.store
    dispatcher: NotificationDispatcher = request.app.state.dispatcher
    now = _utc_now()
    issued_at = to_iso(now)
    alert = Alert(
        dedup_key=f"manual:{uuid.uuid4()}",
        type=fields["type"],
        severity=fields["severity"],
        title=fields["title"],
        description=fields["description"],
        affected_areas=fields.get("affected_areas") or [default_area()],
        source="manual",
        sources=["manual"],
        issued_at=issued_at,
        expires_at=fields.get("expires_at"),
        source_url=fields.get("source_url", ""),
        is_verified=True,
        priority=fields.get("priority")
        or compute_priority(fields["severity"], fields["type"], issued_at, now),
        instructions=fields.get("instructions") or list(DEFAULT_INSTRUCTIONS),
        tags=fields.get("tags") or [fields["type"]],
    )
    if "emergency_contacts" in fields:
        alert.emergency_contacts = fields["emergency_contacts"]
    stored = store.insert_manual(alert, now)
    logger.info("manual_alert_created", alert_id=stored.alert_id, severity=stored.severity)

    delivery = None
    if stored.severity in ("high", "critical"):
        delivery = await dispatcher.notify(stored, "insert")

    return JSONResponse(
        {
            "message": "Alert created successfully",
            "alert": stored.to_dict(),
            "delivery": delivery.to_dict() if delivery else None,
        },
        status_code=201,
    )


@router.get("/alerts/{alert_id}")
def get_alert(request: Request, alert_id: str) -> JSONResponse:
    query: QueryService = request.app.state.query
    alert = query.get(alert_id)
    if alert is None:
        return JSONResponse(_NOT_FOUND, status_code=404)
    return JSONResponse(alert.to_dict())


@router.put("/alerts/{alert_id}", dependencies=[Depends(require_admin)])
async def update_alert(request: Request, alert_id: str, body: AlertIn) -> JSONResponse:
    try:
        changes = validate_manual_alert(body.model_dump(exclude_unset=True), partial=True)
    except AlertValidationError as exc:
        return _validation_error(exc)

    store: AlertStore = request.app.state.store
    dispatcher: NotificationDispatcher = request.app.state.dispatcher
    result = store.update_fields(alert_id, changes)
    if result is None:
        return JSONResponse(_NOT_FOUND, status_code=404)
    alert, escalated = result

    delivery = None
    if escalated and alert.is_active:
        delivery = await dispatcher.notify(alert, "escalation")
    return JSONResponse(
        {
            "message": "Alert updated successfully",
            "alert": alert.to_dict(),
            "delivery": delivery.to_dict() if delivery else None,
        }
    )


@router.delete("/alerts/{alert_id}", dependencies=[Depends(require_admin)])
def deactivate_alert(request: Request, alert_id: str) -> JSONResponse:
    store: AlertStore = request.app.state.store
    if not store.deactivate(alert_id):
        return JSONResponse(_NOT_FOUND, status_code=404)
    return JSONResponse({"message": "Alert deactivated successfully"})


@router.post("/alerts/{alert_id}/verify", dependencies=[Depends(require_admin)])
def verify_alert(request: Request, alert_id: str) -> JSONResponse:
    store: AlertStore = request.app.state.store
    alert = store.verify(alert_id)
    if alert is None:
        return JSONResponse(_NOT_FOUND, status_code=404)
    return JSONResponse({"message": "Alert verified successfully", "alert": alert.to_dict()})


@router.post(
    "/alerts/{alert_id}/test-notification", dependencies=[Depends(require_admin)]
)
async def test_notification(request: Request, alert_id: str) -> JSONResponse:
    store: AlertStore = request.app.state.store
    dispatcher: NotificationDispatcher = request.app.state.dispatcher
    alert = store.get(alert_id)
    if alert is None:
        return JSONResponse(_NOT_FOUND, status_code=404)
    report = await dispatcher.notify(alert, "test")
    return JSONResponse({"message": "Test notification sent", "delivery": report.to_dict()})


def create_app(
    settings: Settings | None = None,
    *,
    source_client: httpx.AsyncClient | None = None,
    push_transport: PushTransport | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or Settings()
        setup_logging(cfg)
        db = open_database(cfg.db_path)
        store = AlertStore(db)
        adapters = build_registry(load_source_overrides(cfg.sources_file))
        ensure_sources(db, adapters.values())

        client = source_client or httpx.AsyncClient(follow_redirects=True)
        transport = push_transport or HttpPushTransport(
            user_agent=cfg.user_agent,
            timeout_seconds=cfg.notify_timeout_seconds,
            ttl_seconds=cfg.push_ttl_seconds,
        )
        subscriptions = SqliteSubscriptionRegistry(db)
        dispatcher = NotificationDispatcher(
            registry=subscriptions,
            transport=transport,
            store=store,
            concurrency=cfg.notify_concurrency,
        )
        bus = EventBus()
        orchestrator = ScrapeOrchestrator(
            adapters=adapters,
            store=store,
            dispatcher=dispatcher,
            client=client,
            settings=cfg,
            bus=bus,
        )
        scheduler = ScrapeScheduler(
            orchestrator,
            interval_seconds=cfg.scrape_interval_seconds,
            initial_delay_seconds=cfg.scrape_initial_delay_seconds,
        )

        app.state.settings = cfg
        app.state.db = db
        app.state.store = store
        app.state.bus = bus
        app.state.dispatcher = dispatcher
        app.state.orchestrator = orchestrator
        app.state.scheduler = scheduler
        app.state.query = QueryService(
            store=store, orchestrator=orchestrator, registry=subscriptions
        )

        if cfg.scrape_enabled:
            scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()
            await transport.close()
            if source_client is None:
                await client.aclose()
            close_database(db)

    app = FastAPI(title="Beacon Alerts", lifespan=lifespan)

    @app.exception_handler(_AdminRequired)
    async def _admin_required(request: Request, exc: _AdminRequired) -> JSONResponse:
        return JSONResponse({"error": "admin_required"}, status_code=403)

    app.include_router(router)
    app.include_router(sse_router)
    return app


app = create_app()

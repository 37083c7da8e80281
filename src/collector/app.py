"""FastAPI event collector service.

Accepts tracked events, validates and normalizes them, hands them to the
in-process bus and answers 202 right away. Transport, tenant provisioning and
storage happen afterwards, so clients only ever see acceptance or a
validation error. Also serves guarded ad-hoc queries over the caller's store.
"""

from contextlib import asynccontextmanager

import duckdb
from fastapi import Depends, FastAPI, HTTPException, Request, status
from loguru import logger
from pydantic import BaseModel

from src.collector.bus import BATCH_EVENTS_TRACKED, DEVICE_LINKED, EVENT_TRACKED
from src.collector.identity import extract_project_key
from src.collector.schemas import (
    AdHocQueryRequest,
    BatchAck,
    BatchTrackRequest,
    CanonicalEvent,
    EventAck,
    LinkDeviceRequest,
    TenantContext,
    TrackEventRequest,
)
from src.core.config import get_settings
from src.core.errors import (
    InvalidIdentifierError,
    NormalizationError,
    QueryRejectedError,
    StoreTimeoutError,
)
from src.core.logging import setup_logging
from src.pipeline.service import Pipeline

HTTP_422_UNPROCESSABLE = 422


class QueryResponse(BaseModel):
    columns: list[str]
    rows: list[dict]
    total_count: int
    execution_time_ms: float


class StoreInfoResponse(BaseModel):
    tenant_id: str
    store: str
    table: str
    database_exists: bool
    table_exists: bool
    row_count: int


def _ack(event: CanonicalEvent) -> EventAck:
    return EventAck(
        id=event.id,
        event_name=event.event_name,
        user_id=event.user_id,
        device_id=event.device_id,
        timestamp=event.timestamp,
    )


def create_app(pipeline: Pipeline | None = None) -> FastAPI:
    """Build the app. Without a pipeline one is built from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = pipeline is None
        if owned:
            settings = get_settings()
            setup_logging(settings)
            app.state.pipeline = Pipeline.from_settings(settings)
        else:
            app.state.pipeline = pipeline
        await app.state.pipeline.start()
        yield
        await app.state.pipeline.stop()
        if owned:
            app.state.pipeline.close()

    app = FastAPI(
        title="Event Collector",
        description="Multi-tenant event ingestion: track, queue, store, query.",
        version="0.3.0",
        lifespan=lifespan,
    )

    def get_pipeline(request: Request) -> Pipeline:
        return request.app.state.pipeline

    async def resolve_tenant(request: Request, body_key: str | None = None) -> TenantContext:
        key = extract_project_key(request, body_key)
        if not key:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Project key is required")
        tenant = await get_pipeline(request).project_keys.validate_project_key(key)
        if tenant is None:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid project key")
        return tenant

    def normalize_or_422(p: Pipeline, body: TrackEventRequest, tenant: TenantContext) -> CanonicalEvent:
        try:
            return p.normalizer.normalize(body, tenant)
        except NormalizationError as exc:
            raise HTTPException(HTTP_422_UNPROCESSABLE, detail=str(exc)) from exc

    @app.get("/health")
    async def health(p: Pipeline = Depends(get_pipeline)) -> dict:
        return {"status": "ok", "warehouse": await p.warehouse.ping()}

    @app.post("/events/track", response_model=EventAck, status_code=status.HTTP_202_ACCEPTED)
    async def track_event(
        body: TrackEventRequest, request: Request, p: Pipeline = Depends(get_pipeline)
    ) -> EventAck:
        """Accept one event for asynchronous processing."""
        tenant = await resolve_tenant(request, body.project_key)
        event = normalize_or_422(p, body, tenant)
        p.bus.publish(DEVICE_LINKED if event.is_device_link else EVENT_TRACKED, event)
        return _ack(event)

    @app.post("/events/track/batch", response_model=BatchAck, status_code=status.HTTP_202_ACCEPTED)
    async def track_batch(
        body: BatchTrackRequest, request: Request, p: Pipeline = Depends(get_pipeline)
    ) -> BatchAck:
        """Accept the valid events of a batch; report the invalid ones by index."""
        tenant = await resolve_tenant(request, body.project_key)
        try:
            result = p.normalizer.normalize_batch(body.events, tenant)
        except NormalizationError as exc:
            raise HTTPException(HTTP_422_UNPROCESSABLE, detail=str(exc)) from exc
        if not result.events:
            raise HTTPException(
                HTTP_422_UNPROCESSABLE,
                detail=[r.model_dump() for r in result.rejected],
            )

        links = [e for e in result.events if e.is_device_link]
        others = [e for e in result.events if not e.is_device_link]
        if others:
            p.bus.publish(BATCH_EVENTS_TRACKED, others)
        for event in links:
            p.bus.publish(DEVICE_LINKED, event)
        if result.rejected:
            logger.info("Batch for tenant {}: {} rejected event(s)", tenant.tenant_id, len(result.rejected))
        return BatchAck(accepted=[_ack(e) for e in result.events], rejected=result.rejected)

    @app.post("/events/link-device", response_model=EventAck, status_code=status.HTTP_202_ACCEPTED)
    async def link_device(
        body: LinkDeviceRequest, request: Request, p: Pipeline = Depends(get_pipeline)
    ) -> EventAck:
        """Record that a device belongs to a user; earlier anonymous rows get the user id."""
        tenant = await resolve_tenant(request, body.project_key)
        event = normalize_or_422(p, body.to_track_request(), tenant)
        p.bus.publish(DEVICE_LINKED, event)
        return _ack(event)

    @app.post("/analytics/query", response_model=QueryResponse)
    async def adhoc_query(
        body: AdHocQueryRequest, request: Request, p: Pipeline = Depends(get_pipeline)
    ) -> QueryResponse:
        tenant = await resolve_tenant(request, body.project_key)
        try:
            result = await p.query(tenant.tenant_id, body.sql)
        except QueryRejectedError as exc:
            logger.info("Rejected query for tenant {}: {}", tenant.tenant_id, exc.reason.value)
            raise HTTPException(
                status.HTTP_400_BAD_REQUEST,
                detail={"reason": exc.reason.value, "message": exc.message},
            ) from exc
        except InvalidIdentifierError as exc:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except StoreTimeoutError as exc:
            raise HTTPException(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Query timed out. Please narrow it down and try again.",
            ) from exc
        except duckdb.Error as exc:
            logger.warning("Ad-hoc query for tenant {} failed: {}", tenant.tenant_id, exc)
            raise HTTPException(
                status.HTTP_400_BAD_REQUEST,
                detail={"reason": "query_failed", "message": "The query could not be executed."},
            ) from exc
        return QueryResponse(**vars(result))

    @app.post("/tenants/store", response_model=StoreInfoResponse, status_code=status.HTTP_201_CREATED)
    async def provision_store(request: Request, p: Pipeline = Depends(get_pipeline)) -> StoreInfoResponse:
        """Create the caller's store ahead of the first event."""
        tenant = await resolve_tenant(request)
        try:
            await p.tenants.ensure(tenant.tenant_id)
        except InvalidIdentifierError as exc:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return StoreInfoResponse(**vars(await p.tenants.describe(tenant.tenant_id)))

    @app.get("/tenants/store", response_model=StoreInfoResponse)
    async def describe_store(request: Request, p: Pipeline = Depends(get_pipeline)) -> StoreInfoResponse:
        tenant = await resolve_tenant(request)
        try:
            info = await p.tenants.describe(tenant.tenant_id)
        except InvalidIdentifierError as exc:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return StoreInfoResponse(**vars(info))

    return app


app = create_app()

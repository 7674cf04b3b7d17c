"""FastAPI application entrypoint.

Configures CORS, includes routers, maps engine errors to JSON responses,
mounts the admin panel and exposes a healthcheck endpoint.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqladmin import Admin, ModelView
from starlette.middleware.sessions import SessionMiddleware
import logging
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .authentication import SimpleAuth
from .database import engine
from .deps import get_settings
from .exceptions import EngineError, OrganizationRateLimitError
from .routers import attribution as attribution_router
from .routers import backfill as backfill_router
from .routers import reconciliation as reconciliation_router
from .telemetry import capture_exception, init_observability

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


# SQLAdmin ModelView classes
# WHEN MAKING CHANGES TO THESE CLASSES, MAKE SURE TO UPDATE THE __str__ METHODS IN THE MODELS.PY FILE

class OrganizationAdmin(ModelView, model=models.Organization):
    column_list = [models.Organization.id, models.Organization.name, models.Organization.created_at]
    form_columns = ["name"]
    column_searchable_list = ["name"]
    column_sortable_list = ["name", "created_at"]
    name = "Organization"
    name_plural = "Organizations"
    icon = "fa-solid fa-building"


class BackfillJobAdmin(ModelView, model=models.BackfillJob):
    """Backfill jobs are created through the API; the panel is read-only."""
    column_list = [
        models.BackfillJob.id, models.BackfillJob.organization, models.BackfillJob.task_name,
        models.BackfillJob.status, models.BackfillJob.processed_chunks, models.BackfillJob.total_chunks,
        models.BackfillJob.failed_chunks, models.BackfillJob.started_at, models.BackfillJob.completed_at,
    ]
    column_sortable_list = ["status", "started_at", "completed_at"]
    can_create = False
    can_edit = False
    can_delete = False
    name = "Backfill Job"
    name_plural = "Backfill Jobs"
    icon = "fa-solid fa-clock-rotate-left"


class BackfillChunkAdmin(ModelView, model=models.BackfillChunk):
    column_list = [
        models.BackfillChunk.job_id, models.BackfillChunk.chunk_index, models.BackfillChunk.start_date,
        models.BackfillChunk.end_date, models.BackfillChunk.status, models.BackfillChunk.attempt_count,
        models.BackfillChunk.processed_rows, models.BackfillChunk.error_message,
    ]
    column_sortable_list = ["chunk_index", "status", "start_date"]
    can_create = False
    can_edit = False
    can_delete = False
    name = "Backfill Chunk"
    name_plural = "Backfill Chunks"
    icon = "fa-solid fa-layer-group"


class AttributionRecordAdmin(ModelView, model=models.AttributionRecord):
    column_list = [
        models.AttributionRecord.organization_id, models.AttributionRecord.granularity,
        models.AttributionRecord.attribution_key, models.AttributionRecord.campaign_name,
        models.AttributionRecord.match_method, models.AttributionRecord.confidence,
        models.AttributionRecord.attributed_revenue, models.AttributionRecord.last_matched_at,
    ]
    column_searchable_list = ["attribution_key", "campaign_name"]
    column_sortable_list = ["confidence", "attributed_revenue", "last_matched_at"]
    can_create = False
    can_delete = False
    name = "Attribution"
    name_plural = "Attribution Records"
    icon = "fa-solid fa-bullseye"


class RefcodeMappingAdmin(ModelView, model=models.RefcodeMapping):
    column_list = [
        models.RefcodeMapping.organization_id, models.RefcodeMapping.refcode, models.RefcodeMapping.platform,
        models.RefcodeMapping.campaign_name, models.RefcodeMapping.ad_id, models.RefcodeMapping.source,
        models.RefcodeMapping.updated_at,
    ]
    form_columns = ["refcode", "platform", "campaign_id", "campaign_name", "ad_id", "creative_id", "source"]
    column_searchable_list = ["refcode", "campaign_name"]
    column_sortable_list = ["refcode", "updated_at"]
    name = "Refcode Mapping"
    name_plural = "Refcode Mappings"
    icon = "fa-solid fa-link"


class ConversionEventAdmin(ModelView, model=models.ConversionEvent):
    column_list = [
        models.ConversionEvent.event_id, models.ConversionEvent.event_name, models.ConversionEvent.source_id,
        models.ConversionEvent.status, models.ConversionEvent.event_time,
    ]
    column_searchable_list = ["event_id", "source_id"]
    column_sortable_list = ["status", "event_time"]
    can_create = False
    can_edit = False
    can_delete = False
    name = "Conversion Event"
    name_plural = "Conversion Events"
    icon = "fa-solid fa-paper-plane"


def create_app() -> FastAPI:
    app = FastAPI(
        title="DonorLink Attribution API",
        description="""
        Donation attribution and reconciliation engine.

        This API provides endpoints for:
        - Chunked, resumable transaction backfills from the payment processor
        - Refcode-to-campaign auto-matching and historical attribution
        - Reconciliation against the processor's exports
        - Detection of donations attributed to another donor's click

        ## Authentication

        Scheduled jobs send the `x-cron-secret` header. Users authenticate with
        a JWT in the `access_token` cookie or an `Authorization: Bearer` header.
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto headers from load balancers
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()
    observability = init_observability()
    logger.info("[STARTUP] Observability: %s", observability)

    if settings.ADMIN_SECRET_KEY == "supersecretkey-change-this-in-production":
        logger.warning("[STARTUP] Using default admin secret key. Set ADMIN_SECRET_KEY for production.")

    # Session middleware for admin panel authentication
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.ADMIN_SECRET_KEY
    )

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info("[CORS] Allowed origins: %s", allowed_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        headers = None
        if isinstance(exc, OrganizationRateLimitError):
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.message)
            capture_exception(exc, extra={"path": request.url.path, "organization_id": exc.organization_id})
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    app.include_router(backfill_router.router)
    app.include_router(attribution_router.router)
    app.include_router(reconciliation_router.router)

    @app.get("/health", tags=["Health"], summary="Health check")
    def health():
        return {"status": "ok"}

    # Admin panel
    authentication_backend = SimpleAuth(secret_key=settings.ADMIN_SECRET_KEY)
    admin = Admin(
        app,
        engine,
        title="DonorLink Admin",
        authentication_backend=authentication_backend
    )
    admin.add_view(OrganizationAdmin)
    admin.add_view(BackfillJobAdmin)
    admin.add_view(BackfillChunkAdmin)
    admin.add_view(AttributionRecordAdmin)
    admin.add_view(RefcodeMappingAdmin)
    admin.add_view(ConversionEventAdmin)

    return app


app = create_app()

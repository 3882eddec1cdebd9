import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.backend.api.v1.routes_charts import router as charts_router_v1
from src.backend.api.v1.routes_compliance import router as compliance_router_v1
from src.backend.api.v1.routes_system import router as system_router_v1
from src.backend.config import settings
from src.backend.domain.errors import ChartError
from src.backend.infra.db.bootstrap import init_sql_repositories
from src.backend.security import get_current_subject

logger = logging.getLogger("charts")

app = FastAPI(title="Clinical Chart Lifecycle API")

_ERROR_STATUS = {
    "not_found": 404,
    "document_not_available": 404,
    "invalid_transition": 409,
    "chart_locked": 409,
    "concurrency_conflict": 409,
    "validation_error": 422,
    "renderer_unavailable": 503,
}


@app.on_event("startup")
async def on_startup() -> None:
    """Application startup hook.

    When USE_SQL_REPOS is enabled and a DATABASE_URL is configured, this
    swaps in the SQL-backed chart store. In other environments (tests, local
    dev without a database) the in-memory store remains active.
    """

    init_sql_repositories()


@app.exception_handler(ChartError)
async def chart_error_handler(request: Request, exc: ChartError) -> JSONResponse:
    status_code = _ERROR_STATUS.get(exc.code, 400)
    logger.info(
        "Rejected %s %s for %s: %s (%s)",
        request.method,
        request.url.path,
        get_current_subject() or "anonymous",
        exc.code,
        exc.message,
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# CORS configuration: permissive by default for development. Tighten via
# CORS_ALLOW_ORIGINS in production deployments.
allow_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    """Basic liveness probe for the API root."""
    return {"status": "ok"}


# Versioned API routers
app.include_router(system_router_v1, prefix="/api/v1")
app.include_router(charts_router_v1, prefix="/api/v1")
app.include_router(compliance_router_v1, prefix="/api/v1")

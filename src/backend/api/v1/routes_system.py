from fastapi import APIRouter

from src.backend.config import settings

router = APIRouter(prefix="", tags=["system"])


@router.get("/health")
async def health_check_v1() -> dict:
    """API v1 health endpoint."""
    return {"status": "ok", "version": "v1"}


@router.get("/system/renderer")
async def renderer_status_v1() -> dict:
    """Which document renderer backend is configured (no connectivity check)."""

    return {
        "backend": settings.renderer_backend.lower(),
        "configured": settings.renderer_backend.lower() != "http" or bool(settings.renderer_url),
        "timeout_ms": settings.renderer_timeout_ms,
    }

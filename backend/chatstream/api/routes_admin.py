"""Administrative API endpoints."""
from fastapi import APIRouter, Depends
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..chat.services import ChatServices, get_chat_services

router = APIRouter()


@router.get("/health", summary="Readiness check")
async def admin_health(services: ChatServices = Depends(get_chat_services)) -> dict[str, str]:
    """Report liveness plus whether the history cache answers."""

    cache_ok = await services.cache.ping()
    return {"status": "ok", "cache": "ok" if cache_ok else "degraded"}


@router.get("/metrics", summary="Prometheus metrics feed")
async def admin_metrics() -> Response:
    """Expose Prometheus-formatted metrics for scraping."""

    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from companyos.core.config import get_settings
from companyos.crm.api import leads_router
from companyos.metrics import generate_metrics_payload, metrics_content_type
from companyos.ops.api import tickets_router

router = APIRouter()
router.include_router(leads_router)
router.include_router(tickets_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())

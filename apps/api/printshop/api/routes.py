from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from printshop.business.admin.api import router as admin_billing_router
from printshop.business.codes.api import admin_router as admin_codes_router, router as codes_router
from printshop.business.entitlements.api import router as subscriptions_router
from printshop.business.invoices.api import router as invoices_router
from printshop.business.payments.api import router as payments_router
from printshop.core.auth import AuthUser, get_current_user
from printshop.core.config import get_settings
from printshop.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(subscriptions_router)
router.include_router(codes_router)
router.include_router(payments_router)
router.include_router(invoices_router)
router.include_router(admin_billing_router)
router.include_router(admin_codes_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())

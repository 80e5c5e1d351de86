from fastapi import APIRouter

from .endpoints import (
    audiences,
    campaigns,
    health,
    observability,
    promo_codes,
    sends,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(audiences.router)
router.include_router(promo_codes.router)
router.include_router(campaigns.router)
router.include_router(sends.router)
router.include_router(observability.router)

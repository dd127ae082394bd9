from fastapi import APIRouter

from .endpoints import observability, redemptions, scanners

router = APIRouter()
router.include_router(redemptions.router)
router.include_router(scanners.router)
router.include_router(observability.router)

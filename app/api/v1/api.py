from fastapi import APIRouter

from app.api.v1 import health
from app.api.v1.endpoints import applications, renewals, reviews
from app.schemas import COMMON_RESPONSES

# Router principal avec réponses RFC 9457 par défaut
router = APIRouter(responses=COMMON_RESPONSES)

router.include_router(health.router, tags=["health"])
router.include_router(applications.router, prefix="/applications", tags=["applications"])
router.include_router(renewals.router, prefix="/renewals", tags=["renewals"])
router.include_router(reviews.router, prefix="/reviews", tags=["reviews"])

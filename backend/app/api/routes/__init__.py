from fastapi import APIRouter

from app.api.routes.groups import router as groups_router
from app.api.routes.health import router as health_router
from app.api.routes.social import router as social_router
from app.api.routes.users import router as users_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(users_router, prefix="/users", tags=["users"])
router.include_router(social_router, prefix="/social", tags=["social"])
router.include_router(groups_router, prefix="/groups", tags=["groups"])

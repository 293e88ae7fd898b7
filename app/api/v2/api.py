from fastapi import APIRouter

from .endpoints import (
    incentives_router,
    notification_ws,
    progress_router,
    streak_router,
)

api_router = APIRouter()

api_router.include_router(progress_router.router, prefix="/progress", tags=["Progress"])
api_router.include_router(incentives_router.router, prefix="/incentives", tags=["Incentives"])
api_router.include_router(streak_router.router, prefix="/streaks", tags=["Streaks"])
api_router.include_router(notification_ws.router, tags=["Notifications"])

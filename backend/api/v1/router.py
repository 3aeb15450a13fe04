"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
This makes it trivial to add /api/v2 later without touching existing routes.
"""

from fastapi import APIRouter

from api.routes import schedules

api_v1_router = APIRouter()

# Schedules
api_v1_router.include_router(
    schedules.router,
    prefix="/schedules",
    tags=["Schedules"],
)

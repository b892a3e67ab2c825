from fastapi import APIRouter

from app.api.v1 import alerts, events, experiments, health, reports

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(events.router, prefix="/events", tags=["events"])
api_router.include_router(experiments.router, prefix="/experiments", tags=["experiments"])
api_router.include_router(reports.router, prefix="/reports", tags=["reports"])
api_router.include_router(alerts.router, prefix="/alerts", tags=["alerts"])

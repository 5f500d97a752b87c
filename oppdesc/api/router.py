from fastapi import APIRouter

from oppdesc.api.routes import health, opportunities

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(opportunities.router, prefix="/opportunities", tags=["opportunities"])

"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from stylelab.api.optimization import router as optimization_router
from stylelab.api.tracking import router as tracking_router
from stylelab.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(optimization_router)
api_router.include_router(tracking_router)
api_router.include_router(health_router)

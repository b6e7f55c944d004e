"""API v1 module."""

from fastapi import APIRouter

from parkchain.api.v1.endpoints import realtime

api_router = APIRouter()

# Include routers
api_router.include_router(realtime.router)

from fastapi import APIRouter

from .v1 import ai, continuity, jobs

api_router = APIRouter()
api_router.include_router(ai.router, prefix="/v1")
api_router.include_router(continuity.router, prefix="/v1")
api_router.include_router(jobs.router, prefix="/v1")

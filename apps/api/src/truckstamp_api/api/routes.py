from fastapi import APIRouter

from .v1 import api_router as v1_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(v1_router)

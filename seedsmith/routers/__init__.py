from fastapi import APIRouter

from seedsmith.routers import seeding

api_router = APIRouter()
api_router.include_router(seeding.router)

__all__ = ["api_router"]

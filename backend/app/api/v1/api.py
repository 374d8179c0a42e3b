from fastapi import APIRouter

from .routers import safety

api_router = APIRouter()

# Include all API routes
api_router.include_router(safety.router)

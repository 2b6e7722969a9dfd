from fastapi import APIRouter

from termsync.api.routes import batches, health, maintenance, relationships, sync

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sync.router, tags=["sync"])
api_router.include_router(batches.router, prefix="/batch-sync", tags=["batch"])
api_router.include_router(relationships.router, tags=["relationships"])
api_router.include_router(maintenance.router, tags=["maintenance"])

from fastapi import APIRouter

from sealguard.api.v1.endpoints import fields, scans, seals, sessions

# Create the main API router
router = APIRouter()

# Include all endpoint routers
router.include_router(sessions.router, prefix="/sessions", tags=["sessions"])
router.include_router(scans.router, prefix="/sessions", tags=["scans"])
router.include_router(fields.router, prefix="/sessions", tags=["fields"])
router.include_router(seals.router, tags=["seals"])

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sealguard import __version__
from sealguard.api.v1.api import router as api_router
from sealguard.config import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(title="Sealguard Verification API", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check route
@app.get("/health")
def health_check():
    return {"status": "ok", "service_id": settings.SERVICE_ID}


# Include v1 routers
app.include_router(api_router, prefix="/api/v1")

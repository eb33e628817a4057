import logging
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.src.config import get_settings
from api.src.permissions import PermissionTable
from api.src.routes import health_router, ci_router, webhooks_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)
settings = get_settings()

@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.permissions = PermissionTable.from_settings(settings)
    logger.info(f"Starting Patr CI API with roles {sorted(app.state.permissions.roles())}")
    yield
    logger.info("Shutting down Patr CI API")

app = FastAPI(
    title="Patr CI",
    description="Pipeline execution engine of the Patr control plane",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(ci_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")

@app.get("/")
async def root():
    return {
        "name": "Patr CI",
        "version": "0.1.0",
        "docs": "/docs"
    }

"""LoadVoice - Freight CRM core API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app.core.config import get_settings
from app.core.logging import configure_logging, logger
from app.routers import loads, quality


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "LoadVoice API starting",
        version="0.1.0",
        app_mode=settings.normalized_app_mode(),
        auth_enabled=settings.auth_enabled,
    )
    yield
    # Shutdown
    logger.info("LoadVoice API shutting down")


app = FastAPI(
    title="LoadVoice API",
    description="Freight broker CRM core - load lifecycle, rate confirmations, and call extraction review",
    version="0.1.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(loads.router)
app.include_router(quality.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "LoadVoice API",
        "version": "0.1.0",
        "description": "Freight broker CRM core",
        "endpoints": {
            "loads": "/loads",
            "quality": "/quality",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}

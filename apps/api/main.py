"""
Morntool Payments - FastAPI Backend
Main application entry point with health check and API routing.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import resolve_deployment_region, settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import billing, health, payment


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print(f"🚀 Starting Morntool Payments API (region={resolve_deployment_region()})...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Morntool Payments API",
    description="Membership checkout, payment confirmation and credit grants for CN and INTL deployments",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(payment.router, prefix="/payment", tags=["Payment"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Morntool Payments API",
        "version": "0.1.0",
        "region": resolve_deployment_region(),
        "status": "running"
    }

"""
Instagen Credits - FastAPI Backend
Credits ledger, consumption gateway and payment reconciliation API.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import billing, credits, health
from services.credit_types import CreditStoreUnavailable

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    print("🚀 Starting Instagen Credits API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        print("🗄️ Credits schema verified.")
    if not settings.BILLING_ENABLED:
        logger.warning("Billing is disabled; checkout and manual reconciliation will return 503.")
    yield
    await engine.dispose()
    print("👋 Shutting down Instagen Credits API...")


app = FastAPI(
    title="Instagen Credits API",
    description="Credits balance, consumption and payment reconciliation for Instagen",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CreditStoreUnavailable)
async def credit_store_unavailable_handler(request: Request, exc: CreditStoreUnavailable):
    # Last resort for paths that do not map the error themselves; nothing was applied.
    logger.error("Unhandled credits store failure on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": {"message": "Credits store unavailable.", "retryable": True}},
    )


app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    return {
        "name": "Instagen Credits API",
        "version": "0.1.0",
        "status": "running",
        "billing_enabled": settings.BILLING_ENABLED,
    }

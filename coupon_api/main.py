"""
Coupon API - FastAPI Application Entry Point

Coupon eligibility and discount engine with:
- Cognito JWT authentication
- Admin coupon management and issuance
- Validation previews for customers
- PostgreSQL coupon, issuance and usage ledger
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Type

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coupon_api.config import get_settings
from coupon_api.db.database import init_db
from coupon_api.exceptions import (
    ConcurrencyError,
    ConflictError,
    CouponError,
    IneligibleError,
    NotFoundError,
    ValidationError,
)
from coupon_api.routers import coupons_router, health_router
from coupon_api.services.cognito import cognito_service

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_STATUS: Dict[Type[CouponError], int] = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    IneligibleError: status.HTTP_400_BAD_REQUEST,
    ConflictError: status.HTTP_409_CONFLICT,
    ConcurrencyError: status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Creates missing tables on startup and closes the JWKS HTTP client on
    shutdown.
    """
    logger.info(f"Starting Coupon API ({settings.app_env})")
    logger.info(f"CORS origins: {settings.cors_origins}")
    await init_db()

    yield

    logger.info("Shutting down Coupon API")
    await cognito_service.close()


app = FastAPI(
    title="Coupon API",
    description="Coupon eligibility and discount engine",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CouponError)
async def coupon_error_handler(request: Request, exc: CouponError) -> JSONResponse:
    """Render coupon engine errors as ``{"detail", "code", "errors"?}``."""
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc!r}")

    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, ValidationError):
        content["errors"] = exc.errors
    return JSONResponse(status_code=status_code, content=content)


app.include_router(health_router)
app.include_router(coupons_router)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Coupon API",
        "version": "1.0.0",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "coupon_api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=not settings.is_production,
    )

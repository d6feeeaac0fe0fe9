"""API routers for the coupon service."""

from coupon_api.routers.coupons import router as coupons_router
from coupon_api.routers.health import router as health_router

__all__ = [
    "coupons_router",
    "health_router",
]

"""Service modules for the coupon API."""

from coupon_api.services.catalog import CatalogService, catalog_service
from coupon_api.services.cognito import CognitoService, cognito_service
from coupon_api.services.coupon_service import CouponService, coupon_service

__all__ = [
    "CatalogService",
    "catalog_service",
    "CognitoService",
    "cognito_service",
    "CouponService",
    "coupon_service",
]

"""SQLAlchemy models for the coupon database."""

from coupon_api.models.coupon import Coupon, CouponIssuance, CouponUsage
from coupon_api.models.product import Category, Product
from coupon_api.models.user import User

__all__ = [
    "User",
    "Category",
    "Product",
    "Coupon",
    "CouponIssuance",
    "CouponUsage",
]

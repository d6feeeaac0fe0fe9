"""Coupon administration, issuance and validation endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from coupon_api.config import get_settings
from coupon_api.db.database import get_db
from coupon_api.dependencies import get_current_user_with_db, require_admin
from coupon_api.models.coupon import Coupon, CouponIssuance, IssuanceChannel
from coupon_api.models.user import User
from coupon_api.services.coupon_service import (
    CartItem,
    CouponListOptions,
    coupon_service,
)

router = APIRouter(prefix="/coupons", tags=["Coupons"])
settings = get_settings()


class CouponCreateRequest(BaseModel):
    """Request model for creating a coupon."""

    code: str
    name: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    minimum_order_amount: Optional[Decimal] = None
    maximum_discount_amount: Optional[Decimal] = None
    expiration_date: datetime
    usage_limit: Optional[int] = None
    issuance_limit: Optional[int] = None
    user_usage_limit: Optional[int] = None
    applicable_products: List[uuid.UUID] = []
    applicable_categories: List[uuid.UUID] = []
    excluded_products: List[uuid.UUID] = []
    excluded_categories: List[uuid.UUID] = []
    allowed_users: List[uuid.UUID] = []
    excluded_users: List[uuid.UUID] = []
    is_first_time_user_only: bool = False


class CouponUpdateRequest(BaseModel):
    """Request model for updating a coupon. Only fields sent are changed."""

    code: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    minimum_order_amount: Optional[Decimal] = None
    maximum_discount_amount: Optional[Decimal] = None
    expiration_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    issuance_limit: Optional[int] = None
    user_usage_limit: Optional[int] = None
    applicable_products: Optional[List[uuid.UUID]] = None
    applicable_categories: Optional[List[uuid.UUID]] = None
    excluded_products: Optional[List[uuid.UUID]] = None
    excluded_categories: Optional[List[uuid.UUID]] = None
    allowed_users: Optional[List[uuid.UUID]] = None
    excluded_users: Optional[List[uuid.UUID]] = None
    is_first_time_user_only: Optional[bool] = None
    is_active: Optional[bool] = None


class CouponResponse(BaseModel):
    """Response model for a coupon with its derived state."""

    id: uuid.UUID
    code: str
    name: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    minimum_order_amount: Decimal
    maximum_discount_amount: Optional[Decimal] = None
    expiration_date: datetime
    usage_limit: Optional[int] = None
    used_count: int
    issuance_limit: Optional[int] = None
    issued_count: int
    user_usage_limit: int
    applicable_products: List[str]
    applicable_categories: List[str]
    excluded_products: List[str]
    excluded_categories: List[str]
    allowed_users: List[str]
    excluded_users: List[str]
    is_first_time_user_only: bool
    is_active: bool
    is_expired: bool
    is_valid: bool
    remaining_uses: Optional[int] = None
    remaining_issuances: Optional[int] = None
    created_by: uuid.UUID
    updated_by: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: datetime


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int


class CouponListResponse(BaseModel):
    """Response model for a page of coupons."""

    coupons: List[CouponResponse]
    pagination: Pagination


class CartItemRequest(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(1, ge=1)


class ValidateCouponRequest(BaseModel):
    """Request model for previewing a coupon against an order."""

    order_amount: Decimal
    cart_items: List[CartItemRequest] = []
    is_first_order: Optional[bool] = Field(
        None,
        description="Client-asserted first-order flag, used for the preview only",
    )


class CouponSummary(BaseModel):
    code: str
    name: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    maximum_discount_amount: Optional[Decimal] = None
    expiration_date: datetime


class ValidateCouponResponse(BaseModel):
    """Response model for a coupon preview."""

    valid: bool
    discount_amount: Decimal
    applicable_amount: Decimal
    final_amount: Decimal
    reason: Optional[str] = None
    coupon: Optional[CouponSummary] = None
    user_remaining_uses: Optional[int] = None


class IssueCouponRequest(BaseModel):
    """Request model for issuing a coupon to users."""

    user_ids: List[uuid.UUID]
    channel: str = IssuanceChannel.ADMIN.value


class IssuanceResult(BaseModel):
    user_id: uuid.UUID
    status: Optional[str] = None
    error: Optional[str] = None


class IssueCouponResponse(BaseModel):
    """Response model for a bulk issuance."""

    successful: List[IssuanceResult]
    failed: List[IssuanceResult]
    total_issued: int
    total_failed: int


class UsageStatsResponse(BaseModel):
    total_uses: int
    remaining_uses: Optional[int] = None
    total_discount_given: Decimal
    unique_users: int
    average_discount_per_use: Decimal
    usage_by_day: Dict[str, int]


class IssuanceRecord(BaseModel):
    user_id: uuid.UUID
    issued_by: Optional[uuid.UUID] = None
    channel: str
    status: str
    issued_at: datetime


class IssuanceStatsResponse(BaseModel):
    total_issued: int
    remaining_issuances: Optional[int] = None
    issuance_limit: Optional[int] = None
    issued_to: List[IssuanceRecord]
    channel_breakdown: Dict[str, int]
    recent_issuances: List[IssuanceRecord]


def serialize_coupon(coupon: Coupon) -> Dict[str, Any]:
    """Flatten a coupon and its derived state for a response."""
    return {
        "id": coupon.id,
        "code": coupon.code,
        "name": coupon.name,
        "description": coupon.description,
        "discount_type": coupon.discount_type,
        "discount_value": coupon.discount_value,
        "minimum_order_amount": coupon.minimum_order_amount,
        "maximum_discount_amount": coupon.maximum_discount_amount,
        "expiration_date": coupon.expiration_date,
        "usage_limit": coupon.usage_limit,
        "used_count": coupon.used_count,
        "issuance_limit": coupon.issuance_limit,
        "issued_count": coupon.issued_count,
        "user_usage_limit": coupon.user_usage_limit,
        "applicable_products": coupon.applicable_products,
        "applicable_categories": coupon.applicable_categories,
        "excluded_products": coupon.excluded_products,
        "excluded_categories": coupon.excluded_categories,
        "allowed_users": coupon.allowed_users,
        "excluded_users": coupon.excluded_users,
        "is_first_time_user_only": coupon.is_first_time_user_only,
        "is_active": coupon.is_active,
        "is_expired": coupon.is_expired(),
        "is_valid": coupon.is_valid(),
        "remaining_uses": coupon.remaining_uses,
        "remaining_issuances": coupon.remaining_issuances,
        "created_by": coupon.created_by,
        "updated_by": coupon.updated_by,
        "created_at": coupon.created_at,
        "updated_at": coupon.updated_at,
    }


def serialize_issuance(issuance: CouponIssuance) -> Dict[str, Any]:
    return {
        "user_id": issuance.user_id,
        "issued_by": issuance.issued_by,
        "channel": issuance.channel,
        "status": issuance.status,
        "issued_at": issuance.issued_at,
    }


@router.post("", response_model=CouponResponse, status_code=status.HTTP_201_CREATED)
async def create_coupon(
    request: CouponCreateRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Create a new coupon.

    Requires admin access.

    Raises:
        ValidationError(422): If any field is invalid.
        ConflictError(409): If the code already exists.
    """
    coupon = await coupon_service.create_coupon(
        db,
        request.model_dump(exclude_unset=True),
        created_by=admin.id,
    )
    return serialize_coupon(coupon)


@router.get("", response_model=CouponListResponse)
async def list_coupons(
    page: int = Query(1),
    limit: int = Query(settings.coupon_page_size),
    status_filter: Optional[str] = Query(None, alias="status"),
    discount_type: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc"),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    List coupons with filtering, sorting and pagination.

    Requires admin access.
    """
    options = CouponListOptions(
        page=page,
        limit=limit,
        status=status_filter,
        discount_type=discount_type,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    coupons, pagination = await coupon_service.list_coupons(db, options)
    return {
        "coupons": [serialize_coupon(coupon) for coupon in coupons],
        "pagination": pagination,
    }


@router.get("/available", response_model=List[CouponResponse])
async def get_available_coupons(
    order_amount: Optional[Decimal] = Query(None),
    user: User = Depends(get_current_user_with_db),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    """
    List coupons the current user could redeem right now.

    Pass ``order_amount`` to hide coupons whose minimum order is higher.
    """
    coupons = await coupon_service.get_available_coupons(db, user.id, order_amount)
    return [serialize_coupon(coupon) for coupon in coupons]


@router.post("/validate/{code}", response_model=ValidateCouponResponse)
async def validate_coupon(
    code: str,
    request: ValidateCouponRequest,
    user: User = Depends(get_current_user_with_db),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Preview the discount a coupon would give the current user.

    Nothing is redeemed. Ineligible coupons return ``valid: false`` with the
    reason.

    ``is_first_order`` is taken from the request as-is, so a first-order-only
    coupon previews as valid whenever the client says so. Redemption never
    reads it from the client: the order pipeline passes its own value to
    ``apply_coupon_to_order``.

    Raises:
        NotFoundError(404): If the code does not exist.
    """
    validation = await coupon_service.validate_coupon(
        db,
        code,
        request.order_amount,
        cart_items=[CartItem(item.product_id, item.quantity) for item in request.cart_items],
        user_id=user.id,
        is_first_order=request.is_first_order,
    )

    coupon = validation.coupon
    return {
        "valid": validation.valid,
        "discount_amount": validation.discount_amount,
        "applicable_amount": validation.applicable_amount,
        "final_amount": validation.final_amount,
        "reason": validation.reason,
        "coupon": {
            "code": coupon.code,
            "name": coupon.name,
            "description": coupon.description,
            "discount_type": coupon.discount_type,
            "discount_value": coupon.discount_value,
            "maximum_discount_amount": coupon.maximum_discount_amount,
            "expiration_date": coupon.expiration_date,
        },
        "user_remaining_uses": validation.user_remaining_uses,
    }


@router.get("/{coupon_id}", response_model=CouponResponse)
async def get_coupon(
    coupon_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Fetch a single coupon. Requires admin access."""
    coupon = await coupon_service.get_coupon(db, coupon_id)
    return serialize_coupon(coupon)


@router.put("/{coupon_id}", response_model=CouponResponse)
async def update_coupon(
    coupon_id: uuid.UUID,
    request: CouponUpdateRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Update a coupon.

    Requires admin access. Counters and history cannot be edited.

    Raises:
        NotFoundError(404): If the coupon does not exist.
        ValidationError(422): If the updated coupon would be invalid.
        ConflictError(409): If the new code already exists.
    """
    coupon = await coupon_service.update_coupon(
        db,
        coupon_id,
        request.model_dump(exclude_unset=True),
        updated_by=admin.id,
    )
    return serialize_coupon(coupon)


@router.delete("/{coupon_id}")
async def delete_coupon(
    coupon_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, str]:
    """
    Delete a coupon that has never been used.

    Raises:
        ConflictError(409): If the coupon has been used.
    """
    await coupon_service.delete_coupon(db, coupon_id)
    return {"message": "Coupon deleted successfully"}


@router.get("/{coupon_id}/stats", response_model=UsageStatsResponse)
async def get_usage_stats(
    coupon_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Usage statistics for a coupon. Requires admin access."""
    return await coupon_service.get_usage_stats(db, coupon_id)


@router.post("/{coupon_id}/issue", response_model=IssueCouponResponse)
async def issue_coupon(
    coupon_id: uuid.UUID,
    request: IssueCouponRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Issue a coupon to a list of users.

    Failures for individual users are reported, not raised.

    Raises:
        IneligibleError(400): If the coupon cannot be issued at all.
    """
    report = await coupon_service.issue_coupon_to_users(
        db,
        coupon_id,
        request.user_ids,
        issued_by=admin.id,
        channel=request.channel,
    )
    return {
        "successful": report.successful,
        "failed": report.failed,
        "total_issued": report.total_issued,
        "total_failed": report.total_failed,
    }


@router.get("/{coupon_id}/issuance-stats", response_model=IssuanceStatsResponse)
async def get_issuance_stats(
    coupon_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Issuance statistics for a coupon. Requires admin access."""
    stats = await coupon_service.get_issuance_stats(db, coupon_id)
    stats["issued_to"] = [serialize_issuance(issue) for issue in stats["issued_to"]]
    stats["recent_issuances"] = [
        serialize_issuance(issue) for issue in stats["recent_issuances"]
    ]
    return stats

"""
Coupon eligibility and discount engine.

Handles:
- Coupon administration (create, update, delete, list)
- Validation previews and redemption at order finalisation
- Issuance of limited coupons to specific users
- Usage and issuance statistics
"""

import logging
import math
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coupon_api.config import get_settings
from coupon_api.exceptions import (
    ConcurrencyError,
    ConflictError,
    IneligibleError,
    NotFoundError,
    ValidationError,
)
from coupon_api.models.coupon import (
    ZERO,
    Coupon,
    CouponIssuance,
    CouponUsage,
    IssuanceChannel,
    IssuanceStatus,
    round_currency,
    to_decimal,
    utcnow,
)
from coupon_api.services.catalog import catalog_service
from coupon_api.services.validation import (
    normalize_code,
    validate_channel,
    validate_coupon_fields,
)

logger = logging.getLogger(__name__)

# Fields an admin may set directly. Counters and ledgers are excluded.
EDITABLE_FIELDS = (
    "code",
    "name",
    "description",
    "discount_type",
    "discount_value",
    "minimum_order_amount",
    "maximum_discount_amount",
    "expiration_date",
    "usage_limit",
    "issuance_limit",
    "user_usage_limit",
    "applicable_products",
    "applicable_categories",
    "excluded_products",
    "excluded_categories",
    "allowed_users",
    "excluded_users",
    "is_first_time_user_only",
    "is_active",
)

ID_LIST_FIELDS = (
    "applicable_products",
    "applicable_categories",
    "excluded_products",
    "excluded_categories",
    "allowed_users",
    "excluded_users",
)

SORT_FIELDS = {
    "created_at": Coupon.created_at,
    "updated_at": Coupon.updated_at,
    "expiration_date": Coupon.expiration_date,
    "used_count": Coupon.used_count,
    "code": Coupon.code,
    "name": Coupon.name,
}

STATUS_FILTERS = ("active", "expired", "inactive")


@dataclass
class CartItem:
    """One cart line as supplied by the caller."""

    product_id: uuid.UUID
    quantity: int


@dataclass
class CouponListOptions:
    """Typed filters for the admin coupon listing."""

    page: int = 1
    limit: int = 20
    status: Optional[str] = None
    discount_type: Optional[str] = None
    search: Optional[str] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"


@dataclass
class CouponValidation:
    """Result of a read-only validation preview."""

    valid: bool
    discount_amount: Decimal
    applicable_amount: Decimal
    final_amount: Decimal
    reason: Optional[str] = None
    coupon: Optional[Coupon] = None
    user_remaining_uses: Optional[int] = None


@dataclass
class CouponApplication:
    """Result of redeeming a coupon against an order."""

    discount_amount: Decimal
    applicable_amount: Decimal
    coupon_details: Dict[str, Any]


@dataclass
class IssuanceReport:
    """Per-user outcome of a bulk issuance."""

    successful: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_issued(self) -> int:
        return len(self.successful)

    @property
    def total_failed(self) -> int:
        return len(self.failed)


def _id_list(values: Optional[Iterable[Any]]) -> List[str]:
    """Normalise an ID list to unique strings, keeping order."""
    seen: List[str] = []
    for value in values or []:
        text = str(uuid.UUID(str(value)))
        if text not in seen:
            seen.append(text)
    return seen


def is_item_applicable(
    coupon: Coupon,
    product_id: str,
    category_id: Optional[str],
) -> bool:
    """
    Decide whether a product may be discounted by the coupon.

    Exclusions are checked first. When both allow-lists are set the item
    must appear in both.
    """
    if product_id in coupon.excluded_products:
        return False
    if category_id is not None and category_id in coupon.excluded_categories:
        return False
    if coupon.applicable_products and product_id not in coupon.applicable_products:
        return False
    if coupon.applicable_categories and (
        category_id is None or category_id not in coupon.applicable_categories
    ):
        return False
    return True


def build_coupon_filters(options: CouponListOptions, now: datetime) -> List[Any]:
    """Translate listing options into SQLAlchemy where-clauses."""
    filters: List[Any] = []

    if options.status == "active":
        filters.append(Coupon.is_active.is_(True))
        filters.append(Coupon.expiration_date > now)
    elif options.status == "expired":
        filters.append(Coupon.expiration_date <= now)
    elif options.status == "inactive":
        filters.append(Coupon.is_active.is_(False))

    if options.discount_type:
        filters.append(Coupon.discount_type == options.discount_type)

    if options.search:
        filters.append(
            or_(
                Coupon.code.icontains(options.search, autoescape=True),
                Coupon.name.icontains(options.search, autoescape=True),
                Coupon.description.icontains(options.search, autoescape=True),
            )
        )

    return filters


def valid_coupon_filters(now: datetime) -> List[Any]:
    """Where-clauses matching coupons redeemable by someone right now."""
    return [
        Coupon.is_active.is_(True),
        Coupon.expiration_date > now,
        or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
    ]


class CouponService:
    """
    Service for coupon administration, eligibility and redemption.

    Eligibility decisions are pure functions of a loaded coupon and the
    clock. Counter changes go through conditional UPDATE statements so
    concurrent requests can never push a coupon past its limits.
    """

    def __init__(self):
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def find_by_code(self, db: AsyncSession, code: str) -> Optional[Coupon]:
        """Case-insensitive exact match on the coupon code."""
        result = await db.execute(
            select(Coupon)
            .where(Coupon.code == normalize_code(code))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_code(self, db: AsyncSession, code: str) -> Coupon:
        coupon = await self.find_by_code(db, code)
        if not coupon:
            raise NotFoundError("Invalid coupon code")
        return coupon

    async def get_coupon(self, db: AsyncSession, coupon_id: uuid.UUID) -> Coupon:
        """
        Fetch a coupon by ID with its issuance and usage records.

        Raises:
            NotFoundError: If no coupon has this ID.
        """
        result = await db.execute(
            select(Coupon)
            .where(Coupon.id == coupon_id)
            .execution_options(populate_existing=True)
        )
        coupon = result.scalar_one_or_none()
        if not coupon:
            raise NotFoundError("Coupon not found")
        return coupon

    async def find_valid_coupons(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> List[Coupon]:
        result = await db.execute(
            select(Coupon)
            .where(*valid_coupon_filters(now or utcnow()))
            .order_by(Coupon.expiration_date)
        )
        return list(result.scalars())

    async def list_coupons(
        self,
        db: AsyncSession,
        options: CouponListOptions,
        now: Optional[datetime] = None,
    ) -> Tuple[List[Coupon], Dict[str, int]]:
        """
        List coupons with filtering, sorting and pagination.

        Returns:
            Tuple of (coupons on the requested page, pagination info).

        Raises:
            ValidationError: If any option is out of range.
        """
        errors = []
        if options.page < 1:
            errors.append({"field": "page", "message": "Page must be a positive integer"})
        if not 1 <= options.limit <= self.settings.coupon_max_page_size:
            errors.append({
                "field": "limit",
                "message": f"Limit must be between 1 and {self.settings.coupon_max_page_size}",
            })
        if options.status is not None and options.status not in STATUS_FILTERS:
            errors.append({
                "field": "status",
                "message": "Status must be active, expired, or inactive",
            })
        if options.sort_by not in SORT_FIELDS:
            errors.append({"field": "sort_by", "message": "Invalid sort field"})
        if options.sort_order not in ("asc", "desc"):
            errors.append({"field": "sort_order", "message": "Sort order must be asc or desc"})
        if errors:
            raise ValidationError(errors)

        filters = build_coupon_filters(options, now or utcnow())

        total = await db.scalar(
            select(func.count()).select_from(Coupon).where(*filters)
        )

        sort_column = SORT_FIELDS[options.sort_by]
        order = sort_column.desc() if options.sort_order == "desc" else sort_column.asc()

        result = await db.execute(
            select(Coupon)
            .where(*filters)
            .order_by(order, Coupon.id)
            .offset((options.page - 1) * options.limit)
            .limit(options.limit)
        )
        coupons = list(result.scalars())

        pagination = {
            "current_page": options.page,
            "total_pages": math.ceil(total / options.limit) if total else 0,
            "total_items": total,
            "items_per_page": options.limit,
        }
        return coupons, pagination

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def _prepare(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """Keep editable fields only and normalise their values."""
        prepared = {key: value for key, value in data.items() if key in EDITABLE_FIELDS}

        if isinstance(prepared.get("code"), str):
            prepared["code"] = normalize_code(prepared["code"])
        if isinstance(prepared.get("discount_type"), str):
            prepared["discount_type"] = prepared["discount_type"].strip().lower()
        if isinstance(prepared.get("name"), str):
            prepared["name"] = prepared["name"].strip()
        if isinstance(prepared.get("description"), str):
            prepared["description"] = prepared["description"].strip()

        # Explicit nulls on non-nullable fields mean "use the default"
        if "minimum_order_amount" in prepared and prepared["minimum_order_amount"] is None:
            prepared["minimum_order_amount"] = ZERO
        if "user_usage_limit" in prepared and prepared["user_usage_limit"] is None:
            prepared["user_usage_limit"] = 1
        for flag in ("is_active", "is_first_time_user_only"):
            if flag in prepared and prepared[flag] is None:
                del prepared[flag]

        errors = []
        for name in ID_LIST_FIELDS:
            if name not in prepared:
                continue
            try:
                prepared[name] = _id_list(prepared[name])
            except (ValueError, TypeError):
                errors.append({"field": name, "message": "IDs must be valid UUIDs"})
        if errors:
            raise ValidationError(errors)

        return prepared

    async def create_coupon(
        self,
        db: AsyncSession,
        data: Mapping[str, Any],
        created_by: uuid.UUID,
    ) -> Coupon:
        """
        Create a coupon.

        New coupons always start active with zeroed counters.

        Raises:
            ValidationError: If any field is invalid.
            ConflictError: If the code is already taken.
        """
        values = self._prepare(data)
        values.setdefault("minimum_order_amount", ZERO)
        values.setdefault("user_usage_limit", 1)

        errors = validate_coupon_fields(values)
        if errors:
            raise ValidationError(errors)

        if await self.find_by_code(db, values["code"]):
            raise ConflictError("Coupon code already exists", code="DUPLICATE_CODE")

        values["is_active"] = True
        for name in ID_LIST_FIELDS:
            values.setdefault(name, [])

        coupon = Coupon(
            **values,
            used_count=0,
            issued_count=0,
            created_by=created_by,
        )
        db.add(coupon)

        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("Coupon code already exists", code="DUPLICATE_CODE")

        logger.info(f"Created coupon {coupon.code} by {created_by}")
        return await self.get_coupon(db, coupon.id)

    async def update_coupon(
        self,
        db: AsyncSession,
        coupon_id: uuid.UUID,
        changes: Mapping[str, Any],
        updated_by: uuid.UUID,
    ) -> Coupon:
        """
        Apply administrative edits to a coupon.

        Only editable fields are applied; counters, usage history and
        issuance records are silently ignored. The merged record is
        validated as a whole. An unchanged past expiration date does not
        block other edits, so expired coupons can still be deactivated.

        Raises:
            NotFoundError: If the coupon does not exist.
            ValidationError: If the merged record is invalid.
            ConflictError: If the new code is already taken.
        """
        coupon = await self.get_coupon(db, coupon_id)
        changes = self._prepare(changes)

        merged = {name: getattr(coupon, name) for name in EDITABLE_FIELDS}
        merged.update(changes)
        merged["used_count"] = coupon.used_count
        merged["issued_count"] = coupon.issued_count
        per_user = Counter(usage.user_id for usage in coupon.usage_history)
        merged["max_user_usage"] = max(per_user.values(), default=0)

        errors = validate_coupon_fields(merged)
        if "expiration_date" not in changes:
            errors = [error for error in errors if error["field"] != "expiration_date"]
        if errors:
            raise ValidationError(errors)

        if "code" in changes and changes["code"] != coupon.code:
            if await self.find_by_code(db, changes["code"]):
                raise ConflictError("Coupon code already exists", code="DUPLICATE_CODE")

        for name, value in changes.items():
            setattr(coupon, name, value)
        coupon.updated_by = updated_by
        coupon.updated_at = utcnow()

        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("Coupon code already exists", code="DUPLICATE_CODE")

        logger.info(f"Updated coupon {coupon.code} by {updated_by}: {sorted(changes)}")
        return await self.get_coupon(db, coupon_id)

    async def delete_coupon(self, db: AsyncSession, coupon_id: uuid.UUID) -> None:
        """
        Delete an unused coupon.

        Raises:
            NotFoundError: If the coupon does not exist.
            ConflictError: If the coupon has been redeemed at least once.
        """
        coupon = await self.get_coupon(db, coupon_id)

        if coupon.used_count > 0:
            raise ConflictError(
                "Cannot delete coupon that has been used. Deactivate it instead.",
                code="COUPON_IN_USE",
            )

        await db.delete(coupon)
        await db.commit()
        logger.info(f"Deleted coupon {coupon.code}")

    # ------------------------------------------------------------------
    # Eligibility and pricing
    # ------------------------------------------------------------------

    async def calculate_applicable_amount(
        self,
        db: AsyncSession,
        coupon: Coupon,
        cart_items: Sequence[CartItem],
    ) -> Decimal:
        """
        Subtotal of the cart lines the coupon may discount.

        Prices come from the catalog. Lines whose product cannot be found
        contribute nothing.
        """
        products = await catalog_service.get_products(
            db, [item.product_id for item in cart_items]
        )

        applicable = ZERO
        for item in cart_items:
            product = products.get(str(item.product_id))
            if product is None:
                continue

            category_id = str(product.category_id) if product.category_id else None
            if is_item_applicable(coupon, str(product.id), category_id):
                applicable += to_decimal(product.price) * item.quantity

        return round_currency(applicable)

    async def _evaluate(
        self,
        db: AsyncSession,
        coupon: Coupon,
        order_amount: Decimal,
        cart_items: Sequence[CartItem],
        user_id: Optional[uuid.UUID],
        is_first_order: Optional[bool],
        now: datetime,
    ) -> Tuple[Decimal, Decimal]:
        """
        Run every rule in order and price the order.

        Returns:
            Tuple of (applicable_amount, discount_amount).

        Raises:
            IneligibleError: With the most specific reason available.
        """
        reason = coupon.invalid_reason(now)
        if reason:
            raise IneligibleError(reason)

        if user_id is not None:
            eligibility = coupon.can_user_use_coupon(user_id, now)
            if not eligibility.can_use:
                raise IneligibleError(eligibility.reason)

        if coupon.is_first_time_user_only and is_first_order is not True:
            raise IneligibleError("This coupon is only valid on your first order")

        minimum = to_decimal(coupon.minimum_order_amount or ZERO)
        if order_amount < minimum:
            raise IneligibleError(
                f"Minimum order amount of {self.settings.currency_symbol}{minimum} "
                "is required for this coupon"
            )

        applicable_amount = order_amount
        if cart_items:
            applicable_amount = await self.calculate_applicable_amount(db, coupon, cart_items)
            if applicable_amount <= 0:
                raise IneligibleError("This coupon is not applicable to any items in your cart")

        discount_amount = coupon.calculate_discount(order_amount, applicable_amount, now)
        return applicable_amount, discount_amount

    def _check_order_amount(self, order_amount: Any) -> Decimal:
        amount = to_decimal(order_amount)
        if amount <= 0:
            raise ValidationError(
                [{"field": "order_amount", "message": "Valid order amount is required"}]
            )
        return amount

    async def validate_coupon(
        self,
        db: AsyncSession,
        code: str,
        order_amount: Any,
        cart_items: Optional[Sequence[CartItem]] = None,
        user_id: Optional[uuid.UUID] = None,
        is_first_order: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> CouponValidation:
        """
        Preview what a coupon would do for an order without changing anything.

        Args:
            db: Database session.
            code: Coupon code as typed by the customer.
            order_amount: Order total.
            cart_items: Cart lines for product/category scoping. When empty
                the whole order is applicable.
            user_id: Customer, if known. Enables the per-user checks.
            is_first_order: Whether this would be the customer's first order.
            now: Evaluation instant, defaults to the current time.

        Returns:
            CouponValidation. Ineligible coupons come back with
            ``valid=False`` and a reason rather than raising.

        Raises:
            ValidationError: If the order amount is not positive.
            NotFoundError: If the code does not exist.
        """
        order_amount = self._check_order_amount(order_amount)
        coupon = await self.get_by_code(db, code)
        now = now or utcnow()

        try:
            applicable_amount, discount_amount = await self._evaluate(
                db, coupon, order_amount, cart_items or [], user_id, is_first_order, now
            )
        except IneligibleError as e:
            logger.info(f"Coupon {coupon.code} rejected in preview: {e.message}")
            return CouponValidation(
                valid=False,
                discount_amount=ZERO,
                applicable_amount=ZERO,
                final_amount=order_amount,
                reason=e.message,
                coupon=coupon,
            )

        return CouponValidation(
            valid=True,
            discount_amount=discount_amount,
            applicable_amount=applicable_amount,
            final_amount=order_amount - discount_amount,
            coupon=coupon,
            user_remaining_uses=(
                coupon.user_remaining_uses(user_id) if user_id is not None else None
            ),
        )

    async def apply_coupon_to_order(
        self,
        db: AsyncSession,
        code: str,
        user_id: uuid.UUID,
        order_id: uuid.UUID,
        order_amount: Any,
        cart_items: Optional[Sequence[CartItem]] = None,
        is_first_order: Optional[bool] = None,
    ) -> CouponApplication:
        """
        Validate a coupon for an order and commit the redemption.

        Called by the order pipeline at finalisation time. A zero discount
        is returned without consuming a use.

        Raises:
            ValidationError: If the order amount is not positive.
            NotFoundError: If the code does not exist.
            IneligibleError: If any eligibility rule fails.
            ConcurrencyError: If a limit was consumed by a concurrent request.
        """
        order_amount = self._check_order_amount(order_amount)
        coupon = await self.get_by_code(db, code)

        applicable_amount, discount_amount = await self._evaluate(
            db, coupon, order_amount, cart_items or [], user_id, is_first_order, utcnow()
        )

        if discount_amount > 0:
            await self.apply_coupon(db, coupon, user_id, order_id, discount_amount)

        return CouponApplication(
            discount_amount=discount_amount,
            applicable_amount=applicable_amount,
            coupon_details={
                "code": coupon.code,
                "name": coupon.name,
                "discount_type": coupon.discount_type,
                "discount_value": coupon.discount_value,
            },
        )

    async def apply_coupon(
        self,
        db: AsyncSession,
        coupon: Coupon,
        user_id: uuid.UUID,
        order_id: uuid.UUID,
        discount_amount: Any,
    ) -> CouponUsage:
        """
        Record a redemption.

        Commit step only: eligibility must already have been checked. The
        usage counter is incremented with a conditional UPDATE, so if the
        usage limit was reached after the caller's read this fails instead
        of overselling. The per-user count is re-read once the coupon row is
        locked, and the usage record is written in the same transaction.

        Raises:
            ConcurrencyError: If the total or per-user limit is already used up.
        """
        # A rollback expires the instance, so read what we need up front
        coupon_id, code, user_usage_limit = coupon.id, coupon.code, coupon.user_usage_limit

        result = await db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
            )
            .values(used_count=Coupon.used_count + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            logger.warning(f"Redemption of {code} lost the race for its usage limit")
            raise ConcurrencyError("This coupon has reached its usage limit")

        user_uses = await db.scalar(
            select(func.count(CouponUsage.id)).where(
                CouponUsage.coupon_id == coupon_id,
                CouponUsage.user_id == user_id,
            )
        )
        if user_uses >= user_usage_limit:
            await db.rollback()
            logger.warning(f"Redemption of {code} by {user_id} exceeds per-user limit")
            raise ConcurrencyError(
                "You have already used this coupon the maximum number of times"
            )

        usage = CouponUsage(
            coupon=coupon,
            user_id=user_id,
            order_id=order_id,
            discount_amount=round_currency(discount_amount),
            used_at=utcnow(),
        )
        db.add(usage)
        await db.commit()

        logger.info(
            f"Coupon {code} redeemed by {user_id} on order {order_id}: "
            f"{usage.discount_amount} off"
        )
        return usage

    async def get_available_coupons(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        order_amount: Any = None,
        now: Optional[datetime] = None,
    ) -> List[Coupon]:
        """Valid coupons the user could redeem now, optionally for an order size."""
        now = now or utcnow()
        filters = valid_coupon_filters(now)
        if order_amount is not None:
            filters.append(Coupon.minimum_order_amount <= to_decimal(order_amount))

        result = await db.execute(
            select(Coupon).where(*filters).order_by(Coupon.expiration_date)
        )
        return [
            coupon
            for coupon in result.scalars()
            if coupon.can_user_use_coupon(user_id, now).can_use
        ]

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    async def issue_coupon(
        self,
        db: AsyncSession,
        coupon_id: uuid.UUID,
        user_id: uuid.UUID,
        issued_by: Optional[uuid.UUID],
        channel: str = IssuanceChannel.ADMIN.value,
    ) -> CouponIssuance:
        """
        Grant a coupon to one user.

        Raises:
            ValidationError: If the channel is unknown.
            NotFoundError: If the coupon does not exist.
            IneligibleError: If the coupon cannot be issued right now.
            ConflictError: If the user already holds this coupon.
            ConcurrencyError: If the issuance limit was reached concurrently.
        """
        errors = validate_channel(channel)
        if errors:
            raise ValidationError(errors)

        coupon = await self.get_coupon(db, coupon_id)

        if not coupon.can_be_issued():
            raise IneligibleError("Coupon cannot be issued", code="NOT_ISSUABLE")

        if coupon.has_issuance_for(user_id):
            raise ConflictError("Coupon already issued to this user", code="ALREADY_ISSUED")

        result = await db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon.id,
                or_(
                    Coupon.issuance_limit.is_(None),
                    Coupon.issued_count < Coupon.issuance_limit,
                ),
            )
            .values(issued_count=Coupon.issued_count + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            raise ConcurrencyError("Coupon issuance limit has been reached")

        issuance = CouponIssuance(
            coupon=coupon,
            user_id=user_id,
            issued_by=issued_by,
            channel=channel,
            status=IssuanceStatus.ISSUED.value,
            issued_at=utcnow(),
        )
        db.add(issuance)

        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("Coupon already issued to this user", code="ALREADY_ISSUED")

        logger.info(f"Issued coupon {coupon.code} to {user_id} via {channel}")
        return issuance

    async def issue_coupon_to_users(
        self,
        db: AsyncSession,
        coupon_id: uuid.UUID,
        user_ids: Sequence[uuid.UUID],
        issued_by: Optional[uuid.UUID],
        channel: str = IssuanceChannel.ADMIN.value,
    ) -> IssuanceReport:
        """
        Issue a coupon to many users, reporting failures per user.

        The batch is rejected up front only when the coupon itself cannot
        be issued. After that a failure for one user never stops the rest.

        Raises:
            ValidationError: If no users are given or the channel is unknown.
            NotFoundError: If the coupon does not exist.
            IneligibleError: If the coupon cannot be issued at all.
        """
        errors = validate_channel(channel)
        if not user_ids:
            errors.append({"field": "user_ids", "message": "User IDs array is required"})
        if errors:
            raise ValidationError(errors)

        coupon = await self.get_coupon(db, coupon_id)
        if not coupon.can_be_issued():
            raise IneligibleError(
                "Coupon cannot be issued (inactive, expired, or issuance limit reached)",
                code="NOT_ISSUABLE",
            )
        code = coupon.code

        report = IssuanceReport()
        for user_id in user_ids:
            try:
                await self.issue_coupon(db, coupon_id, user_id, issued_by, channel)
            except (IneligibleError, ConflictError, ConcurrencyError) as e:
                report.failed.append({"user_id": user_id, "error": e.message})
            else:
                report.successful.append(
                    {"user_id": user_id, "status": IssuanceStatus.ISSUED.value}
                )

        logger.info(
            f"Bulk issuance of {code}: "
            f"{report.total_issued} issued, {report.total_failed} failed"
        )
        return report

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_usage_stats(
        self,
        db: AsyncSession,
        coupon_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Aggregate the redemption ledger of a coupon."""
        coupon = await self.get_coupon(db, coupon_id)
        now = now or utcnow()

        history = coupon.usage_history
        total_discount = sum((to_decimal(u.discount_amount) for u in history), ZERO)
        average = round_currency(total_discount / coupon.used_count) if coupon.used_count else ZERO

        window_start = now - timedelta(days=self.settings.coupon_stats_window_days)
        usage_by_day: Dict[str, int] = {}
        for usage in history:
            if usage.used_at >= window_start:
                day = usage.used_at.date().isoformat()
                usage_by_day[day] = usage_by_day.get(day, 0) + 1

        return {
            "total_uses": coupon.used_count,
            "remaining_uses": coupon.remaining_uses,
            "total_discount_given": round_currency(total_discount),
            "unique_users": len({str(u.user_id) for u in history}),
            "average_discount_per_use": average,
            "usage_by_day": usage_by_day,
        }

    async def get_issuance_stats(
        self,
        db: AsyncSession,
        coupon_id: uuid.UUID,
    ) -> Dict[str, Any]:
        """Aggregate the issuance records of a coupon."""
        coupon = await self.get_coupon(db, coupon_id)

        channel_breakdown: Dict[str, int] = {}
        for issue in coupon.issued_to:
            channel_breakdown[issue.channel] = channel_breakdown.get(issue.channel, 0) + 1

        recent = sorted(coupon.issued_to, key=lambda issue: issue.issued_at, reverse=True)

        return {
            "total_issued": coupon.issued_count,
            "remaining_issuances": coupon.remaining_issuances,
            "issuance_limit": coupon.issuance_limit,
            "issued_to": list(coupon.issued_to),
            "channel_breakdown": channel_breakdown,
            "recent_issuances": recent[: self.settings.coupon_recent_issuances],
        }


# Global service instance
coupon_service = CouponService()

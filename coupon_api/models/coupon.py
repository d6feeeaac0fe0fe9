"""Coupon, CouponIssuance and CouponUsage SQLAlchemy models."""

import enum
import uuid
from datetime import datetime, timezone
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Any, List, NamedTuple, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coupon_api.db.database import Base
from coupon_api.db.types import GUID, UTCDateTime

CENT = Decimal("0.01")
ZERO = Decimal("0")


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class IssuanceChannel(str, enum.Enum):
    ADMIN = "admin"
    AUTO = "auto"
    API = "api"
    PROMOTION = "promotion"
    REFERRAL = "referral"
    LOYALTY = "loyalty"


class IssuanceStatus(str, enum.Enum):
    ISSUED = "issued"
    USED = "used"
    EXPIRED = "expired"


class Eligibility(NamedTuple):
    """Outcome of a per-user eligibility check."""

    can_use: bool
    reason: Optional[str] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any) -> Decimal:
    """Convert a number to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_currency(value: Any) -> Decimal:
    """Round to currency minor units, half-up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _same_id(left: Any, right: Any) -> bool:
    return str(left) == str(right)


LIST_COLUMNS = (
    "applicable_products",
    "applicable_categories",
    "excluded_products",
    "excluded_categories",
    "allowed_users",
    "excluded_users",
)

SCALAR_DEFAULTS = {
    "minimum_order_amount": ZERO,
    "used_count": 0,
    "issued_count": 0,
    "user_usage_limit": 1,
    "is_first_time_user_only": False,
    "is_active": True,
}


class Coupon(Base):
    """
    Discount code with eligibility and usage accounting.

    Validity is never stored: it is derived from ``is_active``, the
    expiration date and the usage counters every time it is read.

    Attributes:
        code: Unique uppercase alphanumeric code
        name: Display name
        description: Optional description
        discount_type: percentage or fixed
        discount_value: Percentage (0, 100] or fixed amount
        minimum_order_amount: Order total required before any discount applies
        maximum_discount_amount: Cap for percentage discounts, NULL for uncapped
        expiration_date: Coupon is expired once now is past this instant
        usage_limit: Total redemptions allowed, NULL for unlimited
        used_count: Redemptions so far
        issuance_limit: Issuances allowed, NULL when issuance is not required
        issued_count: Issuances so far
        user_usage_limit: Redemptions allowed per user
        applicable_products / applicable_categories: Inclusion allow-lists
        excluded_products / excluded_categories: Exclusion deny-lists
        allowed_users / excluded_users: Per-user allow and deny lists
        is_first_time_user_only: Restrict to a customer's first order
        is_active: Administrative kill-switch
    """

    __tablename__ = "coupons"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    code: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )
    discount_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    discount_value: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    minimum_order_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=ZERO,
    )
    maximum_discount_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2),
        nullable=True,
    )
    expiration_date: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        index=True,
    )
    usage_limit: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )
    used_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    issuance_limit: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )
    issued_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    user_usage_limit: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )
    applicable_products: Mapped[List[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    applicable_categories: Mapped[List[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    excluded_products: Mapped[List[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    excluded_categories: Mapped[List[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    allowed_users: Mapped[List[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    excluded_users: Mapped[List[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    is_first_time_user_only: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        index=True,
    )
    created_by: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("users.id"),
        nullable=False,
    )
    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("users.id"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    # Relationships
    issued_to: Mapped[List["CouponIssuance"]] = relationship(
        "CouponIssuance",
        back_populates="coupon",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="CouponIssuance.issued_at",
    )
    usage_history: Mapped[List["CouponUsage"]] = relationship(
        "CouponUsage",
        back_populates="coupon",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="CouponUsage.used_at",
    )

    def __init__(self, **kwargs: Any):
        # Column defaults only apply on flush; unsaved coupons need them too.
        for name in LIST_COLUMNS:
            if kwargs.get(name) is None:
                kwargs[name] = []
        for name, value in SCALAR_DEFAULTS.items():
            if kwargs.get(name) is None:
                kwargs[name] = value
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<Coupon {self.code} ({self.discount_type} {self.discount_value})>"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the expiration instant has passed."""
        return (now or utcnow()) > self.expiration_date

    @property
    def is_usage_limit_exceeded(self) -> bool:
        return self.usage_limit is not None and self.used_count >= self.usage_limit

    @property
    def is_issuance_limit_exceeded(self) -> bool:
        return self.issuance_limit is not None and self.issued_count >= self.issuance_limit

    @property
    def remaining_uses(self) -> Optional[int]:
        if self.usage_limit is None:
            return None
        return max(0, self.usage_limit - self.used_count)

    @property
    def remaining_issuances(self) -> Optional[int]:
        if self.issuance_limit is None:
            return None
        return max(0, self.issuance_limit - self.issued_count)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Check if the coupon can currently be redeemed by anyone."""
        return (
            self.is_active
            and not self.is_expired(now)
            and not self.is_usage_limit_exceeded
        )

    def can_be_issued(self, now: Optional[datetime] = None) -> bool:
        """Check if the coupon can currently be issued to another user."""
        return (
            self.is_active
            and not self.is_expired(now)
            and not self.is_issuance_limit_exceeded
        )

    def invalid_reason(self, now: Optional[datetime] = None) -> Optional[str]:
        """
        Most specific reason the coupon is not valid, or None if it is.

        Inactive wins over an exhausted usage limit, which wins over expiry.
        """
        if not self.is_active:
            return "This coupon is inactive"
        if self.is_usage_limit_exceeded:
            return "This coupon has reached its usage limit"
        if self.is_expired(now):
            return "This coupon has expired"
        return None

    def is_issued_to_user(self, user_id: Any) -> bool:
        return any(
            _same_id(issue.user_id, user_id) and issue.status == IssuanceStatus.ISSUED.value
            for issue in self.issued_to
        )

    def has_issuance_for(self, user_id: Any) -> bool:
        """Check for any issuance record for the user, whatever its status."""
        return any(_same_id(issue.user_id, user_id) for issue in self.issued_to)

    def user_usage_count(self, user_id: Any) -> int:
        return sum(1 for usage in self.usage_history if _same_id(usage.user_id, user_id))

    def user_remaining_uses(self, user_id: Any) -> int:
        return max(0, self.user_usage_limit - self.user_usage_count(user_id))

    def can_user_use_coupon(self, user_id: Any, now: Optional[datetime] = None) -> Eligibility:
        """
        Run the per-user eligibility chain.

        Checks run in a fixed order and stop at the first failure so the
        caller always gets the most relevant reason.
        """
        if not self.is_valid(now):
            return Eligibility(False, "Coupon is not valid")

        if self.issuance_limit is not None and not self.is_issued_to_user(user_id):
            return Eligibility(False, "This coupon was not issued to you")

        if any(_same_id(excluded, user_id) for excluded in self.excluded_users):
            return Eligibility(False, "You are not eligible to use this coupon")

        if self.allowed_users and not any(
            _same_id(allowed, user_id) for allowed in self.allowed_users
        ):
            return Eligibility(False, "This coupon is not available for your account")

        if self.user_usage_count(user_id) >= self.user_usage_limit:
            return Eligibility(
                False,
                "You have already used this coupon the maximum number of times",
            )

        return Eligibility(True)

    def calculate_discount(
        self,
        order_amount: Any,
        applicable_amount: Any = None,
        now: Optional[datetime] = None,
    ) -> Decimal:
        """
        Compute the discount for an order.

        Args:
            order_amount: Full order total.
            applicable_amount: Portion of the order the coupon may discount.
                Defaults to the whole order.
            now: Evaluation instant, defaults to the current time.

        Returns:
            Discount rounded half-up to 2 decimal places. Never negative,
            never above the order amount and, for percentage coupons,
            never above ``maximum_discount_amount``.
        """
        order_amount = max(to_decimal(order_amount), ZERO)
        if applicable_amount is None:
            applicable_amount = order_amount
        applicable_amount = max(to_decimal(applicable_amount), ZERO)

        if not self.is_valid(now):
            return ZERO.quantize(CENT)

        if order_amount < to_decimal(self.minimum_order_amount or ZERO):
            return ZERO.quantize(CENT)

        value = to_decimal(self.discount_value)
        ceiling = order_amount

        if self.discount_type == DiscountType.PERCENTAGE.value:
            discount = applicable_amount * value / Decimal(100)
            if self.maximum_discount_amount is not None:
                cap = to_decimal(self.maximum_discount_amount)
                discount = min(discount, cap)
                ceiling = min(ceiling, cap)
        elif self.discount_type == DiscountType.FIXED.value:
            discount = min(value, applicable_amount)
        else:
            discount = ZERO

        discount = min(discount, order_amount)

        # Half-up rounding must not push the result past a ceiling
        return min(round_currency(discount), ceiling.quantize(CENT, rounding=ROUND_DOWN))


class CouponIssuance(Base):
    """
    Grant of a limited-issuance coupon to one user.

    Attributes:
        id: UUID primary key
        coupon_id: Issued coupon
        user_id: User the coupon was issued to
        issued_by: Admin who issued it
        channel: admin, auto, api, promotion, referral or loyalty
        status: issued, used or expired
        issued_at: When the coupon was issued
    """

    __tablename__ = "coupon_issuances"
    __table_args__ = (
        UniqueConstraint("coupon_id", "user_id", name="uq_coupon_issuance_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    coupon_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("coupons.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        nullable=False,
        index=True,
    )
    issued_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("users.id"),
        nullable=True,
    )
    channel: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=IssuanceChannel.ADMIN.value,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=IssuanceStatus.ISSUED.value,
    )
    issued_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    coupon: Mapped["Coupon"] = relationship(
        "Coupon",
        back_populates="issued_to",
    )

    def __repr__(self) -> str:
        return f"<CouponIssuance {self.coupon_id} to {self.user_id} ({self.status})>"


class CouponUsage(Base):
    """
    One redemption of a coupon against an order.

    Append-only; rows are written in the same transaction that increments
    ``Coupon.used_count``.

    Attributes:
        id: UUID primary key
        coupon_id: Redeemed coupon
        user_id: User who redeemed it
        order_id: Order the discount was applied to
        discount_amount: Discount granted
        used_at: When the coupon was redeemed
    """

    __tablename__ = "coupon_usages"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    coupon_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("coupons.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        nullable=False,
        index=True,
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        nullable=False,
    )
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    used_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    coupon: Mapped["Coupon"] = relationship(
        "Coupon",
        back_populates="usage_history",
    )

    def __repr__(self) -> str:
        return f"<CouponUsage {self.coupon_id} by {self.user_id}>"

"""
Tests for CouponService against an in-memory SQLite database.
"""

import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from coupon_api.exceptions import (
    ConcurrencyError,
    ConflictError,
    IneligibleError,
    NotFoundError,
    ValidationError,
)
from coupon_api.models.coupon import Coupon, utcnow
from coupon_api.models.user import User
from coupon_api.services.coupon_service import (
    CartItem,
    CouponListOptions,
    coupon_service,
)
from tests.conftest import create_schema


def coupon_data(**overrides):
    data = {
        "code": "save20",
        "name": "Save twenty",
        "discount_type": "PERCENTAGE",
        "discount_value": Decimal("20"),
        "maximum_discount_amount": Decimal("500"),
        "minimum_order_amount": Decimal("1000"),
        "expiration_date": utcnow() + timedelta(days=7),
    }
    data.update(overrides)
    return data


class TestCreateCoupon:
    async def test_create_normalises_and_defaults(self, db, admin_user):
        coupon = await coupon_service.create_coupon(
            db,
            coupon_data(code="  save20 ", used_count=99, is_active=False),
            created_by=admin_user.id,
        )

        assert coupon.code == "SAVE20"
        assert coupon.discount_type == "percentage"
        assert coupon.is_active is True
        assert coupon.used_count == 0
        assert coupon.issued_count == 0
        assert coupon.user_usage_limit == 1
        assert coupon.created_by == admin_user.id
        assert coupon.applicable_products == []

    async def test_create_then_fetch_round_trips(self, db, admin_user):
        product_id = uuid.uuid4()
        created = await coupon_service.create_coupon(
            db,
            coupon_data(applicable_products=[product_id], usage_limit=50),
            created_by=admin_user.id,
        )
        fetched = await coupon_service.get_coupon(db, created.id)

        assert fetched.code == "SAVE20"
        assert fetched.discount_value == Decimal("20")
        assert fetched.maximum_discount_amount == Decimal("500")
        assert fetched.minimum_order_amount == Decimal("1000")
        assert fetched.usage_limit == 50
        assert fetched.applicable_products == [str(product_id)]
        assert fetched.expiration_date.tzinfo is not None

    async def test_duplicate_code_is_case_insensitive(self, db, admin_user):
        await coupon_service.create_coupon(db, coupon_data(), created_by=admin_user.id)

        with pytest.raises(ConflictError) as exc_info:
            await coupon_service.create_coupon(
                db, coupon_data(code="SAVE20"), created_by=admin_user.id
            )
        assert exc_info.value.message == "Coupon code already exists"

    async def test_invalid_data_reports_every_field(self, db, admin_user):
        with pytest.raises(ValidationError) as exc_info:
            await coupon_service.create_coupon(
                db,
                coupon_data(code="x", discount_value=Decimal("150"), user_usage_limit=0),
                created_by=admin_user.id,
            )
        fields = {error["field"] for error in exc_info.value.errors}
        assert fields == {"code", "discount_value", "user_usage_limit"}

    async def test_invalid_id_list(self, db, admin_user):
        with pytest.raises(ValidationError) as exc_info:
            await coupon_service.create_coupon(
                db,
                coupon_data(excluded_users=["not-a-uuid"]),
                created_by=admin_user.id,
            )
        assert exc_info.value.errors[0]["field"] == "excluded_users"


class TestUpdateAndDelete:
    async def test_update_ignores_counters(self, db, admin_user, make_coupon):
        coupon = await make_coupon(used_count=3, usage_limit=10)

        updated = await coupon_service.update_coupon(
            db,
            coupon.id,
            {"name": "Renamed", "used_count": 0, "issued_count": 7},
            updated_by=admin_user.id,
        )

        assert updated.name == "Renamed"
        assert updated.used_count == 3
        assert updated.issued_count == 0
        assert updated.updated_by == admin_user.id

    async def test_update_cannot_lower_limit_below_usage(self, db, admin_user, make_coupon):
        coupon = await make_coupon(used_count=5, usage_limit=10)

        with pytest.raises(ValidationError) as exc_info:
            await coupon_service.update_coupon(
                db, coupon.id, {"usage_limit": 4}, updated_by=admin_user.id
            )
        assert exc_info.value.errors[0]["field"] == "usage_limit"

    async def test_update_cannot_lower_user_limit_below_usage(self, db, admin_user, make_coupon):
        coupon = await make_coupon(code="REPEAT", discount_type="fixed", user_usage_limit=3)
        user_id = uuid.uuid4()
        for _ in range(2):
            await coupon_service.apply_coupon_to_order(
                db, "REPEAT", user_id, uuid.uuid4(), Decimal("100")
            )

        with pytest.raises(ValidationError) as exc_info:
            await coupon_service.update_coupon(
                db, coupon.id, {"user_usage_limit": 1}, updated_by=admin_user.id
            )
        assert exc_info.value.errors == [
            {
                "field": "user_usage_limit",
                "message": "User usage limit cannot be lower than an existing user's usage count (2)",
            }
        ]

        updated = await coupon_service.update_coupon(
            db, coupon.id, {"user_usage_limit": 2}, updated_by=admin_user.id
        )
        assert updated.user_usage_limit == 2
        assert updated.user_usage_count(user_id) == 2

    async def test_expired_coupon_can_be_deactivated(self, db, admin_user, make_coupon):
        coupon = await make_coupon(expiration_date=utcnow() - timedelta(days=3))

        updated = await coupon_service.update_coupon(
            db, coupon.id, {"is_active": False}, updated_by=admin_user.id
        )
        assert updated.is_active is False

    async def test_update_to_past_expiration_is_rejected(self, db, admin_user, make_coupon):
        coupon = await make_coupon()

        with pytest.raises(ValidationError):
            await coupon_service.update_coupon(
                db,
                coupon.id,
                {"expiration_date": utcnow() - timedelta(days=2)},
                updated_by=admin_user.id,
            )

    async def test_update_code_conflict(self, db, admin_user, make_coupon):
        await make_coupon(code="TAKEN")
        coupon = await make_coupon(code="MINE")

        with pytest.raises(ConflictError):
            await coupon_service.update_coupon(
                db, coupon.id, {"code": "taken"}, updated_by=admin_user.id
            )

    async def test_update_missing_coupon(self, db, admin_user):
        with pytest.raises(NotFoundError):
            await coupon_service.update_coupon(
                db, uuid.uuid4(), {"name": "x"}, updated_by=admin_user.id
            )

    async def test_delete_unused_coupon(self, db, make_coupon):
        coupon = await make_coupon()
        await coupon_service.issue_coupon(db, coupon.id, uuid.uuid4(), issued_by=None)

        await coupon_service.delete_coupon(db, coupon.id)

        with pytest.raises(NotFoundError) as exc_info:
            await coupon_service.get_coupon(db, coupon.id)
        assert exc_info.value.message == "Coupon not found"

    async def test_delete_used_coupon_is_refused(self, db, make_coupon):
        coupon = await make_coupon(used_count=1)

        with pytest.raises(ConflictError) as exc_info:
            await coupon_service.delete_coupon(db, coupon.id)
        assert exc_info.value.message == (
            "Cannot delete coupon that has been used. Deactivate it instead."
        )


class TestValidateCoupon:
    async def test_percentage_with_cap(self, db, make_coupon):
        await make_coupon(
            code="SAVE20",
            discount_value=Decimal("20"),
            maximum_discount_amount=Decimal("500"),
            minimum_order_amount=Decimal("1000"),
        )

        result = await coupon_service.validate_coupon(db, "save20", Decimal("3000"))

        assert result.valid
        assert result.discount_amount == Decimal("500")
        assert result.applicable_amount == Decimal("3000")
        assert result.final_amount == Decimal("2500")
        assert result.coupon.code == "SAVE20"

    async def test_below_minimum(self, db, make_coupon):
        await make_coupon(code="SAVE20", minimum_order_amount=Decimal("1000"))

        result = await coupon_service.validate_coupon(db, "SAVE20", Decimal("900"))

        assert not result.valid
        assert result.discount_amount == 0
        assert result.final_amount == Decimal("900")
        assert result.reason == "Minimum order amount of ₹1000.00 is required for this coupon"

    async def test_fixed_capped_at_order_amount(self, db, make_coupon):
        await make_coupon(code="FLAT100", discount_type="fixed", discount_value=Decimal("100"))

        result = await coupon_service.validate_coupon(db, "FLAT100", Decimal("50"))

        assert result.valid
        assert result.discount_amount == Decimal("50")
        assert result.final_amount == Decimal("0")

    async def test_exhausted_coupon_reason(self, db, make_coupon):
        await make_coupon(code="ONCE", usage_limit=1, used_count=1)

        result = await coupon_service.validate_coupon(db, "ONCE", Decimal("100"))

        assert not result.valid
        assert result.reason == "This coupon has reached its usage limit"

    async def test_inactive_reason_wins(self, db, make_coupon):
        await make_coupon(
            code="OFF",
            is_active=False,
            usage_limit=1,
            used_count=1,
            expiration_date=utcnow() - timedelta(days=1),
        )

        result = await coupon_service.validate_coupon(db, "OFF", Decimal("100"))
        assert result.reason == "This coupon is inactive"

    async def test_expired_reason(self, db, make_coupon):
        await make_coupon(code="OLD", expiration_date=utcnow() - timedelta(days=1))

        result = await coupon_service.validate_coupon(db, "OLD", Decimal("100"))
        assert result.reason == "This coupon has expired"

    async def test_user_eligibility_reason(self, db, make_coupon):
        await make_coupon(code="VIP", issuance_limit=10)

        result = await coupon_service.validate_coupon(
            db, "VIP", Decimal("100"), user_id=uuid.uuid4()
        )
        assert result.reason == "This coupon was not issued to you"

    async def test_user_remaining_uses(self, db, make_coupon):
        await make_coupon(code="TWICE", user_usage_limit=2)

        result = await coupon_service.validate_coupon(
            db, "TWICE", Decimal("100"), user_id=uuid.uuid4()
        )
        assert result.valid
        assert result.user_remaining_uses == 2

    async def test_first_order_only(self, db, make_coupon):
        await make_coupon(code="WELCOME", is_first_time_user_only=True)
        user_id = uuid.uuid4()

        rejected = await coupon_service.validate_coupon(
            db, "WELCOME", Decimal("100"), user_id=user_id
        )
        accepted = await coupon_service.validate_coupon(
            db, "WELCOME", Decimal("100"), user_id=user_id, is_first_order=True
        )

        assert rejected.reason == "This coupon is only valid on your first order"
        assert accepted.valid

    async def test_unknown_code(self, db):
        with pytest.raises(NotFoundError) as exc_info:
            await coupon_service.validate_coupon(db, "NOPE", Decimal("100"))
        assert exc_info.value.message == "Invalid coupon code"

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-10")])
    async def test_order_amount_must_be_positive(self, db, make_coupon, amount):
        await make_coupon(code="ANY")
        with pytest.raises(ValidationError):
            await coupon_service.validate_coupon(db, "ANY", amount)

    async def test_preview_does_not_consume(self, db, make_coupon):
        coupon = await make_coupon(code="PEEK", usage_limit=1)

        for _ in range(3):
            result = await coupon_service.validate_coupon(
                db, "PEEK", Decimal("100"), user_id=uuid.uuid4()
            )
            assert result.valid

        coupon = await coupon_service.get_coupon(db, coupon.id)
        assert coupon.used_count == 0
        assert coupon.usage_history == []


class TestApplicability:
    async def test_allow_lists_intersect(self, db, make_coupon, catalog):
        await make_coupon(
            code="SCOPED",
            discount_value=Decimal("10"),
            applicable_products=[str(catalog["laptop"].id), str(catalog["novel"].id)],
            applicable_categories=[str(catalog["electronics"].id)],
        )
        cart = [
            CartItem(catalog["laptop"].id, 1),
            CartItem(catalog["phone"].id, 1),
            CartItem(catalog["novel"].id, 1),
        ]

        result = await coupon_service.validate_coupon(db, "SCOPED", Decimal("1700"), cart)

        # Only the laptop is both listed and in an allowed category
        assert result.applicable_amount == Decimal("1000")
        assert result.discount_amount == Decimal("100")

    async def test_excluded_category(self, db, make_coupon, catalog):
        await make_coupon(
            code="NOBOOKS",
            discount_value=Decimal("10"),
            excluded_categories=[str(catalog["books"].id)],
        )
        cart = [CartItem(catalog["phone"].id, 2), CartItem(catalog["novel"].id, 3)]

        result = await coupon_service.validate_coupon(db, "NOBOOKS", Decimal("1600"), cart)

        assert result.applicable_amount == Decimal("1000")
        assert result.discount_amount == Decimal("100")

    async def test_excluded_product_beats_allow_list(self, db, make_coupon, catalog):
        await make_coupon(
            code="NOPHONE",
            applicable_categories=[str(catalog["electronics"].id)],
            excluded_products=[str(catalog["phone"].id)],
        )
        cart = [CartItem(catalog["laptop"].id, 1), CartItem(catalog["phone"].id, 1)]

        result = await coupon_service.validate_coupon(db, "NOPHONE", Decimal("1500"), cart)
        assert result.applicable_amount == Decimal("1000")

    async def test_uncategorised_product_fails_category_allow_list(self, db, make_coupon, catalog):
        await make_coupon(
            code="GADGETS",
            applicable_categories=[str(catalog["electronics"].id)],
        )
        cart = [CartItem(catalog["gift_card"].id, 1), CartItem(catalog["phone"].id, 1)]

        result = await coupon_service.validate_coupon(db, "GADGETS", Decimal("600"), cart)
        assert result.applicable_amount == Decimal("500")

    async def test_unknown_product_contributes_nothing(self, db, make_coupon, catalog):
        await make_coupon(code="ANYTHING")
        cart = [CartItem(uuid.uuid4(), 5), CartItem(catalog["novel"].id, 1)]

        result = await coupon_service.validate_coupon(db, "ANYTHING", Decimal("200"), cart)
        assert result.applicable_amount == Decimal("200")

    async def test_nothing_applicable(self, db, make_coupon, catalog):
        await make_coupon(
            code="BOOKSONLY",
            applicable_categories=[str(catalog["books"].id)],
        )
        cart = [CartItem(catalog["laptop"].id, 1)]

        result = await coupon_service.validate_coupon(db, "BOOKSONLY", Decimal("1000"), cart)

        assert not result.valid
        assert result.reason == "This coupon is not applicable to any items in your cart"

    async def test_prices_come_from_catalog(self, db, make_coupon, catalog):
        coupon = await make_coupon(code="TENOFF", discount_value=Decimal("10"))
        amount = await coupon_service.calculate_applicable_amount(
            db, coupon, [CartItem(catalog["novel"].id, 2), CartItem(catalog["novel"].id, 1)]
        )
        assert amount == Decimal("600")


class TestRedemption:
    async def test_apply_records_usage(self, db, make_coupon):
        coupon = await make_coupon(code="SAVE20", discount_value=Decimal("20"), usage_limit=5)
        user_id, order_id = uuid.uuid4(), uuid.uuid4()

        application = await coupon_service.apply_coupon_to_order(
            db, "SAVE20", user_id, order_id, Decimal("250")
        )

        assert application.discount_amount == Decimal("50")
        assert application.applicable_amount == Decimal("250")
        assert application.coupon_details["code"] == "SAVE20"

        coupon = await coupon_service.get_coupon(db, coupon.id)
        assert coupon.used_count == 1
        assert len(coupon.usage_history) == 1
        usage = coupon.usage_history[0]
        assert usage.user_id == user_id
        assert usage.order_id == order_id
        assert usage.discount_amount == Decimal("50")

    async def test_apply_twice_hits_user_limit(self, db, make_coupon):
        await make_coupon(code="ONCEEACH")
        user_id = uuid.uuid4()

        await coupon_service.apply_coupon_to_order(
            db, "ONCEEACH", user_id, uuid.uuid4(), Decimal("100")
        )
        with pytest.raises(IneligibleError) as exc_info:
            await coupon_service.apply_coupon_to_order(
                db, "ONCEEACH", user_id, uuid.uuid4(), Decimal("100")
            )
        assert exc_info.value.message == (
            "You have already used this coupon the maximum number of times"
        )

    async def test_usage_limit_is_never_exceeded(self, db, make_coupon):
        coupon = await make_coupon(code="LIMITED", usage_limit=2)

        for _ in range(2):
            await coupon_service.apply_coupon_to_order(
                db, "LIMITED", uuid.uuid4(), uuid.uuid4(), Decimal("100")
            )
        with pytest.raises(IneligibleError) as exc_info:
            await coupon_service.apply_coupon_to_order(
                db, "LIMITED", uuid.uuid4(), uuid.uuid4(), Decimal("100")
            )
        assert exc_info.value.message == "This coupon has reached its usage limit"

        coupon = await coupon_service.get_coupon(db, coupon.id)
        assert coupon.used_count == 2

    async def test_zero_discount_does_not_consume(self, db, make_coupon):
        coupon = await make_coupon(code="TINY", discount_value=Decimal("0.1"))

        application = await coupon_service.apply_coupon_to_order(
            db, "TINY", uuid.uuid4(), uuid.uuid4(), Decimal("1.00")
        )

        assert application.discount_amount == Decimal("0")
        coupon = await coupon_service.get_coupon(db, coupon.id)
        assert coupon.used_count == 0

    async def test_ineligible_apply_raises(self, db, make_coupon):
        await make_coupon(code="VIPONLY", allowed_users=[str(uuid.uuid4())])

        with pytest.raises(IneligibleError) as exc_info:
            await coupon_service.apply_coupon_to_order(
                db, "VIPONLY", uuid.uuid4(), uuid.uuid4(), Decimal("100")
            )
        assert exc_info.value.message == "This coupon is not available for your account"


class TestConcurrentWrites:
    """Two sessions that both read the coupon before either committed."""

    @pytest.fixture
    async def race_sessions(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
        await create_schema(engine)
        maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        yield maker
        await engine.dispose()

    async def _seed(self, maker, **overrides):
        async with maker() as session:
            admin = User(cognito_id="race-admin", email="race@example.com", role="admin")
            session.add(admin)
            await session.flush()
            values = {
                "code": "RACE",
                "name": "Race",
                "discount_type": "fixed",
                "discount_value": Decimal("10"),
                "expiration_date": utcnow() + timedelta(days=1),
                "created_by": admin.id,
            }
            values.update(overrides)
            coupon = Coupon(**values)
            session.add(coupon)
            await session.commit()
            return coupon.id

    async def test_only_one_redemption_wins(self, race_sessions):
        coupon_id = await self._seed(race_sessions, usage_limit=1)

        async with race_sessions() as first, race_sessions() as second:
            coupon_a = await coupon_service.get_coupon(first, coupon_id)
            coupon_b = await coupon_service.get_coupon(second, coupon_id)
            assert coupon_a.is_valid() and coupon_b.is_valid()

            await coupon_service.apply_coupon(
                first, coupon_a, uuid.uuid4(), uuid.uuid4(), Decimal("10")
            )
            with pytest.raises(ConcurrencyError) as exc_info:
                await coupon_service.apply_coupon(
                    second, coupon_b, uuid.uuid4(), uuid.uuid4(), Decimal("10")
                )
            assert exc_info.value.message == "This coupon has reached its usage limit"

        async with race_sessions() as check:
            coupon = await coupon_service.get_coupon(check, coupon_id)
            assert coupon.used_count == 1
            assert len(coupon.usage_history) == 1

    async def test_same_user_cannot_double_redeem(self, race_sessions):
        coupon_id = await self._seed(race_sessions, usage_limit=None, user_usage_limit=1)
        user_id = uuid.uuid4()

        async with race_sessions() as first, race_sessions() as second:
            coupon_a = await coupon_service.get_coupon(first, coupon_id)
            coupon_b = await coupon_service.get_coupon(second, coupon_id)

            await coupon_service.apply_coupon(first, coupon_a, user_id, uuid.uuid4(), Decimal("10"))
            with pytest.raises(ConcurrencyError):
                await coupon_service.apply_coupon(
                    second, coupon_b, user_id, uuid.uuid4(), Decimal("10")
                )

        async with race_sessions() as check:
            coupon = await coupon_service.get_coupon(check, coupon_id)
            assert coupon.used_count == 1
            assert coupon.user_usage_count(user_id) == 1

    async def _issue_from_snapshot(self, session, snapshot, user_id):
        # Skip the fresh read so the stale snapshot reaches the UPDATE.
        with patch.object(coupon_service, "get_coupon", AsyncMock(return_value=snapshot)):
            return await coupon_service.issue_coupon(session, snapshot.id, user_id, None)

    async def test_only_one_issuance_wins(self, race_sessions):
        coupon_id = await self._seed(race_sessions, issuance_limit=1)

        async with race_sessions() as first, race_sessions() as second:
            stale = await coupon_service.get_coupon(second, coupon_id)
            assert stale.can_be_issued()

            await coupon_service.issue_coupon(first, coupon_id, uuid.uuid4(), None)
            with pytest.raises(ConcurrencyError) as exc_info:
                await self._issue_from_snapshot(second, stale, uuid.uuid4())
            assert exc_info.value.message == "Coupon issuance limit has been reached"

        async with race_sessions() as check:
            coupon = await coupon_service.get_coupon(check, coupon_id)
            assert coupon.issued_count == 1
            assert len(coupon.issued_to) == 1

    async def test_same_user_cannot_be_issued_twice(self, race_sessions):
        coupon_id = await self._seed(race_sessions, issuance_limit=5)
        user_id = uuid.uuid4()

        async with race_sessions() as first, race_sessions() as second:
            stale = await coupon_service.get_coupon(second, coupon_id)
            assert not stale.has_issuance_for(user_id)

            await coupon_service.issue_coupon(first, coupon_id, user_id, None)
            with pytest.raises(ConflictError) as exc_info:
                await self._issue_from_snapshot(second, stale, user_id)
            assert exc_info.value.code == "ALREADY_ISSUED"

        async with race_sessions() as check:
            coupon = await coupon_service.get_coupon(check, coupon_id)
            assert coupon.issued_count == 1
            assert [issue.user_id for issue in coupon.issued_to] == [user_id]


class TestIssuance:
    async def test_issue_then_redeem(self, db, admin_user, make_coupon):
        coupon = await make_coupon(code="INVITE", issuance_limit=5)
        user_id = uuid.uuid4()

        before = await coupon_service.validate_coupon(db, "INVITE", Decimal("100"), user_id=user_id)
        assert before.reason == "This coupon was not issued to you"

        issuance = await coupon_service.issue_coupon(
            db, coupon.id, user_id, admin_user.id, channel="referral"
        )
        assert issuance.status == "issued"
        assert issuance.channel == "referral"

        after = await coupon_service.validate_coupon(db, "INVITE", Decimal("100"), user_id=user_id)
        assert after.valid

        coupon = await coupon_service.get_coupon(db, coupon.id)
        assert coupon.issued_count == 1

    async def test_duplicate_issuance(self, db, admin_user, make_coupon):
        coupon = await make_coupon(issuance_limit=5)
        user_id = uuid.uuid4()
        await coupon_service.issue_coupon(db, coupon.id, user_id, admin_user.id)

        with pytest.raises(ConflictError) as exc_info:
            await coupon_service.issue_coupon(db, coupon.id, user_id, admin_user.id)
        assert exc_info.value.message == "Coupon already issued to this user"

    async def test_cannot_issue_past_limit(self, db, admin_user, make_coupon):
        coupon = await make_coupon(issuance_limit=1, issued_count=1)

        with pytest.raises(IneligibleError) as exc_info:
            await coupon_service.issue_coupon(db, coupon.id, uuid.uuid4(), admin_user.id)
        assert exc_info.value.message == "Coupon cannot be issued"

    async def test_invalid_channel(self, db, admin_user, make_coupon):
        coupon = await make_coupon()
        with pytest.raises(ValidationError):
            await coupon_service.issue_coupon(
                db, coupon.id, uuid.uuid4(), admin_user.id, channel="fax"
            )

    async def test_bulk_issuance_reports_partial_failure(self, db, admin_user, make_coupon):
        coupon = await make_coupon(issuance_limit=2)
        first, second, third = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()

        report = await coupon_service.issue_coupon_to_users(
            db, coupon.id, [first, first, second, third], admin_user.id
        )

        assert [entry["user_id"] for entry in report.successful] == [first, second]
        assert report.failed == [
            {"user_id": first, "error": "Coupon already issued to this user"},
            {"user_id": third, "error": "Coupon cannot be issued"},
        ]
        assert report.total_issued == 2
        assert report.total_failed == 2

        coupon = await coupon_service.get_coupon(db, coupon.id)
        assert coupon.issued_count == 2
        assert len(coupon.issued_to) == 2

    async def test_bulk_issuance_requires_users(self, db, admin_user, make_coupon):
        coupon = await make_coupon()
        with pytest.raises(ValidationError):
            await coupon_service.issue_coupon_to_users(db, coupon.id, [], admin_user.id)

    async def test_bulk_issuance_of_inactive_coupon(self, db, admin_user, make_coupon):
        coupon = await make_coupon(is_active=False)
        with pytest.raises(IneligibleError):
            await coupon_service.issue_coupon_to_users(
                db, coupon.id, [uuid.uuid4()], admin_user.id
            )


class TestListing:
    async def test_status_filters(self, db, make_coupon):
        await make_coupon(code="LIVE")
        await make_coupon(code="GONE", expiration_date=utcnow() - timedelta(days=1))
        await make_coupon(code="PAUSED", is_active=False)

        async def codes(status):
            coupons, _ = await coupon_service.list_coupons(db, CouponListOptions(status=status))
            return {coupon.code for coupon in coupons}

        assert await codes("active") == {"LIVE"}
        assert await codes("expired") == {"GONE"}
        assert await codes("inactive") == {"PAUSED"}
        assert await codes(None) == {"LIVE", "GONE", "PAUSED"}

    async def test_search_and_type(self, db, make_coupon):
        await make_coupon(code="SUMMER10", name="Summer sale")
        await make_coupon(code="WINTER10", name="Winter sale", discount_type="fixed")
        await make_coupon(code="PCT100", name="100% off")

        coupons, _ = await coupon_service.list_coupons(db, CouponListOptions(search="summer"))
        assert [coupon.code for coupon in coupons] == ["SUMMER10"]

        coupons, _ = await coupon_service.list_coupons(
            db, CouponListOptions(discount_type="fixed")
        )
        assert [coupon.code for coupon in coupons] == ["WINTER10"]

        # Wildcards in the search term are matched literally
        coupons, _ = await coupon_service.list_coupons(db, CouponListOptions(search="%"))
        assert [coupon.code for coupon in coupons] == ["PCT100"]

    async def test_pagination_and_sorting(self, db, make_coupon):
        for code in ("CCC", "AAA", "EEE", "BBB", "DDD"):
            await make_coupon(code=code)

        coupons, pagination = await coupon_service.list_coupons(
            db, CouponListOptions(page=2, limit=2, sort_by="code", sort_order="asc")
        )

        assert [coupon.code for coupon in coupons] == ["CCC", "DDD"]
        assert pagination == {
            "current_page": 2,
            "total_pages": 3,
            "total_items": 5,
            "items_per_page": 2,
        }

    async def test_invalid_options(self, db):
        with pytest.raises(ValidationError) as exc_info:
            await coupon_service.list_coupons(
                db, CouponListOptions(page=0, limit=101, sort_by="password")
            )
        fields = {error["field"] for error in exc_info.value.errors}
        assert fields == {"page", "limit", "sort_by"}


class TestAvailableCoupons:
    async def test_filters_by_user_and_order(self, db, make_coupon):
        user_id = uuid.uuid4()
        await make_coupon(code="OPEN")
        await make_coupon(code="BIGORDER", minimum_order_amount=Decimal("5000"))
        await make_coupon(code="INVITED", issuance_limit=3)
        await make_coupon(code="BANNED", excluded_users=[str(user_id)])
        await make_coupon(code="SPENT", usage_limit=1, used_count=1)

        coupons = await coupon_service.get_available_coupons(db, user_id, Decimal("1000"))
        assert {coupon.code for coupon in coupons} == {"OPEN"}

        coupons = await coupon_service.get_available_coupons(db, user_id)
        assert {coupon.code for coupon in coupons} == {"OPEN", "BIGORDER"}

    async def test_find_valid_coupons(self, db, make_coupon):
        await make_coupon(code="GOOD")
        await make_coupon(code="OLD", expiration_date=utcnow() - timedelta(days=1))
        await make_coupon(code="DONE", usage_limit=2, used_count=2)

        coupons = await coupon_service.find_valid_coupons(db)
        assert [coupon.code for coupon in coupons] == ["GOOD"]


class TestStatistics:
    async def test_usage_stats(self, db, make_coupon):
        coupon = await make_coupon(
            code="STATS", discount_type="fixed", discount_value=Decimal("25"), usage_limit=10
        )
        for amount in (Decimal("100"), Decimal("10")):
            await coupon_service.apply_coupon_to_order(
                db, "STATS", uuid.uuid4(), uuid.uuid4(), amount
            )

        stats = await coupon_service.get_usage_stats(db, coupon.id)

        assert stats["total_uses"] == 2
        assert stats["remaining_uses"] == 8
        assert stats["total_discount_given"] == Decimal("35.00")
        assert stats["unique_users"] == 2
        assert stats["average_discount_per_use"] == Decimal("17.50")
        assert stats["usage_by_day"] == {utcnow().date().isoformat(): 2}

    async def test_usage_stats_for_unused_coupon(self, db, make_coupon):
        coupon = await make_coupon()
        stats = await coupon_service.get_usage_stats(db, coupon.id)
        assert stats["total_uses"] == 0
        assert stats["average_discount_per_use"] == 0
        assert stats["usage_by_day"] == {}

    async def test_issuance_stats(self, db, admin_user, make_coupon):
        coupon = await make_coupon(issuance_limit=5)
        await coupon_service.issue_coupon(db, coupon.id, uuid.uuid4(), admin_user.id)
        await coupon_service.issue_coupon(
            db, coupon.id, uuid.uuid4(), admin_user.id, channel="promotion"
        )
        await coupon_service.issue_coupon(
            db, coupon.id, uuid.uuid4(), admin_user.id, channel="promotion"
        )

        stats = await coupon_service.get_issuance_stats(db, coupon.id)

        assert stats["total_issued"] == 3
        assert stats["remaining_issuances"] == 2
        assert stats["issuance_limit"] == 5
        assert stats["channel_breakdown"] == {"admin": 1, "promotion": 2}
        assert len(stats["issued_to"]) == 3
        assert len(stats["recent_issuances"]) == 3

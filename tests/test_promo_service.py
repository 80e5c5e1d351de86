import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy import func, select, update

from campaign_engine.models import (
    PromoCode,
    PromoDiscountTypeEnum,
    PromoOrderTypeEnum,
    PromoRedemption,
)
from campaign_engine.services.customers import CustomerNotFoundError
from campaign_engine.services.promotions import (
    DuplicatePromoCodeError,
    PromoCodeService,
    PromoContentionError,
    PromoInvariantViolation,
    PromoRejectedError,
    PromoRejectionReason,
    compute_discount,
)


async def _seed_customer(session, make_customer, restaurant_id) -> UUID:
    customer = make_customer(restaurant_id)
    session.add(customer)
    await session.commit()
    return customer.id


async def _create_summer_code(session, restaurant_id, **overrides) -> PromoCode:
    values = dict(
        discount_type=PromoDiscountTypeEnum.PERCENTAGE,
        discount_value=Decimal("10"),
        valid_until=datetime.now(timezone.utc) + timedelta(days=30),
        code="SUMMER-AB12CD34",
        min_spend=Decimal("50"),
    )
    values.update(overrides)
    return await PromoCodeService(session).create_code(restaurant_id, **values)


def test_compute_discount_rounds_and_clamps() -> None:
    percentage = PromoDiscountTypeEnum.PERCENTAGE
    fixed = PromoDiscountTypeEnum.FIXED_AMOUNT

    assert compute_discount(percentage, Decimal("10"), Decimal("100")) == Decimal("10.00")
    assert compute_discount(percentage, Decimal("15"), Decimal("33.33")) == Decimal("5.00")
    assert compute_discount(percentage, Decimal("12.5"), Decimal("0.20")) == Decimal("0.03")
    assert compute_discount(fixed, Decimal("25"), Decimal("18.40")) == Decimal("18.40")
    assert compute_discount(fixed, Decimal("5"), Decimal("0")) == Decimal("0.00")


@pytest.mark.asyncio
async def test_validate_applies_percentage_discount(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        customer_id = await _seed_customer(session, make_customer, restaurant_id)
        promo = await _create_summer_code(session, restaurant_id)

        result = await PromoCodeService(session).validate(
            restaurant_id, customer_id, "summer-ab12cd34", Decimal("100")
        )

    assert result.valid is True
    assert result.promo_code_id == promo.id
    assert result.code == "SUMMER-AB12CD34"
    assert result.discount_amount == Decimal("10.00")


@pytest.mark.asyncio
async def test_validate_reports_minimum_spend_message(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        customer_id = await _seed_customer(session, make_customer, restaurant_id)
        await _create_summer_code(session, restaurant_id)

        result = await PromoCodeService(session).validate(
            restaurant_id, customer_id, "SUMMER-AB12CD34", Decimal("40")
        )

    assert result.valid is False
    assert result.reason == PromoRejectionReason.MINIMUM_SPEND_NOT_MET
    assert result.message == "Minimum spend of 50.00 required"
    assert result.discount_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_validate_rejects_unknown_expired_and_wrong_channel_codes(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        customer_id = await _seed_customer(session, make_customer, restaurant_id)
        service = PromoCodeService(session)
        now = datetime.now(timezone.utc)
        await service.create_code(
            restaurant_id,
            code="OLD-CODE",
            discount_type=PromoDiscountTypeEnum.FIXED_AMOUNT,
            discount_value=Decimal("5"),
            valid_from=now - timedelta(days=10),
            valid_until=now - timedelta(days=1),
        )
        await service.create_code(
            restaurant_id,
            code="EATS-ONLY",
            discount_type=PromoDiscountTypeEnum.FIXED_AMOUNT,
            discount_value=Decimal("5"),
            valid_until=now + timedelta(days=1),
            order_type=PromoOrderTypeEnum.EATS_ONLY,
        )

        unknown = await service.validate(restaurant_id, customer_id, "NOPE", Decimal("20"))
        expired = await service.validate(restaurant_id, customer_id, "OLD-CODE", Decimal("20"))
        wrong_channel = await service.validate(
            restaurant_id, customer_id, "EATS-ONLY", Decimal("20"), order_type="delivery"
        )
        right_channel = await service.validate(
            restaurant_id, customer_id, "EATS-ONLY", Decimal("20"), order_type="eats"
        )
        other_restaurant_id = uuid4()
        other_customer_id = await _seed_customer(session, make_customer, other_restaurant_id)
        other_tenant = await service.validate(other_restaurant_id, other_customer_id, "EATS-ONLY", Decimal("20"))

    for result in (unknown, expired, wrong_channel, other_tenant):
        assert result.valid is False
        assert result.reason == PromoRejectionReason.INVALID_OR_EXPIRED
        assert result.message == "Invalid or expired promo code"
    assert right_channel.valid is True
    assert right_channel.discount_amount == Decimal("5.00")


@pytest.mark.asyncio
async def test_fixed_discount_is_clamped_to_order_amount(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        customer_id = await _seed_customer(session, make_customer, restaurant_id)
        await PromoCodeService(session).create_code(
            restaurant_id,
            code="TENOFF",
            discount_type=PromoDiscountTypeEnum.FIXED_AMOUNT,
            discount_value=Decimal("10"),
            valid_until=datetime.now(timezone.utc) + timedelta(days=1),
        )

        result = await PromoCodeService(session).validate(restaurant_id, customer_id, "TENOFF", Decimal("6.50"))

    assert result.valid is True
    assert result.discount_amount == Decimal("6.50")


@pytest.mark.asyncio
async def test_create_code_rejects_duplicates_and_bad_rules(session_factory) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        await _create_summer_code(session, restaurant_id)

        with pytest.raises(DuplicatePromoCodeError):
            await _create_summer_code(session, restaurant_id)

        with pytest.raises(ValueError):
            await _create_summer_code(session, restaurant_id, code="TOO-MUCH", discount_value=Decimal("150"))

        other = await _create_summer_code(session, uuid4())
        assert other.code == "SUMMER-AB12CD34"

        generated = await _create_summer_code(session, restaurant_id, code=None, prefix="fall")
        assert generated.code.startswith("FALL-")


@pytest.mark.asyncio
async def test_redeem_enforces_per_customer_cap(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        customer_id = await _seed_customer(session, make_customer, restaurant_id)
        promo = await _create_summer_code(session, restaurant_id)
        promo_id = promo.id

        service = PromoCodeService(session, backoff_seconds=0)
        redemption_id = await service.redeem(
            promo_id, customer_id, restaurant_id, Decimal("100"), Decimal("10.00"), order_reference="ord-1"
        )
        assert isinstance(redemption_id, UUID)

        with pytest.raises(PromoRejectedError) as excinfo:
            await service.redeem(promo_id, customer_id, restaurant_id, Decimal("100"), Decimal("10.00"))
        assert excinfo.value.reason == PromoRejectionReason.ALREADY_USED

        again = await service.validate(restaurant_id, customer_id, "SUMMER-AB12CD34", Decimal("100"))
        assert again.reason == PromoRejectionReason.ALREADY_USED

    async with session_factory() as session:
        stored = await session.get(PromoCode, promo_id)
        redemptions = (
            await session.execute(select(func.count(PromoRedemption.id)).where(PromoRedemption.promo_code_id == promo_id))
        ).scalar_one()
        assert stored.total_uses == 1
        assert redemptions == 1


@pytest.mark.asyncio
async def test_redeem_respects_global_cap(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        first = await _seed_customer(session, make_customer, restaurant_id)
        second = await _seed_customer(session, make_customer, restaurant_id)
        promo = await _create_summer_code(session, restaurant_id, max_uses=1, min_spend=Decimal("0"))
        promo_id = promo.id

        service = PromoCodeService(session, backoff_seconds=0)
        await service.redeem(promo_id, first, restaurant_id, Decimal("20"), Decimal("2"))

        with pytest.raises(PromoRejectedError) as excinfo:
            await service.redeem(promo_id, second, restaurant_id, Decimal("20"), Decimal("2"))
        assert excinfo.value.reason == PromoRejectionReason.USAGE_LIMIT_REACHED


@pytest.mark.asyncio
async def test_redeem_clamps_discount_to_order_amount(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        customer_id = await _seed_customer(session, make_customer, restaurant_id)
        promo = await _create_summer_code(session, restaurant_id, min_spend=Decimal("0"))

        redemption_id = await PromoCodeService(session).redeem(
            promo.id, customer_id, restaurant_id, Decimal("8.00"), Decimal("12.00")
        )

    async with session_factory() as session:
        redemption = await session.get(PromoRedemption, redemption_id)
        assert redemption.discount_applied == Decimal("8.00")


@pytest.mark.asyncio
async def test_concurrent_redemptions_never_exceed_max_uses(file_session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with file_session_factory() as session:
        customers = [make_customer(restaurant_id) for _ in range(2)]
        session.add_all(customers)
        await session.commit()
        customer_ids = [customer.id for customer in customers]
        promo = await _create_summer_code(session, restaurant_id, max_uses=1, min_spend=Decimal("0"))
        promo_id = promo.id

    async def attempt(customer_id: UUID):
        async with file_session_factory() as session:
            service = PromoCodeService(session, max_attempts=5, backoff_seconds=0.01)
            return await service.redeem(promo_id, customer_id, restaurant_id, Decimal("40"), Decimal("4"))

    results = await asyncio.gather(*(attempt(customer_id) for customer_id in customer_ids), return_exceptions=True)

    accepted = [result for result in results if isinstance(result, UUID)]
    refused = [result for result in results if not isinstance(result, UUID)]
    assert len(accepted) == 1
    assert len(refused) == 1
    assert isinstance(refused[0], (PromoRejectedError, PromoContentionError))

    async with file_session_factory() as session:
        stored = await session.get(PromoCode, promo_id)
        redemptions = (
            await session.execute(select(func.count(PromoRedemption.id)).where(PromoRedemption.promo_code_id == promo_id))
        ).scalar_one()
        assert stored.total_uses == 1
        assert redemptions == 1


async def _usage_counts(session_factory, promo_id: UUID) -> tuple[int, int]:
    async with session_factory() as session:
        stored = await session.get(PromoCode, promo_id)
        redemptions = (
            await session.execute(select(func.count(PromoRedemption.id)).where(PromoRedemption.promo_code_id == promo_id))
        ).scalar_one()
        return stored.total_uses, redemptions


@pytest.mark.asyncio
async def test_eight_concurrent_redemptions_stop_at_global_cap(file_session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with file_session_factory() as session:
        customers = [make_customer(restaurant_id) for _ in range(8)]
        session.add_all(customers)
        await session.commit()
        customer_ids = [customer.id for customer in customers]
        promo = await _create_summer_code(session, restaurant_id, max_uses=3, min_spend=Decimal("0"))
        promo_id = promo.id

    async def attempt(customer_id: UUID):
        async with file_session_factory() as session:
            service = PromoCodeService(session, max_attempts=25, backoff_seconds=0.01, backoff_max_seconds=0.05)
            return await service.redeem(promo_id, customer_id, restaurant_id, Decimal("40"), Decimal("4"))

    results = await asyncio.gather(*(attempt(customer_id) for customer_id in customer_ids), return_exceptions=True)

    accepted = [result for result in results if isinstance(result, UUID)]
    refused = [result for result in results if not isinstance(result, UUID)]
    assert len(accepted) == 3
    assert all(isinstance(result, (PromoRejectedError, PromoContentionError)) for result in refused)

    total_uses, redemptions = await _usage_counts(file_session_factory, promo_id)
    assert total_uses == 3
    assert total_uses == redemptions


@pytest.mark.asyncio
async def test_concurrent_redemptions_by_one_customer_respect_per_customer_cap(
    file_session_factory, make_customer
) -> None:
    restaurant_id = uuid4()
    async with file_session_factory() as session:
        customer_id = await _seed_customer(session, make_customer, restaurant_id)
        promo = await _create_summer_code(
            session, restaurant_id, max_uses=None, max_uses_per_customer=2, min_spend=Decimal("0")
        )
        promo_id = promo.id

    async def attempt():
        async with file_session_factory() as session:
            service = PromoCodeService(session, max_attempts=25, backoff_seconds=0.01, backoff_max_seconds=0.05)
            return await service.redeem(promo_id, customer_id, restaurant_id, Decimal("40"), Decimal("4"))

    results = await asyncio.gather(*(attempt() for _ in range(5)), return_exceptions=True)

    accepted = [result for result in results if isinstance(result, UUID)]
    assert len(accepted) == 2
    rejected = [result for result in results if isinstance(result, PromoRejectedError)]
    assert all(result.reason is PromoRejectionReason.ALREADY_USED for result in rejected)

    total_uses, redemptions = await _usage_counts(file_session_factory, promo_id)
    assert total_uses == 2
    assert total_uses == redemptions


@pytest.mark.asyncio
async def test_redeem_refuses_customers_outside_the_restaurant(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        await _seed_customer(session, make_customer, restaurant_id)
        foreign_customer_id = await _seed_customer(session, make_customer, uuid4())
        promo = await _create_summer_code(session, restaurant_id, min_spend=Decimal("0"))
        promo_id = promo.id

    for customer_id in (foreign_customer_id, uuid4()):
        async with session_factory() as session:
            with pytest.raises(CustomerNotFoundError):
                await PromoCodeService(session).redeem(
                    promo_id, customer_id, restaurant_id, Decimal("20"), Decimal("2")
                )

    total_uses, redemptions = await _usage_counts(session_factory, promo_id)
    assert total_uses == 0
    assert redemptions == 0


@pytest.mark.asyncio
async def test_validate_refuses_customers_outside_the_restaurant(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        foreign_customer_id = await _seed_customer(session, make_customer, uuid4())
        await _create_summer_code(session, restaurant_id)

        with pytest.raises(CustomerNotFoundError) as excinfo:
            await PromoCodeService(session).validate(
                restaurant_id, foreign_customer_id, "SUMMER-AB12CD34", Decimal("80")
            )

    assert excinfo.value.customer_id == foreign_customer_id
    assert excinfo.value.restaurant_id == restaurant_id


@pytest.mark.asyncio
async def test_redeem_raises_contention_after_exhausting_retries(
    session_factory, make_customer, monkeypatch, reset_campaign_store
) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        customer_id = await _seed_customer(session, make_customer, restaurant_id)
        promo = await _create_summer_code(session, restaurant_id, min_spend=Decimal("0"))
        promo_id = promo.id

        async def always_lose(self, *args, **kwargs):
            return None

        monkeypatch.setattr(PromoCodeService, "_attempt_redeem", always_lose)

        service = PromoCodeService(session, max_attempts=3, backoff_seconds=0)
        with pytest.raises(PromoContentionError) as excinfo:
            await service.redeem(promo_id, customer_id, restaurant_id, Decimal("20"), Decimal("2"))

    assert excinfo.value.attempts == 3
    snapshot = reset_campaign_store.snapshot()
    assert snapshot.promo_redemptions["retries"] == 3
    assert snapshot.promo_redemptions["contended"] == 1


def test_backoff_grows_exponentially_and_is_capped() -> None:
    service = PromoCodeService(None, backoff_seconds=0.1, backoff_max_seconds=0.3)

    assert service._backoff_delay(1) == pytest.approx(0.1)
    assert service._backoff_delay(2) == pytest.approx(0.2)
    assert service._backoff_delay(3) == pytest.approx(0.3)
    assert service._backoff_delay(6) == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_usage_above_cap_is_reported_as_invariant_violation(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        customer_id = await _seed_customer(session, make_customer, restaurant_id)
        promo = await _create_summer_code(session, restaurant_id, max_uses=2, min_spend=Decimal("0"))
        promo_id = promo.id
        await session.execute(update(PromoCode).where(PromoCode.id == promo_id).values(total_uses=5))
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(PromoInvariantViolation):
            await PromoCodeService(session).validate(restaurant_id, customer_id, "SUMMER-AB12CD34", Decimal("20"))


@pytest.mark.asyncio
async def test_reconcile_rewrites_cached_usage(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        customer_id = await _seed_customer(session, make_customer, restaurant_id)
        promo = await _create_summer_code(session, restaurant_id, min_spend=Decimal("0"))
        promo_id = promo.id
        await PromoCodeService(session).redeem(promo_id, customer_id, restaurant_id, Decimal("20"), Decimal("2"))
        await session.execute(update(PromoCode).where(PromoCode.id == promo_id).values(total_uses=0))
        await session.commit()

    async with session_factory() as session:
        service = PromoCodeService(session)
        drifted = await service.usage_summary(restaurant_id, promo_id)
        assert drifted.consistent is False
        assert drifted.cached_total_uses == 0
        assert drifted.redemption_count == 1

        repaired = await service.reconcile_usage(restaurant_id, promo_id)
        assert repaired.consistent is True
        assert repaired.cached_total_uses == 1


@pytest.mark.asyncio
async def test_validate_and_redeem_returns_redemption_id(session_factory, make_customer) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        customer_id = await _seed_customer(session, make_customer, restaurant_id)
        await _create_summer_code(session, restaurant_id)

        service = PromoCodeService(session)
        rejected, none_id = await service.validate_and_redeem(
            restaurant_id, customer_id, "SUMMER-AB12CD34", Decimal("10")
        )
        accepted, redemption_id = await service.validate_and_redeem(
            restaurant_id, customer_id, "SUMMER-AB12CD34", Decimal("80"), order_reference="ord-9"
        )

    assert rejected.valid is False and none_id is None
    assert accepted.valid is True
    assert accepted.discount_amount == Decimal("8.00")
    assert isinstance(redemption_id, UUID)

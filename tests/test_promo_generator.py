import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from campaign_engine.models import PromoCode, PromoDiscountTypeEnum
from campaign_engine.services.promotions import generator as generator_module
from campaign_engine.services.promotions.errors import PromoCodeGenerationError
from campaign_engine.services.promotions.generator import PromoCodeGenerator, normalize_prefix


def _promo(restaurant_id, code: str) -> PromoCode:
    now = datetime.now(timezone.utc)
    return PromoCode(
        restaurant_id=restaurant_id,
        code=code,
        discount_type=PromoDiscountTypeEnum.FIXED_AMOUNT,
        discount_value=Decimal("5"),
        valid_from=now,
        valid_until=now + timedelta(days=7),
    )


@pytest.mark.asyncio
async def test_generated_code_uses_prefix_and_eight_character_suffix(session_factory) -> None:
    async with session_factory() as session:
        code = await PromoCodeGenerator(session).generate(uuid4(), "summer")

    assert re.fullmatch(r"SUMMER-[A-Z0-9]{8}", code)


@pytest.mark.asyncio
async def test_generator_retries_after_collision(session_factory, monkeypatch) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        session.add(_promo(restaurant_id, "PROMO-TAKEN000"))
        await session.commit()

        suffixes = iter(["TAKEN000", "FRESH111"])
        monkeypatch.setattr(generator_module, "random_suffix", lambda length=None: next(suffixes))

        code = await PromoCodeGenerator(session).generate(restaurant_id)

    assert code == "PROMO-FRESH111"


@pytest.mark.asyncio
async def test_collision_is_scoped_to_restaurant(session_factory, monkeypatch) -> None:
    async with session_factory() as session:
        session.add(_promo(uuid4(), "PROMO-SHARED00"))
        await session.commit()

        monkeypatch.setattr(generator_module, "random_suffix", lambda length=None: "SHARED00")

        code = await PromoCodeGenerator(session).generate(uuid4())

    assert code == "PROMO-SHARED00"


@pytest.mark.asyncio
async def test_generator_gives_up_after_attempt_budget(session_factory, monkeypatch) -> None:
    restaurant_id = uuid4()
    async with session_factory() as session:
        session.add(_promo(restaurant_id, "VIP-AAAAAAAA"))
        await session.commit()

        monkeypatch.setattr(generator_module, "random_suffix", lambda length=None: "AAAAAAAA")

        with pytest.raises(PromoCodeGenerationError):
            await PromoCodeGenerator(session, max_attempts=3).generate(restaurant_id, "vip")


def test_normalize_prefix_defaults_and_strips() -> None:
    assert normalize_prefix(None) == "PROMO"
    assert normalize_prefix("  ") == "PROMO"
    assert normalize_prefix(" happy hour ") == "HAPPYHOUR"
    assert normalize_prefix("fall-") == "FALL"

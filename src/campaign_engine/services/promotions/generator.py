"""Collision-checked promo code generation."""

from __future__ import annotations

import secrets
import string
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_engine.core.settings import settings
from campaign_engine.models.promo import PromoCode
from campaign_engine.services.promotions.errors import PromoCodeGenerationError


_ALPHABET = string.ascii_uppercase + string.digits


def normalize_prefix(prefix: str | None) -> str:
    cleaned = "".join(ch for ch in (prefix or "").strip().upper() if ch.isalnum() or ch in "_-")
    return cleaned.strip("-") or settings.promo_code_default_prefix


def random_suffix(length: int | None = None) -> str:
    size = length or settings.promo_code_suffix_length
    return "".join(secrets.choice(_ALPHABET) for _ in range(size))


class PromoCodeGenerator:
    """Produce ``PREFIX-XXXXXXXX`` codes unused within a restaurant.

    The pre-check only avoids known collisions; the unique constraint on
    ``(restaurant_id, code)`` still decides at insert time.
    """

    def __init__(self, session: AsyncSession, *, max_attempts: int | None = None) -> None:
        self._session = session
        self._max_attempts = max_attempts or settings.promo_code_generation_attempts

    async def generate(self, restaurant_id: UUID, prefix: str | None = None) -> str:
        normalized = normalize_prefix(prefix)
        for attempt in range(1, self._max_attempts + 1):
            candidate = f"{normalized}-{random_suffix()}"
            if not await self.code_exists(restaurant_id, candidate):
                return candidate
            logger.debug(
                "Promo code collision, retrying",
                restaurant_id=str(restaurant_id),
                attempt=attempt,
            )

        logger.error(
            "Promo code generation exhausted attempts",
            restaurant_id=str(restaurant_id),
            prefix=normalized,
            attempts=self._max_attempts,
        )
        raise PromoCodeGenerationError(
            f"Could not generate a unique promo code with prefix {normalized}"
        )

    async def code_exists(self, restaurant_id: UUID, code: str) -> bool:
        stmt = select(PromoCode.id).where(
            PromoCode.restaurant_id == restaurant_id,
            PromoCode.code == code,
        )
        result = await self._session.execute(stmt)
        return result.first() is not None


__all__ = ["PromoCodeGenerator", "normalize_prefix", "random_suffix"]

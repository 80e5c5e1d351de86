"""Promo code issuance, validation, and redemption."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal
from uuid import UUID

from loguru import logger
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from campaign_engine.core.settings import settings
from campaign_engine.models.promo import (
    PromoCode,
    PromoDiscountTypeEnum,
    PromoOrderTypeEnum,
    PromoRedemption,
)
from campaign_engine.observability.campaigns import get_campaign_store
from campaign_engine.observability.tracing import campaign_span
from campaign_engine.services.customers import CustomerNotFoundError, require_customer
from campaign_engine.services.promotions.errors import (
    DuplicatePromoCodeError,
    PromoCodeNotFoundError,
    PromoContentionError,
    PromoInvariantViolation,
    PromoRejectedError,
    PromoRejectionReason,
    rejection_message,
)
from campaign_engine.services.promotions.generator import PromoCodeGenerator


CENT = Decimal("0.01")
OrderChannel = Literal["eats", "delivery"]

# Postgres SQLSTATEs for serialization failure, deadlock, and lock_not_available.
_CONTENTION_SQLSTATES = {"40001", "40P01", "55P03"}


@dataclass(slots=True)
class PromoValidationResult:
    """Outcome of a side-effect free promo code check."""

    valid: bool
    reason: PromoRejectionReason | None = None
    message: str | None = None
    promo_code_id: UUID | None = None
    code: str | None = None
    discount_amount: Decimal = Decimal("0.00")
    discount_type: PromoDiscountTypeEnum | None = None
    discount_value: Decimal | None = None
    order_type: PromoOrderTypeEnum | None = None
    campaign_id: UUID | None = None


@dataclass(slots=True)
class PromoUsageSummary:
    promo_code_id: UUID
    cached_total_uses: int
    redemption_count: int
    max_uses: int | None

    @property
    def consistent(self) -> bool:
        return self.cached_total_uses == self.redemption_count


def compute_discount(
    discount_type: PromoDiscountTypeEnum,
    discount_value: Decimal,
    order_amount: Decimal,
) -> Decimal:
    """Return the discount for ``order_amount``, rounded to cents and capped at the order total."""

    amount = Decimal(order_amount)
    value = Decimal(discount_value)
    if discount_type == PromoDiscountTypeEnum.PERCENTAGE:
        raw = amount * value / Decimal("100")
    else:
        raw = value
    discount = raw.quantize(CENT, rounding=ROUND_HALF_UP)
    return max(Decimal("0.00"), min(discount, amount.quantize(CENT, rounding=ROUND_HALF_UP)))


def _ensure_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_contention(error: DBAPIError) -> bool:
    if isinstance(error, OperationalError):
        return True
    sqlstate = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
    return sqlstate in _CONTENTION_SQLSTATES


class PromoCodeService:
    """Issue, validate, and redeem restaurant promo codes.

    ``validate`` never writes. ``redeem`` owns the session transaction: it
    commits on success and rolls back on every failure path, so callers must
    not hold unrelated pending changes on the same session.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
    ) -> None:
        self._db = session
        self._max_attempts = max(1, max_attempts or settings.promo_redeem_max_attempts)
        self._backoff_seconds = (
            settings.promo_redeem_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self._backoff_max_seconds = (
            settings.promo_redeem_backoff_max_seconds if backoff_max_seconds is None else backoff_max_seconds
        )

    async def create_code(
        self,
        restaurant_id: UUID,
        *,
        discount_type: PromoDiscountTypeEnum,
        discount_value: Decimal,
        valid_until: datetime,
        code: str | None = None,
        prefix: str | None = None,
        campaign_id: UUID | None = None,
        min_spend: Decimal = Decimal("0"),
        max_uses: int | None = None,
        max_uses_per_customer: int = 1,
        order_type: PromoOrderTypeEnum = PromoOrderTypeEnum.ALL,
        valid_from: datetime | None = None,
        is_active: bool = True,
    ) -> PromoCode:
        """Persist a promo code, generating the text when none is supplied."""

        discount_value = Decimal(discount_value)
        if discount_value <= Decimal("0"):
            raise ValueError("Discount value must be positive")
        if discount_type == PromoDiscountTypeEnum.PERCENTAGE and discount_value > Decimal("100"):
            raise ValueError("Percentage discounts cannot exceed 100")
        if Decimal(min_spend) < Decimal("0"):
            raise ValueError("Minimum spend cannot be negative")
        if max_uses is not None and max_uses < 1:
            raise ValueError("max_uses must be at least 1 when set")
        if max_uses_per_customer < 1:
            raise ValueError("max_uses_per_customer must be at least 1")

        starts_at = _ensure_aware(valid_from) or datetime.now(timezone.utc)
        ends_at = _ensure_aware(valid_until)
        if ends_at <= starts_at:
            raise ValueError("valid_until must be after valid_from")

        if code:
            text = code.strip().upper()
        else:
            text = await PromoCodeGenerator(self._db).generate(restaurant_id, prefix)

        promo = PromoCode(
            restaurant_id=restaurant_id,
            campaign_id=campaign_id,
            code=text,
            discount_type=discount_type,
            discount_value=discount_value,
            min_spend=Decimal(min_spend),
            max_uses=max_uses,
            max_uses_per_customer=max_uses_per_customer,
            total_uses=0,
            order_type=order_type,
            valid_from=starts_at,
            valid_until=ends_at,
            is_active=is_active,
        )
        self._db.add(promo)
        try:
            await self._db.flush()
        except IntegrityError as error:
            await self._db.rollback()
            logger.warning(
                "Promo code insert rejected by unique constraint",
                restaurant_id=str(restaurant_id),
                code=text,
            )
            raise DuplicatePromoCodeError(text) from error

        await self._db.commit()
        logger.info(
            "Created promo code",
            promo_code_id=str(promo.id),
            restaurant_id=str(restaurant_id),
            campaign_id=str(campaign_id) if campaign_id else None,
            code=text,
        )
        return promo

    async def deactivate_code(self, restaurant_id: UUID, promo_code_id: UUID) -> PromoCode:
        promo = await self._get_code(restaurant_id, promo_code_id)
        promo.is_active = False
        await self._db.commit()
        logger.info("Deactivated promo code", promo_code_id=str(promo_code_id))
        return promo

    async def get_by_code(self, restaurant_id: UUID, code: str) -> PromoCode | None:
        stmt = select(PromoCode).where(
            PromoCode.restaurant_id == restaurant_id,
            PromoCode.code == code.strip().upper(),
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def validate(
        self,
        restaurant_id: UUID,
        customer_id: UUID,
        code: str,
        order_amount: Decimal,
        *,
        order_type: OrderChannel | None = None,
        now: datetime | None = None,
    ) -> PromoValidationResult:
        """Preview whether ``code`` applies to the order; the answer is advisory."""

        order_amount = Decimal(order_amount)
        current_time = now or datetime.now(timezone.utc)
        await require_customer(self._db, restaurant_id, customer_id)
        promo = await self.get_by_code(restaurant_id, code)

        reason = await self._rejection_reason(
            promo,
            customer_id=customer_id,
            order_amount=order_amount,
            order_type=order_type,
            current_time=current_time,
        )
        store = get_campaign_store()
        if reason is not None:
            store.record_validation(reason.value)
            logger.info(
                "Promo code rejected",
                restaurant_id=str(restaurant_id),
                customer_id=str(customer_id),
                code=code,
                reason=reason.value,
            )
            return PromoValidationResult(
                valid=False,
                reason=reason,
                message=rejection_message(reason, min_spend=promo.min_spend if promo else None),
            )

        if promo is None:
            raise PromoCodeNotFoundError(f"Promo code {code} not found")
        discount = compute_discount(promo.discount_type, promo.discount_value, order_amount)
        store.record_validation("valid")
        return PromoValidationResult(
            valid=True,
            promo_code_id=promo.id,
            code=promo.code,
            discount_amount=discount,
            discount_type=promo.discount_type,
            discount_value=Decimal(promo.discount_value),
            order_type=promo.order_type,
            campaign_id=promo.campaign_id,
        )

    async def redeem(
        self,
        promo_code_id: UUID,
        customer_id: UUID,
        restaurant_id: UUID,
        order_amount: Decimal,
        discount_applied: Decimal,
        *,
        order_reference: str | None = None,
        order_type: OrderChannel | None = None,
        now: datetime | None = None,
    ) -> UUID:
        """Record a redemption and bump ``total_uses`` in one transaction.

        The caps are re-checked under a row lock and the counter moves with a
        compare-and-swap on the value that was read, so concurrent callers can
        never jointly exceed ``max_uses`` or ``max_uses_per_customer``.
        """

        order_amount = Decimal(order_amount)
        discount = min(Decimal(discount_applied), order_amount)
        if discount < Decimal("0"):
            raise ValueError("Discount cannot be negative")

        store = get_campaign_store()
        for attempt in range(1, self._max_attempts + 1):
            try:
                with campaign_span(
                    "promo_code.redeem_attempt",
                    promo_code_id=promo_code_id,
                    restaurant_id=restaurant_id,
                    attempt=attempt,
                ):
                    redemption_id = await self._attempt_redeem(
                        promo_code_id,
                        customer_id=customer_id,
                        restaurant_id=restaurant_id,
                        order_amount=order_amount,
                        discount=discount,
                        order_reference=order_reference,
                        order_type=order_type,
                        current_time=now or datetime.now(timezone.utc),
                    )
                if redemption_id is not None:
                    await self._db.commit()
            except (PromoRejectedError, PromoCodeNotFoundError, CustomerNotFoundError, PromoInvariantViolation):
                await self._db.rollback()
                raise
            except DBAPIError as error:
                await self._db.rollback()
                if not _is_contention(error):
                    raise
                logger.warning(
                    "Promo redemption hit a lock conflict",
                    promo_code_id=str(promo_code_id),
                    attempt=attempt,
                    error=str(error.orig),
                )
                redemption_id = None

            if redemption_id is not None:
                store.record_redemption("accepted")
                logger.info(
                    "Redeemed promo code",
                    promo_code_id=str(promo_code_id),
                    customer_id=str(customer_id),
                    redemption_id=str(redemption_id),
                    discount=str(discount),
                    attempt=attempt,
                )
                return redemption_id

            store.record_redemption_retry()
            if attempt < self._max_attempts:
                await asyncio.sleep(self._backoff_delay(attempt))

        store.record_redemption("contended")
        logger.error(
            "Promo redemption exhausted retries",
            promo_code_id=str(promo_code_id),
            customer_id=str(customer_id),
            attempts=self._max_attempts,
        )
        raise PromoContentionError(promo_code_id, self._max_attempts)

    async def validate_and_redeem(
        self,
        restaurant_id: UUID,
        customer_id: UUID,
        code: str,
        order_amount: Decimal,
        *,
        order_reference: str | None = None,
        order_type: OrderChannel | None = None,
    ) -> tuple[PromoValidationResult, UUID | None]:
        """Checkout helper: preview, then redeem if the preview passed."""

        result = await self.validate(
            restaurant_id, customer_id, code, order_amount, order_type=order_type
        )
        if not result.valid:
            return result, None
        redemption_id = await self.redeem(
            result.promo_code_id,
            customer_id,
            restaurant_id,
            order_amount,
            result.discount_amount,
            order_reference=order_reference,
            order_type=order_type,
        )
        return result, redemption_id

    async def usage_summary(self, restaurant_id: UUID, promo_code_id: UUID) -> PromoUsageSummary:
        promo = await self._get_code(restaurant_id, promo_code_id)
        counted = await self._count_redemptions(promo.id)
        return PromoUsageSummary(
            promo_code_id=promo.id,
            cached_total_uses=int(promo.total_uses or 0),
            redemption_count=counted,
            max_uses=promo.max_uses,
        )

    async def reconcile_usage(self, restaurant_id: UUID, promo_code_id: UUID) -> PromoUsageSummary:
        """Rewrite the cached ``total_uses`` from the redemption rows."""

        stmt = (
            select(PromoCode)
            .where(PromoCode.id == promo_code_id, PromoCode.restaurant_id == restaurant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        promo = (await self._db.execute(stmt)).scalar_one_or_none()
        if promo is None:
            await self._db.rollback()
            raise PromoCodeNotFoundError(f"Promo code {promo_code_id} not found")

        counted = await self._count_redemptions(promo.id)
        previous = int(promo.total_uses or 0)
        if previous != counted:
            logger.warning(
                "Promo usage cache drifted; rewriting from redemptions",
                promo_code_id=str(promo.id),
                cached=previous,
                counted=counted,
            )
        promo.total_uses = counted
        await self._db.commit()
        return PromoUsageSummary(
            promo_code_id=promo.id,
            cached_total_uses=counted,
            redemption_count=counted,
            max_uses=promo.max_uses,
        )

    async def _attempt_redeem(
        self,
        promo_code_id: UUID,
        *,
        customer_id: UUID,
        restaurant_id: UUID,
        order_amount: Decimal,
        discount: Decimal,
        order_reference: str | None,
        order_type: OrderChannel | None,
        current_time: datetime,
    ) -> UUID | None:
        stmt = (
            select(PromoCode)
            .where(PromoCode.id == promo_code_id, PromoCode.restaurant_id == restaurant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        promo = (await self._db.execute(stmt)).scalar_one_or_none()
        if promo is None:
            raise PromoCodeNotFoundError(f"Promo code {promo_code_id} not found")
        await require_customer(self._db, restaurant_id, customer_id)

        reason = await self._rejection_reason(
            promo,
            customer_id=customer_id,
            order_amount=order_amount,
            order_type=order_type,
            current_time=current_time,
        )
        if reason is not None:
            get_campaign_store().record_redemption(f"rejected:{reason.value}")
            raise PromoRejectedError(
                reason, rejection_message(reason, min_spend=promo.min_spend)
            )

        expected = int(promo.total_uses or 0)
        swap = (
            update(PromoCode)
            .where(
                PromoCode.id == promo.id,
                PromoCode.total_uses == expected,
                or_(PromoCode.max_uses.is_(None), PromoCode.total_uses < PromoCode.max_uses),
            )
            .values(total_uses=PromoCode.total_uses + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(swap)
        if result.rowcount != 1:
            logger.debug(
                "Promo usage counter moved underneath redemption",
                promo_code_id=str(promo_code_id),
                expected=expected,
            )
            # Rolling back expires ``promo``; nothing below may touch it.
            await self._db.rollback()
            return None

        redemption = PromoRedemption(
            promo_code_id=promo.id,
            customer_id=customer_id,
            restaurant_id=restaurant_id,
            order_amount=order_amount,
            discount_applied=discount,
            order_reference=order_reference,
            redeemed_at=current_time,
        )
        self._db.add(redemption)
        await self._db.flush()
        set_committed_value(promo, "total_uses", expected + 1)
        return redemption.id

    async def _rejection_reason(
        self,
        promo: PromoCode | None,
        *,
        customer_id: UUID,
        order_amount: Decimal,
        order_type: OrderChannel | None,
        current_time: datetime,
    ) -> PromoRejectionReason | None:
        if promo is None or not promo.is_active:
            return PromoRejectionReason.INVALID_OR_EXPIRED

        valid_from = _ensure_aware(promo.valid_from)
        valid_until = _ensure_aware(promo.valid_until)
        if (valid_from and valid_from > current_time) or (valid_until and valid_until < current_time):
            return PromoRejectionReason.INVALID_OR_EXPIRED
        if not self._order_type_matches(promo.order_type, order_type):
            return PromoRejectionReason.INVALID_OR_EXPIRED

        total_uses = int(promo.total_uses or 0)
        if promo.max_uses is not None:
            if total_uses > promo.max_uses:
                logger.error(
                    "Promo code usage already above its cap",
                    promo_code_id=str(promo.id),
                    total_uses=total_uses,
                    max_uses=promo.max_uses,
                )
                raise PromoInvariantViolation(promo.id, total_uses, promo.max_uses)
            if total_uses >= promo.max_uses:
                return PromoRejectionReason.USAGE_LIMIT_REACHED

        customer_uses = await self._count_redemptions(promo.id, customer_id=customer_id)
        if customer_uses >= (promo.max_uses_per_customer or 1):
            return PromoRejectionReason.ALREADY_USED

        if order_amount < Decimal(promo.min_spend or 0):
            return PromoRejectionReason.MINIMUM_SPEND_NOT_MET

        return None

    @staticmethod
    def _order_type_matches(promo_order_type: PromoOrderTypeEnum | None, order_channel: OrderChannel | None) -> bool:
        if promo_order_type in (None, PromoOrderTypeEnum.ALL) or order_channel is None:
            return True
        if promo_order_type == PromoOrderTypeEnum.EATS_ONLY:
            return order_channel == "eats"
        return order_channel == "delivery"

    async def _count_redemptions(self, promo_code_id: UUID, *, customer_id: UUID | None = None) -> int:
        stmt = select(func.count(PromoRedemption.id)).where(PromoRedemption.promo_code_id == promo_code_id)
        if customer_id is not None:
            stmt = stmt.where(PromoRedemption.customer_id == customer_id)
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)

    async def _get_code(self, restaurant_id: UUID, promo_code_id: UUID) -> PromoCode:
        stmt = select(PromoCode).where(
            PromoCode.id == promo_code_id,
            PromoCode.restaurant_id == restaurant_id,
        )
        promo = (await self._db.execute(stmt)).scalar_one_or_none()
        if promo is None:
            raise PromoCodeNotFoundError(f"Promo code {promo_code_id} not found")
        return promo

    def _backoff_delay(self, attempt: int) -> float:
        return min(self._backoff_max_seconds, self._backoff_seconds * (2 ** (attempt - 1)))


__all__ = [
    "PromoCodeService",
    "PromoUsageSummary",
    "PromoValidationResult",
    "compute_discount",
]

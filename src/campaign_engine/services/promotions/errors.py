"""Promo code specific failures."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from uuid import UUID

from campaign_engine.errors import (
    BusinessRuleRejection,
    CampaignEngineError,
    InvariantViolationError,
    NotFoundError,
    TransientContentionError,
)


class PromoRejectionReason(str, Enum):
    """Business-rule rejections, in evaluation order."""

    INVALID_OR_EXPIRED = "invalid_or_expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    ALREADY_USED = "already_used"
    MINIMUM_SPEND_NOT_MET = "minimum_spend_not_met"


def rejection_message(reason: PromoRejectionReason, *, min_spend: Decimal | None = None) -> str:
    if reason is PromoRejectionReason.INVALID_OR_EXPIRED:
        return "Invalid or expired promo code"
    if reason is PromoRejectionReason.USAGE_LIMIT_REACHED:
        return "Promo code usage limit reached"
    if reason is PromoRejectionReason.ALREADY_USED:
        return "You have already used this promo code"
    amount = Decimal(min_spend if min_spend is not None else 0).quantize(Decimal("0.01"))
    return f"Minimum spend of {amount} required"


class PromoCodeNotFoundError(NotFoundError):
    """Raised when a promo code id is unknown for the restaurant."""


class PromoRejectedError(BusinessRuleRejection):
    """Raised by ``redeem`` when the in-transaction checks refuse the attempt."""

    def __init__(self, reason: PromoRejectionReason, message: str | None = None) -> None:
        super().__init__(message or rejection_message(reason))
        self.reason = reason


class PromoContentionError(TransientContentionError):
    """Raised when a redemption lost every optimistic retry."""

    def __init__(self, promo_code_id: UUID, attempts: int) -> None:
        super().__init__(f"Promo code {promo_code_id} is busy; gave up after {attempts} attempts")
        self.promo_code_id = promo_code_id
        self.attempts = attempts


class PromoInvariantViolation(InvariantViolationError):
    """Raised when ``total_uses`` already exceeds ``max_uses``."""

    def __init__(self, promo_code_id: UUID, total_uses: int, max_uses: int) -> None:
        super().__init__(
            f"Promo code {promo_code_id} has total_uses={total_uses} above max_uses={max_uses}"
        )
        self.promo_code_id = promo_code_id
        self.total_uses = total_uses
        self.max_uses = max_uses


class PromoCodeGenerationError(CampaignEngineError):
    """Raised when no free code could be produced within the attempt budget."""


class DuplicatePromoCodeError(BusinessRuleRejection):
    """Raised when the (restaurant, code) unique constraint rejects an insert."""

    def __init__(self, code: str) -> None:
        super().__init__(f"Promo code {code} already exists for this restaurant")
        self.code = code

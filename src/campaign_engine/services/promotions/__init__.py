"""Promo code services."""

from .errors import (
    DuplicatePromoCodeError,
    PromoCodeGenerationError,
    PromoCodeNotFoundError,
    PromoContentionError,
    PromoInvariantViolation,
    PromoRejectedError,
    PromoRejectionReason,
)
from .generator import PromoCodeGenerator
from .service import PromoCodeService, PromoUsageSummary, PromoValidationResult, compute_discount

__all__ = [
    "DuplicatePromoCodeError",
    "PromoCodeGenerationError",
    "PromoCodeGenerator",
    "PromoCodeNotFoundError",
    "PromoCodeService",
    "PromoContentionError",
    "PromoInvariantViolation",
    "PromoRejectedError",
    "PromoRejectionReason",
    "PromoUsageSummary",
    "PromoValidationResult",
    "compute_discount",
]

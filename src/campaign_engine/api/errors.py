"""Translate service exceptions into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status
from loguru import logger

from campaign_engine.errors import (
    BusinessRuleRejection,
    CampaignEngineError,
    InvariantViolationError,
    NotFoundError,
    TransientContentionError,
)
from campaign_engine.services.campaigns.errors import InvalidCampaignTransitionError
from campaign_engine.services.promotions.errors import PromoRejectedError

RETRY_AFTER_SECONDS = 1


def to_http_exception(error: CampaignEngineError) -> HTTPException:
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, TransientContentionError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(error),
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )
    if isinstance(error, InvariantViolationError):
        logger.error("Invariant violation surfaced to API", error=str(error))
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
    if isinstance(error, PromoRejectedError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"reason": error.reason.value, "message": str(error)},
        )
    if isinstance(error, (InvalidCampaignTransitionError, BusinessRuleRejection)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    logger.error("Unmapped campaign engine error", error=str(error), error_type=type(error).__name__)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


__all__ = ["RETRY_AFTER_SECONDS", "to_http_exception"]

"""Promo code issuance, checkout validation, and redemption endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_engine.api.errors import to_http_exception
from campaign_engine.db.session import get_session
from campaign_engine.errors import CampaignEngineError
from campaign_engine.models.promo import PromoCode, PromoDiscountTypeEnum, PromoOrderTypeEnum
from campaign_engine.services.promotions import (
    PromoCodeGenerator,
    PromoCodeService,
    PromoUsageSummary,
    PromoValidationResult,
)


router = APIRouter(prefix="/promo-codes", tags=["promo-codes"])


class PromoCodeCreateRequest(BaseModel):
    restaurantId: UUID
    code: Optional[str] = Field(None, description="Explicit code text; generated when omitted")
    prefix: Optional[str] = Field(None, description="Prefix used when generating the code")
    campaignId: Optional[UUID] = None
    discountType: PromoDiscountTypeEnum
    discountValue: Decimal = Field(..., gt=0)
    minSpend: Decimal = Field(Decimal("0"), ge=0)
    maxUses: Optional[int] = Field(None, ge=1)
    maxUsesPerCustomer: int = Field(1, ge=1)
    orderType: PromoOrderTypeEnum = PromoOrderTypeEnum.ALL
    validFrom: Optional[datetime] = None
    validUntil: datetime


class PromoCodeResponse(BaseModel):
    id: UUID
    restaurantId: UUID
    campaignId: Optional[UUID]
    code: str
    discountType: PromoDiscountTypeEnum
    discountValue: Decimal
    minSpend: Decimal
    maxUses: Optional[int]
    maxUsesPerCustomer: int
    totalUses: int
    orderType: PromoOrderTypeEnum
    validFrom: datetime
    validUntil: datetime
    isActive: bool


class PromoCodeGenerateRequest(BaseModel):
    restaurantId: UUID
    prefix: Optional[str] = None


class PromoCodeGenerateResponse(BaseModel):
    code: str


class PromoValidateRequest(BaseModel):
    restaurantId: UUID
    customerId: UUID
    code: str = Field(..., min_length=1)
    orderAmount: Decimal = Field(..., ge=0)
    orderType: Optional[Literal["eats", "delivery"]] = None


class PromoValidateResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    promoCodeId: Optional[UUID] = None
    code: Optional[str] = None
    discountAmount: Optional[Decimal] = None
    discountType: Optional[PromoDiscountTypeEnum] = None
    discountValue: Optional[Decimal] = None
    orderType: Optional[PromoOrderTypeEnum] = None
    campaignId: Optional[UUID] = None


class PromoRedeemRequest(BaseModel):
    promoCodeId: UUID
    restaurantId: UUID
    customerId: UUID
    orderAmount: Decimal = Field(..., ge=0)
    discountApplied: Decimal = Field(..., ge=0)
    orderReference: Optional[str] = None
    orderType: Optional[Literal["eats", "delivery"]] = None


class PromoRedeemResponse(BaseModel):
    redemptionId: UUID
    promoCodeId: UUID
    discountApplied: Decimal


class PromoUsageResponse(BaseModel):
    promoCodeId: UUID
    cachedTotalUses: int
    redemptionCount: int
    maxUses: Optional[int]
    consistent: bool


@router.post("", response_model=PromoCodeResponse, status_code=status.HTTP_201_CREATED)
async def create_promo_code(
    payload: PromoCodeCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> PromoCodeResponse:
    service = PromoCodeService(db)
    try:
        promo = await service.create_code(
            payload.restaurantId,
            discount_type=payload.discountType,
            discount_value=payload.discountValue,
            valid_until=payload.validUntil,
            valid_from=payload.validFrom,
            code=payload.code,
            prefix=payload.prefix,
            campaign_id=payload.campaignId,
            min_spend=payload.minSpend,
            max_uses=payload.maxUses,
            max_uses_per_customer=payload.maxUsesPerCustomer,
            order_type=payload.orderType,
        )
    except ValueError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_promo(promo)


@router.post("/generate", response_model=PromoCodeGenerateResponse)
async def generate_promo_code(
    payload: PromoCodeGenerateRequest,
    db: AsyncSession = Depends(get_session),
) -> PromoCodeGenerateResponse:
    """Return an unused code text without persisting it."""

    try:
        code = await PromoCodeGenerator(db).generate(payload.restaurantId, payload.prefix)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return PromoCodeGenerateResponse(code=code)


@router.post("/validate", response_model=PromoValidateResponse)
async def validate_promo_code(
    payload: PromoValidateRequest,
    db: AsyncSession = Depends(get_session),
) -> PromoValidateResponse:
    """Preview a code at checkout; business-rule rejections are returned, not raised."""

    service = PromoCodeService(db)
    try:
        result = await service.validate(
            payload.restaurantId,
            payload.customerId,
            payload.code,
            payload.orderAmount,
            order_type=payload.orderType,
        )
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_validation(result)


@router.post("/redeem", response_model=PromoRedeemResponse, status_code=status.HTTP_201_CREATED)
async def redeem_promo_code(
    payload: PromoRedeemRequest,
    db: AsyncSession = Depends(get_session),
) -> PromoRedeemResponse:
    service = PromoCodeService(db)
    try:
        redemption_id = await service.redeem(
            payload.promoCodeId,
            payload.customerId,
            payload.restaurantId,
            payload.orderAmount,
            payload.discountApplied,
            order_reference=payload.orderReference,
            order_type=payload.orderType,
        )
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return PromoRedeemResponse(
        redemptionId=redemption_id,
        promoCodeId=payload.promoCodeId,
        discountApplied=min(payload.discountApplied, payload.orderAmount),
    )


@router.post("/{promo_code_id}/deactivate", response_model=PromoCodeResponse)
async def deactivate_promo_code(
    promo_code_id: UUID,
    restaurant_id: UUID = Query(..., alias="restaurantId"),
    db: AsyncSession = Depends(get_session),
) -> PromoCodeResponse:
    try:
        promo = await PromoCodeService(db).deactivate_code(restaurant_id, promo_code_id)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_promo(promo)


@router.post("/{promo_code_id}/reconcile", response_model=PromoUsageResponse)
async def reconcile_promo_usage(
    promo_code_id: UUID,
    restaurant_id: UUID = Query(..., alias="restaurantId"),
    db: AsyncSession = Depends(get_session),
) -> PromoUsageResponse:
    """Rewrite the cached usage counter from the redemption history."""

    try:
        summary = await PromoCodeService(db).reconcile_usage(restaurant_id, promo_code_id)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_usage(summary)


@router.get("/{promo_code_id}/usage", response_model=PromoUsageResponse)
async def get_promo_usage(
    promo_code_id: UUID,
    restaurant_id: UUID = Query(..., alias="restaurantId"),
    db: AsyncSession = Depends(get_session),
) -> PromoUsageResponse:
    try:
        summary = await PromoCodeService(db).usage_summary(restaurant_id, promo_code_id)
    except CampaignEngineError as error:
        raise to_http_exception(error) from error
    return _serialize_usage(summary)


def _serialize_promo(promo: PromoCode) -> PromoCodeResponse:
    return PromoCodeResponse(
        id=promo.id,
        restaurantId=promo.restaurant_id,
        campaignId=promo.campaign_id,
        code=promo.code,
        discountType=promo.discount_type,
        discountValue=Decimal(promo.discount_value),
        minSpend=Decimal(promo.min_spend or 0),
        maxUses=promo.max_uses,
        maxUsesPerCustomer=promo.max_uses_per_customer,
        totalUses=promo.total_uses or 0,
        orderType=promo.order_type,
        validFrom=promo.valid_from,
        validUntil=promo.valid_until,
        isActive=promo.is_active,
    )


def _serialize_validation(result: PromoValidationResult) -> PromoValidateResponse:
    if not result.valid:
        return PromoValidateResponse(
            valid=False,
            reason=result.reason.value if result.reason else None,
            message=result.message,
        )
    return PromoValidateResponse(
        valid=True,
        promoCodeId=result.promo_code_id,
        code=result.code,
        discountAmount=result.discount_amount,
        discountType=result.discount_type,
        discountValue=result.discount_value,
        orderType=result.order_type,
        campaignId=result.campaign_id,
    )


def _serialize_usage(summary: PromoUsageSummary) -> PromoUsageResponse:
    return PromoUsageResponse(
        promoCodeId=summary.promo_code_id,
        cachedTotalUses=summary.cached_total_uses,
        redemptionCount=summary.redemption_count,
        maxUses=summary.max_uses,
        consistent=summary.consistent,
    )

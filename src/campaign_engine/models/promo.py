"""Promo code and redemption models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from campaign_engine.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PromoDiscountTypeEnum(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class PromoOrderTypeEnum(str, Enum):
    ALL = "all"
    EATS_ONLY = "eats_only"
    DELIVERY_ONLY = "delivery_only"


class PromoCode(Base):
    """Discount code scoped to a restaurant, optionally tied to a campaign.

    ``total_uses`` caches the number of redemption rows and is only written by
    the redemption path (or an explicit reconcile).
    """

    __tablename__ = "promo_codes"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "code", name="uq_promo_codes_restaurant_code"),
        CheckConstraint("total_uses >= 0", name="ck_promo_codes_total_uses_non_negative"),
        CheckConstraint("max_uses_per_customer >= 1", name="ck_promo_codes_per_customer_positive"),
        Index("ix_promo_codes_validity", "is_active", "valid_from", "valid_until"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(
        UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True, index=True
    )
    restaurant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    code = Column(String, nullable=False)
    discount_type = Column(
        SqlEnum(
            PromoDiscountTypeEnum,
            name="promo_discount_type_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    discount_value = Column(Numeric(10, 2), nullable=False)
    min_spend = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    max_uses = Column(Integer, nullable=True)
    max_uses_per_customer = Column(Integer, nullable=False, default=1, server_default="1")
    total_uses = Column(Integer, nullable=False, default=0, server_default="0")
    order_type = Column(
        SqlEnum(
            PromoOrderTypeEnum,
            name="promo_order_type_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=PromoOrderTypeEnum.ALL,
        server_default=PromoOrderTypeEnum.ALL.value,
    )
    valid_from = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    valid_until = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    campaign = relationship("Campaign", back_populates="promo_codes")
    redemptions = relationship(
        "PromoRedemption", back_populates="promo_code", cascade="all, delete-orphan", passive_deletes=True
    )


class PromoRedemption(Base):
    """Immutable record of one accepted promo code use."""

    __tablename__ = "promo_code_redemptions"
    __table_args__ = (
        Index("ix_promo_code_redemptions_code_customer", "promo_code_id", "customer_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    promo_code_id = Column(
        UUID(as_uuid=True), ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_id = Column(
        UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    restaurant_id = Column(UUID(as_uuid=True), nullable=False)
    order_amount = Column(Numeric(10, 2), nullable=False)
    discount_applied = Column(Numeric(10, 2), nullable=False)
    order_reference = Column(String, nullable=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    promo_code = relationship("PromoCode", back_populates="redemptions")

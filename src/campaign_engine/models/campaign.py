"""Campaign lifecycle, send ledger, metrics, and audit log models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SqlEnum,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from campaign_engine.db.base import Base


def _enum_values(enum: type[Enum]) -> list[str]:
    return [member.value for member in enum]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CampaignTypeEnum(str, Enum):
    """Scheduling flavour of a campaign."""

    ONE_TIME = "one_time"
    SCHEDULED = "scheduled"
    RECURRING = "recurring"
    AB_TEST = "ab_test"


class CampaignStatusEnum(str, Enum):
    """Campaign lifecycle states."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class CampaignChannelEnum(str, Enum):
    """Outbound channels handled by the delivery collaborator."""

    PUSH = "push"
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    SMS = "sms"


class CampaignSendStatusEnum(str, Enum):
    """Per-recipient delivery status."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"


TERMINAL_SEND_STATUSES = frozenset(
    {
        CampaignSendStatusEnum.SENT,
        CampaignSendStatusEnum.DELIVERED,
        CampaignSendStatusEnum.FAILED,
        CampaignSendStatusEnum.BOUNCED,
    }
)


class CampaignAuditActionEnum(str, Enum):
    """Actions recorded in the campaign audit log."""

    CREATED = "created"
    EDITED = "edited"
    SCHEDULED = "scheduled"
    UNSCHEDULED = "unscheduled"
    SENDING = "sending"
    SENT = "sent"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    RESUMED = "resumed"
    PREVIEW = "preview"


class Campaign(Base):
    """Marketing campaign owned by a restaurant."""

    __tablename__ = "campaigns"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    restaurant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    campaign_type = Column(
        "type",
        SqlEnum(CampaignTypeEnum, name="campaign_type_enum", values_callable=_enum_values),
        nullable=False,
        default=CampaignTypeEnum.ONE_TIME,
    )
    status = Column(
        SqlEnum(CampaignStatusEnum, name="campaign_status_enum", values_callable=_enum_values),
        nullable=False,
        default=CampaignStatusEnum.DRAFT,
        server_default=CampaignStatusEnum.DRAFT.value,
        index=True,
    )
    primary_channel = Column(
        SqlEnum(CampaignChannelEnum, name="campaign_channel_enum", values_callable=_enum_values),
        nullable=False,
    )
    fallback_channel = Column(
        SqlEnum(CampaignChannelEnum, name="campaign_channel_enum", values_callable=_enum_values),
        nullable=True,
    )
    audience_type = Column(String, nullable=False, default="all")
    audience_filter = Column(JSON, nullable=False, default=dict)
    estimated_audience_size = Column(Integer, nullable=False, default=0, server_default="0")
    scheduled_at = Column(DateTime(timezone=True), nullable=True, index=True)
    recurring_config = Column(JSON, nullable=True)
    ab_test_config = Column(JSON, nullable=True)
    created_by = Column(String(255), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    messages = relationship("CampaignMessage", back_populates="campaign", cascade="all, delete-orphan")
    sends = relationship(
        "CampaignSend", back_populates="campaign", cascade="all, delete-orphan", passive_deletes=True
    )
    metrics = relationship(
        "CampaignMetrics", back_populates="campaign", cascade="all, delete-orphan", uselist=False
    )
    audit_entries = relationship(
        "CampaignAuditLogEntry", back_populates="campaign", cascade="all, delete-orphan"
    )
    promo_codes = relationship("PromoCode", back_populates="campaign")


class CampaignMessage(Base):
    """Per-channel message template, optionally bound to an A/B variant."""

    __tablename__ = "campaign_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(
        UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    channel = Column(
        SqlEnum(CampaignChannelEnum, name="campaign_channel_enum", values_callable=_enum_values),
        nullable=False,
    )
    subject = Column(String, nullable=True)
    message_template = Column(Text, nullable=False)
    variables = Column(JSON, nullable=False, default=dict)
    ab_variant = Column(String(1), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    campaign = relationship("Campaign", back_populates="messages")


class CampaignSend(Base):
    """One outbound attempt for one recipient of a campaign."""

    __tablename__ = "campaign_sends"
    __table_args__ = (
        UniqueConstraint("campaign_id", "customer_id", name="uq_campaign_sends_campaign_customer"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(
        UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_id = Column(
        UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    channel_used = Column(
        SqlEnum(CampaignChannelEnum, name="campaign_channel_enum", values_callable=_enum_values),
        nullable=False,
    )
    status = Column(
        SqlEnum(CampaignSendStatusEnum, name="campaign_send_status_enum", values_callable=_enum_values),
        nullable=False,
        default=CampaignSendStatusEnum.PENDING,
        server_default=CampaignSendStatusEnum.PENDING.value,
        index=True,
    )
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    clicked_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    promo_code_assigned = Column(String, nullable=True)
    ab_variant = Column(String(1), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    campaign = relationship("Campaign", back_populates="sends")


class CampaignMetrics(Base):
    """Aggregate counters derived entirely from campaign sends and redemptions."""

    __tablename__ = "campaign_metrics"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(
        UUID(as_uuid=True),
        ForeignKey("campaigns.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    total_targeted = Column(Integer, nullable=False, default=0, server_default="0")
    total_sent = Column(Integer, nullable=False, default=0, server_default="0")
    total_delivered = Column(Integer, nullable=False, default=0, server_default="0")
    total_failed = Column(Integer, nullable=False, default=0, server_default="0")
    total_bounced = Column(Integer, nullable=False, default=0, server_default="0")
    total_opened = Column(Integer, nullable=False, default=0, server_default="0")
    total_clicked = Column(Integer, nullable=False, default=0, server_default="0")
    total_redemptions = Column(Integer, nullable=False, default=0, server_default="0")
    total_discount_given = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    total_revenue_generated = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    delivery_rate = Column(Float, nullable=False, default=0.0, server_default="0")
    open_rate = Column(Float, nullable=False, default=0.0, server_default="0")
    click_rate = Column(Float, nullable=False, default=0.0, server_default="0")
    last_activity_at = Column(DateTime(timezone=True), nullable=True)

    campaign = relationship("Campaign", back_populates="metrics")


class CampaignAuditLogEntry(Base):
    """Append-only record of campaign lifecycle actions."""

    __tablename__ = "campaign_audit_log"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(
        UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action = Column(
        SqlEnum(CampaignAuditActionEnum, name="campaign_audit_action_enum", values_callable=_enum_values),
        nullable=False,
    )
    performed_by = Column(String(255), nullable=True)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=True)
    changes = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    campaign = relationship("Campaign", back_populates="audit_entries")

"""SQLAlchemy models package."""

from .customer import Customer, CustomerTag, CustomerTagAssignment  # noqa: F401
from .campaign import (  # noqa: F401
    TERMINAL_SEND_STATUSES,
    Campaign,
    CampaignAuditActionEnum,
    CampaignAuditLogEntry,
    CampaignChannelEnum,
    CampaignMessage,
    CampaignMetrics,
    CampaignSend,
    CampaignSendStatusEnum,
    CampaignStatusEnum,
    CampaignTypeEnum,
)
from .promo import (  # noqa: F401
    PromoCode,
    PromoDiscountTypeEnum,
    PromoOrderTypeEnum,
    PromoRedemption,
)

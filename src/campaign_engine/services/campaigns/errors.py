"""Campaign lifecycle failures."""

from __future__ import annotations

from campaign_engine.errors import BusinessRuleRejection, CampaignEngineError, NotFoundError
from campaign_engine.models.campaign import CampaignStatusEnum


class CampaignNotFoundError(NotFoundError):
    """Raised when a campaign id is unknown."""


class CampaignSendNotFoundError(NotFoundError):
    """Raised when a send ledger row is unknown."""


class InvalidCampaignTransitionError(CampaignEngineError):
    """Raised when a lifecycle change is not allowed from the current status."""

    def __init__(
        self,
        current_status: CampaignStatusEnum,
        requested_status: CampaignStatusEnum,
        hint: str | None = None,
    ) -> None:
        message = f"Cannot transition campaign from {current_status.value} to {requested_status.value}"
        if hint:
            message = f"{message}; {hint}"
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status


class CampaignDispatchHaltedError(BusinessRuleRejection):
    """Raised when sends are requested for a cancelled or completed campaign."""

    def __init__(self, campaign_id, status: CampaignStatusEnum) -> None:
        super().__init__(f"Campaign {campaign_id} is {status.value}; no further sends are accepted")
        self.campaign_id = campaign_id
        self.status = status


class CampaignNotEditableError(BusinessRuleRejection):
    """Raised when edits are attempted outside the draft state."""

    def __init__(self, campaign_id, status: CampaignStatusEnum) -> None:
        super().__init__(f"Campaign {campaign_id} is {status.value}; only drafts can be edited")
        self.campaign_id = campaign_id
        self.status = status


class CampaignNotDueError(BusinessRuleRejection):
    """Raised when a scheduled campaign is dispatched before its ``scheduled_at``."""

    def __init__(self, campaign_id, scheduled_at) -> None:
        super().__init__(f"Campaign {campaign_id} is not due until {scheduled_at.isoformat()}")
        self.campaign_id = campaign_id
        self.scheduled_at = scheduled_at

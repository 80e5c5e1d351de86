"""Campaign lifecycle services."""

from .errors import (
    CampaignDispatchHaltedError,
    CampaignNotDueError,
    CampaignNotEditableError,
    CampaignNotFoundError,
    CampaignSendNotFoundError,
    InvalidCampaignTransitionError,
)
from .metrics import CampaignMetricsAggregator, CampaignMetricsValues, metrics_payload
from .orchestrator import (
    AudiencePreview,
    CampaignOrchestrator,
    CampaignTransitionResult,
    DispatchOutcome,
)
from .send_ledger import CampaignSendLedger

__all__ = [
    "AudiencePreview",
    "CampaignDispatchHaltedError",
    "CampaignMetricsAggregator",
    "CampaignMetricsValues",
    "CampaignNotDueError",
    "CampaignNotEditableError",
    "CampaignNotFoundError",
    "CampaignOrchestrator",
    "CampaignSendLedger",
    "CampaignSendNotFoundError",
    "CampaignTransitionResult",
    "DispatchOutcome",
    "InvalidCampaignTransitionError",
    "metrics_payload",
]

"""Background workers."""

from .campaign_dispatch import CampaignDispatchWorker  # noqa: F401

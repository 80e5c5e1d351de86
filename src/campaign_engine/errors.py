"""Error taxonomy shared by the engine services."""

from __future__ import annotations


class CampaignEngineError(RuntimeError):
    """Base exception for campaign engine failures."""


class NotFoundError(CampaignEngineError):
    """Raised when a code, campaign, send, or customer is missing in scope."""


class BusinessRuleRejection(CampaignEngineError):
    """Raised when a request is well-formed but rejected by a business rule."""


class TransientContentionError(CampaignEngineError):
    """Raised when concurrent writers exhausted the retry budget.

    The operation left no partial state behind and may be retried as a whole.
    """


class InvariantViolationError(CampaignEngineError):
    """Raised when persisted state already breaks a domain invariant."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class CampaignEngineSnapshot:
    promo_validations: Dict[str, int]
    promo_redemptions: Dict[str, int]
    transitions: Dict[str, int]
    dispatch: Dict[str, int]
    metrics: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "promo_validations": dict(self.promo_validations),
            "promo_redemptions": dict(self.promo_redemptions),
            "transitions": dict(self.transitions),
            "dispatch": dict(self.dispatch),
            "metrics": dict(self.metrics),
        }


class CampaignObservabilityStore:
    """Collect promo and campaign pipeline telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._validations: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._transitions: Dict[str, int] = defaultdict(int)
        self._dispatch: Dict[str, int] = defaultdict(int)
        self._metrics: Dict[str, int] = defaultdict(int)

    def record_validation(self, outcome: str) -> None:
        with self._lock:
            self._validations["total"] += 1
            self._validations[outcome] += 1

    def record_redemption(self, outcome: str) -> None:
        with self._lock:
            self._redemptions[outcome] += 1

    def record_redemption_retry(self) -> None:
        with self._lock:
            self._redemptions["retries"] += 1

    def record_transition(self, from_status: str, to_status: str) -> None:
        with self._lock:
            self._transitions[f"{from_status}->{to_status}"] += 1

    def record_dispatch(self, *, recipients: int, skipped: int) -> None:
        with self._lock:
            self._dispatch["campaigns"] += 1
            self._dispatch["recipients"] += recipients
            self._dispatch["skipped"] += skipped

    def record_metrics_recompute(self) -> None:
        with self._lock:
            self._metrics["recomputes"] += 1

    def snapshot(self) -> CampaignEngineSnapshot:
        with self._lock:
            return CampaignEngineSnapshot(
                promo_validations=dict(self._validations),
                promo_redemptions=dict(self._redemptions),
                transitions=dict(self._transitions),
                dispatch=dict(self._dispatch),
                metrics=dict(self._metrics),
            )

    def reset(self) -> None:
        with self._lock:
            self._validations.clear()
            self._redemptions.clear()
            self._transitions.clear()
            self._dispatch.clear()
            self._metrics.clear()


_STORE = CampaignObservabilityStore()


def get_campaign_store() -> CampaignObservabilityStore:
    return _STORE


__all__ = ["get_campaign_store", "CampaignObservabilityStore", "CampaignEngineSnapshot"]

"""Observability endpoints for campaign engine counters and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from campaign_engine.observability.campaigns import get_campaign_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get("/campaigns", summary="Campaign engine observability snapshot")
async def get_campaign_snapshot() -> dict[str, object]:
    return get_campaign_store().snapshot().as_dict()


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    summary="Prometheus-formatted observability metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_campaign_store().snapshot()
    lines: list[str] = []

    for outcome, value in sorted(snapshot.promo_validations.items()):
        if outcome == "total":
            lines.extend(
                _format_metric("campaign_engine_promo_validations_total", "Promo code validations", value)
            )
            continue
        lines.extend(
            _format_metric(
                "campaign_engine_promo_validation_outcomes_total",
                "Promo code validations grouped by outcome",
                value,
                labels={"outcome": outcome},
            )
        )

    for outcome, value in sorted(snapshot.promo_redemptions.items()):
        lines.extend(
            _format_metric(
                "campaign_engine_promo_redemptions_total",
                "Promo code redemption attempts grouped by outcome",
                value,
                labels={"outcome": outcome},
            )
        )

    for transition, value in sorted(snapshot.transitions.items()):
        from_status, _, to_status = transition.partition("->")
        lines.extend(
            _format_metric(
                "campaign_engine_transitions_total",
                "Campaign lifecycle transitions",
                value,
                labels={"from": from_status, "to": to_status},
            )
        )

    lines.extend(
        _format_metric(
            "campaign_engine_dispatched_campaigns_total",
            "Campaigns dispatched",
            snapshot.dispatch.get("campaigns", 0),
        )
    )
    lines.extend(
        _format_metric(
            "campaign_engine_dispatch_recipients_total",
            "Send ledger rows created by dispatch",
            snapshot.dispatch.get("recipients", 0),
        )
    )
    lines.extend(
        _format_metric(
            "campaign_engine_dispatch_skipped_total",
            "Audience members skipped for lack of channel consent",
            snapshot.dispatch.get("skipped", 0),
        )
    )
    lines.extend(
        _format_metric(
            "campaign_engine_metrics_recomputes_total",
            "Campaign metrics recomputations",
            snapshot.metrics.get("recomputes", 0),
        )
    )

    return PlainTextResponse("\n".join(lines) + "\n")

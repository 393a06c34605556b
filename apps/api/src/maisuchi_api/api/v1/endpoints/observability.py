"""Observability endpoints for loyalty telemetry and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from maisuchi_api.api.dependencies.security import require_checkout_api_key
from maisuchi_api.observability.loyalty import get_loyalty_store


router = APIRouter(
    prefix="/observability",
    tags=["Observability"],
    dependencies=[Depends(require_checkout_api_key)],
)


@router.get("/loyalty", summary="Loyalty observability snapshot")
async def get_loyalty_snapshot() -> dict[str, object]:
    """Retrieve aggregated loyalty counters (requires checkout API key)."""
    return get_loyalty_store().snapshot().as_dict()


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


_METRIC_GROUPS = (
    ("credits", "maisuchi_loyalty_credits_total", "Order and bonus credits grouped by outcome", "outcome"),
    ("drains", "maisuchi_loyalty_pending_drained_total", "Pending credits drained grouped by result", "result"),
    ("claims", "maisuchi_loyalty_claims_total", "Reward claims grouped by outcome", "outcome"),
    ("reconciliations", "maisuchi_loyalty_reconciliations_total", "Balance reconciliation counts", "result"),
    ("failures", "maisuchi_loyalty_best_effort_failures_total", "Best-effort write failures", "component"),
)


@router.get(
    "/prometheus",
    summary="Prometheus-formatted observability metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_loyalty_store().snapshot().as_dict()
    lines: list[str] = []
    for group, name, description, label in _METRIC_GROUPS:
        counts: dict[str, int] = snapshot.get(group, {})  # type: ignore[assignment]
        for key, value in sorted(counts.items()):
            lines.extend(_format_metric(name, description, value, labels={label: key}))
    return PlainTextResponse("\n".join(lines) + "\n")

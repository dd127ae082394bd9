"""Observability endpoints for redemption telemetry and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from atlalli_api.api.dependencies.security import require_staff_api_key
from atlalli_api.observability.redemption import get_redemption_store


router = APIRouter(
    prefix="/observability",
    tags=["Observability"],
    dependencies=[Depends(require_staff_api_key)],
)


@router.get("/redemptions", summary="Redemption protocol observability snapshot")
async def get_redemption_snapshot() -> dict[str, object]:
    return get_redemption_store().snapshot().as_dict()


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} counter",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    summary="Prometheus-formatted redemption metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_redemption_store().snapshot()
    lines: list[str] = []

    lines.extend(
        _format_metric(
            "atlalli_tokens_issued_total",
            "Redemption tokens signed",
            snapshot.tokens_issued.get("total", 0),
        )
    )
    for outcome, value in sorted(snapshot.scans.items()):
        if outcome == "total":
            continue
        lines.extend(
            _format_metric(
                "atlalli_scans_total",
                "Scanned codes grouped by outcome",
                value,
                labels={"outcome": outcome},
            )
        )
    lines.extend(
        _format_metric(
            "atlalli_redemptions_confirmed_total",
            "Redemptions committed to the ledger",
            snapshot.confirmations.get("total", 0),
        )
    )
    lines.extend(
        _format_metric(
            "atlalli_redemption_conflicts_total",
            "Commits rejected because the redemption already existed",
            snapshot.conflicts,
        )
    )
    return PlainTextResponse("\n".join(lines) + "\n")

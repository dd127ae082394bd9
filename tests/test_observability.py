from __future__ import annotations

import pytest

from atlalli_api.core.settings import settings
from atlalli_api.core.logging import redact_extra
from atlalli_api.observability.redemption import RedemptionObservabilityStore, get_redemption_store


def test_store_groups_counters() -> None:
    store = RedemptionObservabilityStore()

    store.record_token_issued("v1")
    store.record_token_issued("v2")
    store.record_scan("bill_form_ready")
    store.record_scan("stale_screenshot")
    store.record_confirmation("premium", guest=True)
    store.record_conflict()

    snapshot = store.snapshot().as_dict()
    assert snapshot["tokens_issued"] == {"total": 2, "venue:v1": 1, "venue:v2": 1}
    assert snapshot["scans"]["total"] == 2
    assert snapshot["confirmations"] == {"total": 1, "tier:premium": 1, "guest": 1}
    assert snapshot["conflicts"] == 1

    store.reset()
    assert store.snapshot().as_dict()["conflicts"] == 0


def test_redact_extra_masks_secret_like_keys() -> None:
    redacted = redact_extra({"venue_id": "v1", "secret": "s3cret", "signature": "abc", "api_key": "k"})

    assert redacted["venue_id"] == "v1"
    assert redacted["secret"] != "s3cret"
    assert redacted["signature"] != "abc"
    assert redacted["api_key"] != "k"


@pytest.mark.asyncio
async def test_redemption_snapshot_endpoint(api_client, redemption_service) -> None:
    await redemption_service.request_token("p1", "v1", "m1")

    response = await api_client.get("/api/v1/observability/redemptions")

    assert response.status_code == 200
    assert response.json()["tokens_issued"]["venue:v1"] == 1


@pytest.mark.asyncio
async def test_prometheus_metrics_requires_key(api_client) -> None:
    previous_key = settings.staff_api_key
    settings.staff_api_key = "prom-key"

    try:
        denied = await api_client.get("/api/v1/observability/prometheus")
        allowed = await api_client.get("/api/v1/observability/prometheus", headers={"X-API-Key": "prom-key"})
    finally:
        settings.staff_api_key = previous_key

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert "atlalli_tokens_issued_total" in allowed.text


@pytest.mark.asyncio
async def test_prometheus_metrics_labels_scan_outcomes(api_client, redemption_service) -> None:
    get_redemption_store().reset()
    encoded = await redemption_service.request_token("p1", "v1", "m1")
    await redemption_service.scan(encoded, "v2")

    response = await api_client.get("/api/v1/observability/prometheus")

    assert response.status_code == 200
    assert 'atlalli_scans_total{outcome="location_mismatch"} 1' in response.text
    assert "atlalli_tokens_issued_total 1" in response.text

"""Unit tests for the OTel sync metrics instruments.

Covers:
- init_metrics: no-op when OTEL_EXPORTER_OTLP_ENDPOINT is not set
- SyncMetrics: every instrument records with the service label
- SyncEngine: run/items/duration recorded through a real sync
"""

from __future__ import annotations

from typing import Any

import pytest
from opentelemetry import metrics
from opentelemetry.metrics import _internal as _metrics_internal
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.util._once import Once

from calsync.calendar.models import EventDeltaPage
from calsync.calendar.sync import SyncEngine
from calsync.core.metrics import SyncMetrics, init_metrics
from calsync.testing import removed_event, timed_event

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


def _reset_metrics_global_state() -> None:
    """Reset the OTel global MeterProvider state for test isolation.

    The OTel SDK uses a ``Once`` guard that prevents ``set_meter_provider``
    from being called more than once per process.
    """
    _metrics_internal._METER_PROVIDER_SET_ONCE = Once()
    _metrics_internal._METER_PROVIDER = None


@pytest.fixture
def reader():
    _reset_metrics_global_state()
    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    metrics.set_meter_provider(provider)
    yield reader
    provider.shutdown()
    _reset_metrics_global_state()


def _collect_metrics(reader: InMemoryMetricReader) -> dict[str, Any]:
    """Flatten metrics data into {metric_name: data_points}."""
    result: dict[str, Any] = {}
    data = reader.get_metrics_data()
    for rm in data.resource_metrics:
        for sm in rm.scope_metrics:
            for metric in sm.metrics:
                if metric.data.data_points:
                    result[metric.name] = list(metric.data.data_points)
    return result


def _by_attr(points: list[Any], key: str) -> dict[str, Any]:
    return {point.attributes[key]: point.value for point in points}


# ---------------------------------------------------------------------------
# init_metrics
# ---------------------------------------------------------------------------


class TestInitMetrics:
    def test_returns_meter_when_endpoint_not_set(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        assert init_metrics("calsync") is not None

    def test_instruments_are_safe_before_init(self) -> None:
        recorder = SyncMetrics("calsync")
        recorder.sync_run("synced")
        recorder.record_sync_duration(12.5)


# ---------------------------------------------------------------------------
# SyncMetrics
# ---------------------------------------------------------------------------


class TestSyncMetrics:
    def test_counters_carry_service_and_result(self, reader) -> None:
        recorder = SyncMetrics("calsync-eu")
        recorder.sync_run("synced")
        recorder.sync_run("synced")
        recorder.sync_run("failed")
        recorder.notification("rejected")
        recorder.token_refresh("success")
        recorder.subscription_created()
        recorder.full_resync()

        data = _collect_metrics(reader)

        runs = data["calsync.sync.runs_total"]
        assert _by_attr(runs, "result") == {"synced": 2, "failed": 1}
        assert all(point.attributes["service"] == "calsync-eu" for point in runs)
        assert _by_attr(data["calsync.webhook.notifications_total"], "result") == {"rejected": 1}
        assert _by_attr(data["calsync.tokens.refresh_total"], "result") == {"success": 1}
        assert data["calsync.subscriptions.created_total"][0].value == 1
        assert data["calsync.sync.full_resyncs_total"][0].value == 1

    def test_items_applied_skips_zero_counts(self, reader) -> None:
        recorder = SyncMetrics()
        recorder.items_applied(upserted=3, deleted=0)

        points = _collect_metrics(reader)["calsync.sync.items_applied_total"]

        assert _by_attr(points, "op") == {"upsert": 3}

    def test_duration_histogram(self, reader) -> None:
        recorder = SyncMetrics()
        recorder.record_sync_duration(40.0)
        recorder.record_sync_duration(60.0)

        (point,) = _collect_metrics(reader)["calsync.sync.duration_ms"]

        assert point.count == 2
        assert point.sum == 100.0


# ---------------------------------------------------------------------------
# SyncEngine integration
# ---------------------------------------------------------------------------


class TestSyncEngineMetrics:
    async def test_sync_records_run_items_and_duration(
        self, reader, store, registry, token_guard, source, fake_client, clock
    ) -> None:
        engine = SyncEngine(
            store, registry, token_guard, owner="test-host", clock=clock, metrics=SyncMetrics()
        )
        fake_client.delta_results.append(
            EventDeltaPage(
                events=[timed_event("evt-1"), timed_event("evt-2")], next_sync_token="t1"
            )
        )
        fake_client.delta_results.append(
            EventDeltaPage(events=[removed_event("evt-1")], next_sync_token="t2")
        )

        await engine.sync(source.id)
        await engine.sync(source.id)

        data = _collect_metrics(reader)
        assert _by_attr(data["calsync.sync.runs_total"], "result") == {"synced": 2}
        assert _by_attr(data["calsync.sync.items_applied_total"], "op") == {
            "upsert": 2,
            "delete": 1,
        }
        assert data["calsync.sync.duration_ms"][0].count == 2

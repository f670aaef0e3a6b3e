"""OpenTelemetry metrics instruments for calendar synchronization.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup.  When
OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global no-op MeterProvider is
used and all recordings are silent no-ops.

Instruments
-----------
  calsync.sync.runs_total              Counter   (label: result=synced|failed|skipped)
  calsync.sync.items_applied_total     Counter   (label: op=upsert|delete)
  calsync.sync.full_resyncs_total      Counter
  calsync.sync.duration_ms             Histogram
  calsync.webhook.notifications_total  Counter   (label: result=accepted|rejected)
  calsync.subscriptions.created_total  Counter
  calsync.tokens.refresh_total         Counter   (label: result=success|rejected|error)

All instruments carry a ``service`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calsync"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Lazily-created instruments for the sync, webhook and token paths.

    Safe to construct before ``init_metrics``; recordings are no-ops until a
    real provider is installed.
    """

    def __init__(self, service_name: str = "calsync") -> None:
        self._attrs = {"service": service_name}
        self._counters: dict[str, metrics.Counter] = {}
        self.__duration: metrics.Histogram | None = None

    def _counter(self, name: str, description: str, unit: str) -> metrics.Counter:
        counter = self._counters.get(name)
        if counter is None:
            counter = get_meter().create_counter(name=name, description=description, unit=unit)
            self._counters[name] = counter
        return counter

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = get_meter().create_histogram(
                name="calsync.sync.duration_ms",
                description="Duration of one source sync in milliseconds",
                unit="ms",
            )
        return self.__duration

    # -- sync ----------------------------------------------------------------

    def sync_run(self, result: str) -> None:
        self._counter(
            "calsync.sync.runs_total", "Source sync attempts by result", "runs"
        ).add(1, {**self._attrs, "result": result})

    def items_applied(self, *, upserted: int, deleted: int) -> None:
        counter = self._counter(
            "calsync.sync.items_applied_total", "Mirrored items written or removed", "items"
        )
        if upserted:
            counter.add(upserted, {**self._attrs, "op": "upsert"})
        if deleted:
            counter.add(deleted, {**self._attrs, "op": "delete"})

    def full_resync(self) -> None:
        self._counter(
            "calsync.sync.full_resyncs_total",
            "Full resyncs forced by an invalidated sync token",
            "resyncs",
        ).add(1, self._attrs)

    def record_sync_duration(self, duration_ms: float) -> None:
        self._duration.record(duration_ms, self._attrs)

    # -- webhook / subscriptions --------------------------------------------

    def notification(self, result: str) -> None:
        self._counter(
            "calsync.webhook.notifications_total",
            "Inbound push notifications by result",
            "notifications",
        ).add(1, {**self._attrs, "result": result})

    def subscription_created(self) -> None:
        self._counter(
            "calsync.subscriptions.created_total", "Push channel leases created", "subscriptions"
        ).add(1, self._attrs)

    # -- tokens --------------------------------------------------------------

    def token_refresh(self, result: str) -> None:
        self._counter(
            "calsync.tokens.refresh_total", "Access token refresh attempts by result", "refreshes"
        ).add(1, {**self._attrs, "result": result})

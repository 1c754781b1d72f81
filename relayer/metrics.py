"""Prometheus instrumentation for the relay."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from .models import RequestRecord


class RelayMetrics:
    """Counters scoped to a private registry so several services can coexist."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.requests = Counter(
            "relay_requests_total",
            "Relay requests by terminal outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self.rejections = Counter(
            "relay_rejections_total",
            "Relay requests refused before submission",
            labelnames=("reason",),
            registry=self.registry,
        )
        self.duplicates = Counter(
            "relay_duplicates_total",
            "Resubmissions answered from an existing record",
            registry=self.registry,
        )
        self.backend_retries = Counter(
            "relay_backend_retries_total",
            "Retries issued after transient backend failures",
            registry=self.registry,
        )
        self.inflight = Gauge(
            "relay_inflight",
            "Requests between submission and finality",
            registry=self.registry,
        )
        self.finality_seconds = Histogram(
            "relay_finality_seconds",
            "Seconds from submission to a terminal backend outcome",
            registry=self.registry,
        )

    def observe_terminal(self, record: RequestRecord) -> None:
        self.requests.labels(record.state.value).inc()
        if record.error is not None and not record.nonce_consumed:
            self.rejections.labels(record.error.value).inc()
        if record.submitted_at is not None:
            self.finality_seconds.observe(max(0.0, record.updated_at - record.submitted_at))

    def render(self) -> bytes:
        return generate_latest(self.registry)

"""Metrics emission for sync runs: structured log lines, optionally mirrored to StatsD."""

from __future__ import annotations

import logging
import secrets
from typing import Any, Protocol

from statsd import StatsClient

from billsync.config import settings

logger = logging.getLogger("billsync.metrics")


class MetricsBackend(Protocol):
    def send(self, metric_type: str, name: str, value: float, sample_rate: float) -> None:
        ...


class StatsdBackend:
    """Forwards counters, timings and gauges to a StatsD daemon over UDP."""

    def __init__(self, host: str, port: int) -> None:
        self._client = StatsClient(host=host, port=port, prefix="")

    def send(self, metric_type: str, name: str, value: float, sample_rate: float) -> None:
        if metric_type == "timing":
            self._client.timing(name, value, rate=sample_rate)
        elif metric_type == "gauge":
            self._client.gauge(name, value)
        else:
            self._client.incr(name, value, rate=sample_rate)


class MetricsReporter:
    """Every metric is logged as ``billsync.metric``; StatsD is an optional mirror."""

    def __init__(
        self,
        *,
        namespace: str | None = None,
        backend: str | None = None,
        sample_rate: float | None = None,
        disabled: bool | None = None,
    ) -> None:
        self._namespace = namespace or settings.metrics_namespace or "billsync"
        self._backend_name = (backend or settings.metrics_backend or "stdout").lower()
        rate = settings.metrics_sample_rate if sample_rate is None else sample_rate
        self._sample_rate = max(0.0, min(rate, 1.0))
        self._disabled = settings.metrics_disable if disabled is None else disabled
        self._backend: MetricsBackend | None = None
        if self._backend_name == "statsd" and not self._disabled:
            try:
                self._backend = StatsdBackend(
                    settings.metrics_statsd_host, settings.metrics_statsd_port
                )
            except OSError as exc:  # pragma: no cover - socket setup failures
                self._backend_failed("statsd.init", exc)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._emit("counter", metric, value, tags)

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("timing", metric, value_ms, tags)

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("gauge", metric, value, tags)

    def qualify(self, metric: str) -> str:
        """Prefix ``metric`` with the namespace unless it already carries it."""
        name = (metric or "").strip()
        if not name:
            return self._namespace
        if name.startswith(f"{self._namespace}."):
            return name
        return f"{self._namespace}.{name}"

    def _emit(
        self, metric_type: str, metric: str, value: float | None, tags: dict[str, Any] | None
    ) -> None:
        if self._disabled or value is None:
            return
        # Gauges report state, so they are never sampled.
        sample_rate = 1.0 if metric_type == "gauge" else self._sample_rate
        if sample_rate < 1.0 and secrets.randbelow(1_000_000) / 1_000_000 > sample_rate:
            return

        name = self.qualify(metric)
        record: dict[str, Any] = {
            "metric": name,
            "type": metric_type,
            "value": round(float(value), 4),
            "tags": dict(tags or {}),
            "schema_version": settings.metrics_schema_version,
        }
        if sample_rate < 1.0:
            record["sample_rate"] = round(sample_rate, 4)
        logger.info("billsync.metric", extra={"metrics": record})

        if self._backend is None:
            return
        try:
            self._backend.send(metric_type, name, value, sample_rate)
        except OSError as exc:  # pragma: no cover - backend outages
            self._backend_failed(name, exc)

    def _backend_failed(self, metric: str, exc: Exception) -> None:
        logger.warning(
            "metrics.backend_error",
            extra={"metric": metric, "backend": self._backend_name, "error": type(exc).__name__},
        )


metrics = MetricsReporter()

from __future__ import annotations

from typing import Mapping, Optional, Sequence

from prometheus_client import CollectorRegistry, Counter, Histogram, Summary

from accesslog_exporter.errors import ConfigError
from accesslog_exporter.line_format import float_field
from accesslog_exporter.relabeling import LabelSchema, LabelVector

BYTES_FIELD = "body_bytes_sent"
UPSTREAM_TIME_FIELD = "upstream_response_time"
RESPONSE_TIME_FIELD = "request_time"


class NamespaceMetrics:
    """
    All series of one namespace, registered in an explicit registry.

    Every labelled metric is created with the namespace's full label schema,
    so a label vector that fits one metric fits them all. prometheus_client
    children are internally locked; callers never need their own lock.
    """

    def __init__(
        self,
        namespace: str,
        schema: LabelSchema,
        registry: CollectorRegistry,
        buckets: Optional[Sequence[float]] = None,
    ):
        self.namespace = namespace
        self.schema = schema
        labelnames = list(schema.names)
        hist_buckets = tuple(buckets) if buckets else Histogram.DEFAULT_BUCKETS

        try:
            self.count_total = Counter(
                "http_response_count_total",
                "Amount of processed HTTP requests",
                labelnames, namespace=namespace, registry=registry,
            )
            self.bytes_total = Counter(
                "http_response_size_bytes",
                "Total amount of transferred bytes",
                labelnames, namespace=namespace, registry=registry,
            )
            self.upstream_seconds = Summary(
                "http_upstream_time_seconds",
                "Time needed by upstream servers to handle requests",
                labelnames, namespace=namespace, registry=registry,
            )
            self.upstream_seconds_hist = Histogram(
                "http_upstream_time_seconds_hist",
                "Time needed by upstream servers to handle requests",
                labelnames, namespace=namespace, registry=registry, buckets=hist_buckets,
            )
            self.response_seconds = Summary(
                "http_response_time_seconds",
                "Time needed by the web server to handle requests",
                labelnames, namespace=namespace, registry=registry,
            )
            self.response_seconds_hist = Histogram(
                "http_response_time_seconds_hist",
                "Time needed by the web server to handle requests",
                labelnames, namespace=namespace, registry=registry, buckets=hist_buckets,
            )
            self.parse_errors_total = Counter(
                "parse_errors_total",
                "Total number of log file lines that could not be parsed",
                namespace=namespace, registry=registry,
            )
        except ValueError as e:
            # reserved label names (le, quantile) or a namespace registered twice
            raise ConfigError(f"namespace '{namespace}': cannot register metrics: {e}") from e

    def observe(self, labels: LabelVector, record: Mapping[str, str]) -> None:
        """Counts one request; each numeric field is observed only when it parses."""
        self.count_total.labels(*labels).inc()

        size = float_field(record, BYTES_FIELD)
        if size is not None and size >= 0:
            self.bytes_total.labels(*labels).inc(size)

        upstream = float_field(record, UPSTREAM_TIME_FIELD)
        if upstream is not None:
            self.upstream_seconds.labels(*labels).observe(upstream)
            self.upstream_seconds_hist.labels(*labels).observe(upstream)

        response = float_field(record, RESPONSE_TIME_FIELD)
        if response is not None:
            self.response_seconds.labels(*labels).observe(response)
            self.response_seconds_hist.labels(*labels).observe(response)

    def parse_error(self) -> None:
        self.parse_errors_total.inc()

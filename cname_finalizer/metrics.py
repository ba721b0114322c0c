# cname_finalizer/metrics.py
# Version: 1.0.0
# Metrics collection for CNAME finalizing

"""
CNAME Finalizer Metrics Collection Module

Provides Prometheus-compatible metrics for the finalize stage. Every metric
is labelled with the server identity so several listeners can share one
registry.
"""

import logging
import time
from typing import Any, Dict, Optional

from prometheus_client import REGISTRY, Counter, Histogram, Info
from prometheus_client.twisted import MetricsResource
from twisted.web import resource, server

from .constants import (
    LATENCY_BUCKETS,
    METRIC_NAMESPACE,
    METRICS_DEFAULT_ADDRESS,
    METRICS_DEFAULT_PORT,
    PLUGIN_NAME,
)

logger = logging.getLogger(__name__)


class MetricsCollector:
    """Centralized metrics collection for the finalize stage"""

    def __init__(self, enabled: bool = True, namespace: str = METRIC_NAMESPACE, registry=REGISTRY):
        self.enabled = enabled
        self.namespace = namespace
        self.registry = registry
        self._prefix = f"{namespace}_{PLUGIN_NAME}"

        if not self.enabled:
            logger.info("Metrics collection disabled")
            return

        self._init_request_metrics()
        self._init_chain_metrics()
        self.info = Info(f"{namespace}_build", "CNAME finalizer version and configuration info", registry=registry)

        logger.info("Metrics collector initialized")

    def _init_request_metrics(self):
        """Initialize request metrics"""
        self.request_count = Counter(
            f"{self._prefix}_request_count_total",
            "Counter of requests processed.",
            ["server"],
            registry=self.registry,
        )

        self.request_duration = Histogram(
            f"{self._prefix}_request_duration_seconds",
            "Histogram of the time each request took.",
            ["server"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )

    def _init_chain_metrics(self):
        """Initialize CNAME chain failure metrics"""
        self.circular_reference_count = Counter(
            f"{self._prefix}_circular_reference_count_total",
            "Counter of detected circular references.",
            ["server"],
            registry=self.registry,
        )

        self.dangling_cname_count = Counter(
            f"{self._prefix}_dangling_cname_count_total",
            "Counter of CNAMES that couldn't be resolved.",
            ["server"],
            registry=self.registry,
        )

        self.max_lookup_reached_count = Counter(
            f"{self._prefix}_max_lookup_reached_count_total",
            "Counter of incidents when the maximum lookup depth was reached while trying to resolve a CNAME.",
            ["server"],
            registry=self.registry,
        )

        self.upstream_error_count = Counter(
            f"{self._prefix}_upstream_error_count_total",
            "Counter of upstream errors received.",
            ["server"],
            registry=self.registry,
        )

    def record_request(self, server_label: str):
        """Record a request that needs its CNAME chain resolved"""
        if self.enabled:
            self.request_count.labels(server=server_label).inc()

    def record_duration(self, server_label: str, start: float):
        """Record the time spent since start"""
        if self.enabled:
            self.request_duration.labels(server=server_label).observe(time.time() - start)

    def record_circular_reference(self, server_label: str):
        if self.enabled:
            self.circular_reference_count.labels(server=server_label).inc()

    def record_dangling_cname(self, server_label: str):
        if self.enabled:
            self.dangling_cname_count.labels(server=server_label).inc()

    def record_max_lookup_reached(self, server_label: str):
        if self.enabled:
            self.max_lookup_reached_count.labels(server=server_label).inc()

    def record_upstream_error(self, server_label: str):
        if self.enabled:
            self.upstream_error_count.labels(server=server_label).inc()

    def set_info(self, version: str, config: Dict[str, Any]):
        """Set version and configuration info"""
        if self.enabled:
            self.info.info(
                {
                    "version": version,
                    "max_lookup": str(config.get("max_lookup", "")),
                    "upstream_servers": ",".join(
                        f"{host}:{port}" for host, port in config.get("upstream_servers", [])
                    ),
                }
            )


class MetricsServer:
    """HTTP server for Prometheus metrics endpoint"""

    def __init__(
        self,
        collector: MetricsCollector,
        listen_address: str = METRICS_DEFAULT_ADDRESS,
        listen_port: int = METRICS_DEFAULT_PORT,
        reactor=None,
    ):
        self.collector = collector
        self.listen_address = listen_address
        self.listen_port = listen_port
        self.reactor = reactor
        self.site = None

    def start(self):
        """Start metrics HTTP server"""
        if not self.collector.enabled:
            logger.info("Metrics server not started (metrics disabled)")
            return

        reactor = self.reactor
        if reactor is None:
            from twisted.internet import reactor

        root = resource.Resource()
        root.putChild(b"metrics", MetricsResource(registry=self.collector.registry))
        factory = server.Site(root)

        self.site = reactor.listenTCP(self.listen_port, factory, interface=self.listen_address)

        logger.info(f"Metrics server listening on {self.listen_address}:{self.listen_port}/metrics")

    def stop(self):
        """Stop metrics HTTP server"""
        if self.site:
            self.site.stopListening()
            self.site = None
            logger.info("Metrics server stopped")


# Process-wide collector, created once by main and handed to the plugin
metrics: Optional[MetricsCollector] = None


def init_metrics(enabled: bool = True, namespace: str = METRIC_NAMESPACE) -> MetricsCollector:
    """Initialize global metrics collector"""
    global metrics
    metrics = MetricsCollector(enabled, namespace)
    return metrics

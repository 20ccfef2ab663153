"""Prometheus gauges for the reconciled counters and the exporter health."""

import logging
import time
from typing import List, Optional

from prometheus_client import CollectorRegistry, Gauge, REGISTRY, start_http_server

from .models import CounterState, Device

logger = logging.getLogger(__name__)


class ExporterMetrics:
    """Gauges published by the exporter.

    A dedicated registry can be passed so tests do not collide on the
    process-wide default one.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else REGISTRY

        self.metering_index = Gauge(
            "ocea_metering_index",
            "Reconciled absolute index per fluid",
            ["fluid", "local_id"],
            registry=self.registry,
        )
        self.device_index = Gauge(
            "ocea_metering_device_index",
            "Last absolute reading reported by a device",
            ["serial", "fluid", "local_id"],
            registry=self.registry,
        )
        self.healthy = Gauge(
            "ocea_exporter_healthy",
            "1 if the last fetch cycle succeeded",
            registry=self.registry,
        )
        self.ready = Gauge(
            "ocea_exporter_ready",
            "1 once counters have been initialized",
            registry=self.registry,
        )
        self.last_success = Gauge(
            "ocea_exporter_last_success_timestamp_seconds",
            "Time of the last successful fetch cycle",
            registry=self.registry,
        )

    def update_counters(self, local_id: str, states: List[CounterState], devices: List[Device]):
        # Series for meters or units no longer reported must not linger
        self.metering_index.clear()
        self.device_index.clear()
        for state in states:
            self.metering_index.labels(fluid=state.fluid, local_id=local_id).set(state.absolute_index)
        for device in devices:
            self.device_index.labels(
                serial=device.serial_number,
                fluid=device.fluid,
                local_id=local_id,
            ).set(device.index)

    def set_status(self, healthy: bool, ready: bool):
        self.healthy.set(1 if healthy else 0)
        self.ready.set(1 if ready else 0)

    def mark_success(self, timestamp: Optional[float] = None):
        self.last_success.set(timestamp if timestamp is not None else time.time())


def start_metrics_server(addr: str, port: int, registry: Optional[CollectorRegistry] = None):
    """Serve /metrics in a background thread."""
    start_http_server(port, addr=addr, registry=registry if registry is not None else REGISTRY)
    logger.info(f"Prometheus metrics available on http://{addr}:{port}/metrics")

"""Explicit logger + metrics context handed to every lb-sync component.

The bootstrap builds one :class:`SyncContext` and passes it down; nothing
in the generator reaches for a module-level logger or metric.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class Metrics:
    """Prometheus collectors registered on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        r = self.registry
        self.restarts = Counter(
            "lb_sync_restarts_total", "HAProxy reload attempts", ["result"], registry=r
        )
        self.restart_required = Counter(
            "lb_sync_restart_required_total", "Reasons a reload became necessary", ["reason"], registry=r
        )
        self.socket_commands = Counter(
            "lb_sync_socket_commands_total", "enable/disable commands sent to the stats socket", ["action"], registry=r
        )
        self.stanza_renders = Counter(
            "lb_sync_stanza_renders_total", "Service stanzas rendered", registry=r
        )
        self.stanza_cache_hits = Counter(
            "lb_sync_stanza_cache_hits_total", "Service stanzas reused from the render cache", registry=r
        )
        self.config_writes = Counter(
            "lb_sync_config_writes_total", "HAProxy config file write attempts", ["result"], registry=r
        )
        self.state_file_writes = Counter(
            "lb_sync_state_file_writes_total", "State file flushes", ["result"], registry=r
        )
        self.invalid_directives = Counter(
            "lb_sync_invalid_directives_total", "Directive lines dropped by validation", ["section"], registry=r
        )
        self.server_id_exhausted = Counter(
            "lb_sync_server_id_exhausted_total", "Backends rendered without a server id", registry=r
        )
        self.backends = Gauge(
            "lb_sync_backends", "Live backends per service", ["service"], registry=r
        )
        self.discovery_requests = Counter(
            "lb_sync_discovery_requests_total", "Service discovery requests", ["method", "status"], registry=r
        )
        self.discovery_latency = Histogram(
            "lb_sync_discovery_latency_seconds", "Service discovery request latency seconds", ["method"], registry=r
        )


@dataclass
class SyncContext:
    log: logging.Logger = field(default_factory=lambda: logging.getLogger("lb_sync"))
    metrics: Metrics = field(default_factory=Metrics)

    def child(self, name: str) -> "SyncContext":
        """Same metrics, logger scoped under ``name``."""
        return SyncContext(log=self.log.getChild(name), metrics=self.metrics)

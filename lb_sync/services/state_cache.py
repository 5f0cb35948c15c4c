"""Durable record of recently seen backends and per-service generator config.

Backends that vanish from discovery are still rendered (disabled) until
their entry is older than the TTL, so draining connections keep their
stats slot. The cache is persisted as one JSON object::

    {"<service>": {"<backend name>": {...backend fields, "timestamp": 1700000000,
                                      "haproxy_server_id": 3},
                   "generator_config": {...}}}

Backend names always contain ``host:port``, so the reserved
``generator_config`` key cannot collide with one.
"""
from __future__ import annotations

import json
import os
from typing import Any, Iterable, Optional

from lb_sync.core.config import DEFAULT_STATE_FILE_TTL
from lb_sync.core.context import SyncContext
from lb_sync.models.schemas import WatcherView
from lb_sync.services.server_ids import ServerIdAllocator

GENERATOR_CONFIG_KEY = "generator_config"


class StateCache:
    def __init__(self, ctx: SyncContext, path: Optional[str] = None, ttl: int = DEFAULT_STATE_FILE_TTL):
        self._ctx = ctx
        self._path = path
        self._ttl = ttl
        self._data: Optional[dict[str, dict[str, Any]]] = None

    @property
    def path(self) -> Optional[str]:
        return self._path

    def services(self) -> list[str]:
        return list(self._seen())

    def backends(self, service: str) -> dict[str, dict[str, Any]]:
        """Cached backend entries of ``service`` keyed by backend name."""
        entries = self._seen().get(service, {})
        return {k: v for k, v in entries.items() if k != GENERATOR_CONFIG_KEY and isinstance(v, dict)}

    def generator_config(self, service: str) -> Optional[dict[str, Any]]:
        """Generator config last recorded for ``service``, or None if unknown."""
        return self._seen().get(service, {}).get(GENERATOR_CONFIG_KEY)

    def load(self) -> None:
        """Read the state file once; any failure yields an empty cache."""
        if self._data is not None:
            return
        self._data = {}
        if self._path is None:
            return
        try:
            with open(self._path) as f:
                data = json.load(f)
        except FileNotFoundError:
            self._ctx.log.info("no state file at %s; starting empty", self._path)
            return
        except (OSError, ValueError) as e:
            self._ctx.log.warning("could not read state file %s: %s; starting empty", self._path, e)
            return
        if not isinstance(data, dict):
            self._ctx.log.warning("state file %s does not hold an object; starting empty", self._path)
            return
        self._data = {k: v for k, v in data.items() if isinstance(v, dict)}

    def refresh(self, views: Iterable[WatcherView], now: float, server_ids: ServerIdAllocator) -> None:
        """Expire stale entries and record what the watchers currently report."""
        seen = self._seen()
        for service, entries in seen.items():
            for backend_name in [n for n in entries if n != GENERATOR_CONFIG_KEY]:
                entry = entries[backend_name]
                age = abs(now - _timestamp(entry))
                if age > self._ttl:
                    self._ctx.log.info("expiring %s/%s with age %d", service, backend_name, age)
                    del entries[backend_name]

        for service in [s for s in seen if not self.backends(s)]:
            del seen[service]

        for view in views:
            entries = seen.setdefault(view.name, {})
            for backend in view.backends:
                backend_name = backend.backend_name
                entry = backend.to_state()
                entry["timestamp"] = int(now)
                server_id = server_ids.get(view.name, backend_name)
                previous = entries.get(backend_name)
                if server_id is None and isinstance(previous, dict):
                    server_id = previous.get("haproxy_server_id")
                if server_id is not None:
                    entry["haproxy_server_id"] = server_id
                entries[backend_name] = entry
            entries[GENERATOR_CONFIG_KEY] = plain_config(view.generator_config)

    def flush(self) -> bool:
        """Atomically rewrite the state file; failures are logged, not raised."""
        if self._path is None:
            return False
        tmp_path = f"{self._path}.tmp"
        try:
            with open(tmp_path, "w") as f:
                json.dump(self._seen(), f, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        except (OSError, TypeError, ValueError) as e:
            self._ctx.log.error("failed to write state file %s: %s", self._path, e)
            self._ctx.metrics.state_file_writes.labels(result="error").inc()
            return False
        self._ctx.log.info("wrote state file %s", self._path)
        self._ctx.metrics.state_file_writes.labels(result="ok").inc()
        return True

    def _seen(self) -> dict[str, dict[str, Any]]:
        if self._data is None:
            self.load()
        return self._data


def _timestamp(entry: Any) -> float:
    if not isinstance(entry, dict):
        return 0
    try:
        return float(entry.get("timestamp", 0))
    except (TypeError, ValueError):
        return 0


def plain_config(value: Any) -> Any:
    """Copy a generator config into plain JSON types (tuples become lists)."""
    if isinstance(value, dict) or hasattr(value, "items"):
        return {str(k): plain_config(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [plain_config(v) for v in value]
    return value

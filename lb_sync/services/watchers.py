"""Discovery watchers: the sources of backend lists.

Every watcher exposes the same small surface (``start``, ``stop``,
``healthy``, ``snapshot``, ``name``, ``backends``, ``revision``) and calls
its ``on_change`` callback whenever its backend list changes. The set of
discovery methods is closed; :func:`create_watcher` maps the configured
``discovery.method`` to one of the classes in :data:`WATCHERS`.
"""
from __future__ import annotations

import socket
import threading
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

import httpx

from lb_sync.core.config import ServiceConfig
from lb_sync.core.context import SyncContext
from lb_sync.core.errors import ConfigError
from lb_sync.models.schemas import Backend, WatcherView
from lb_sync.services.retry import RetryPolicy

GENERATOR_NAME = "haproxy"

Normalizer = Callable[[str, Mapping[str, Any]], dict[str, Any]]


class BaseWatcher:
    """Serves the configured default servers; the other watchers build on it."""

    METHOD = "static"

    def __init__(
        self,
        name: str,
        config: ServiceConfig,
        on_change: Callable[[], None],
        ctx: SyncContext,
        normalize: Optional[Normalizer] = None,
    ):
        self.name = name
        self.discovery = dict(config.discovery)
        self._on_change = on_change
        self._ctx = ctx
        self._default_servers = list(config.default_servers)
        generator_config = dict(config.haproxy)
        if normalize is not None:
            generator_config = normalize(name, generator_config)
        self.config_for_generator = {GENERATOR_NAME: generator_config}

        self._lock = threading.Lock()
        self._backends: list[Backend] = list(self._default_servers)
        self._revision = 0
        self._started = False
        self._validate_discovery_opts()

    @property
    def backends(self) -> list[Backend]:
        with self._lock:
            return list(self._backends)

    @property
    def revision(self) -> int:
        with self._lock:
            return self._revision

    def snapshot(self, generator: str = GENERATOR_NAME) -> WatcherView:
        with self._lock:
            return WatcherView(
                name=self.name,
                backends=tuple(self._backends),
                generator_config=self.config_for_generator.get(generator, {}),
                revision=self._revision,
            )

    def start(self) -> None:
        self._ctx.log.info("starting %s watcher for %s", self.METHOD, self.name)
        self._started = True

    def stop(self) -> None:
        self._started = False

    def healthy(self) -> bool:
        return self._started

    def set_backends(self, new_backends: Sequence[Backend]) -> bool:
        """Replace the backend list; bumps the revision only if it changed."""
        new_backends = list(new_backends)
        if not new_backends:
            if self._default_servers:
                self._ctx.log.warning(
                    "no backends for service %s; using default servers: %s", self.name, self._default_servers
                )
                new_backends = list(self._default_servers)
            else:
                self._ctx.log.warning(
                    "no backends and no default servers for service %s; using previous backends", self.name
                )
                return False

        with self._lock:
            if new_backends == self._backends:
                return False
            self._backends = new_backends
            self._revision += 1

        self._ctx.log.info("discovered %d backends for service %s", len(new_backends), self.name)
        self._on_change()
        return True

    def _validate_discovery_opts(self) -> None:
        if self.discovery.get("method") != self.METHOD:
            raise ConfigError(f"invalid discovery method {self.discovery.get('method')!r} for {self.METHOD} watcher")
        if not self._default_servers:
            self._ctx.log.warning("a static watcher with no default servers is pretty useless (%s)", self.name)


class PollWatcher(BaseWatcher):
    """Runs ``discover`` on a background thread every ``check_interval`` seconds."""

    METHOD = "poll"
    DEFAULT_CHECK_INTERVAL = 15.0

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._check_interval = float(self.discovery.get("check_interval", self.DEFAULT_CHECK_INTERVAL))
        self._should_exit = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._ctx.log.info("starting %s watcher for %s", self.METHOD, self.name)
        self._should_exit.clear()
        self._thread = threading.Thread(target=self._watch, name=f"watcher-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._should_exit.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._ctx.log.info("%s watcher for %s stopped", self.METHOD, self.name)

    def healthy(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll_once(self) -> bool:
        """Discover and apply the result once; returns whether backends changed."""
        return self.set_backends(self.discover())

    def discover(self) -> list[Backend]:
        raise NotImplementedError

    def _watch(self) -> None:
        while not self._should_exit.is_set():
            try:
                self.poll_once()
            except Exception as e:
                self._ctx.log.warning("error in %s watcher for %s: %r", self.METHOD, self.name, e)
            self._should_exit.wait(self._check_interval)

    def _validate_discovery_opts(self) -> None:
        if self.discovery.get("method") != self.METHOD:
            raise ConfigError(f"invalid discovery method {self.discovery.get('method')!r} for {self.METHOD} watcher")


class FileWatcher(PollWatcher):
    """Reads ``host port`` lines from a text file."""

    METHOD = "file"

    @property
    def server_list_path(self) -> Path:
        return Path(self.discovery["path"])

    def discover(self) -> list[Backend]:
        backends = []
        with open(self.server_list_path) as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2:
                    backends.append(Backend(host=parts[0], port=parts[1]))
        return backends

    def _validate_discovery_opts(self) -> None:
        super()._validate_discovery_opts()
        if not self.discovery.get("path"):
            raise ConfigError(f"missing or invalid path for service {self.name}")
        if not self.server_list_path.is_file():
            raise ConfigError(f"server list file for service {self.name} doesn't exist or is not a file")


class DnsWatcher(PollWatcher):
    """Resolves ``servers[].host`` and emits one backend per address."""

    METHOD = "dns"
    DEFAULT_CHECK_INTERVAL = 30.0

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._retry = RetryPolicy(
            max_attempts=int(self.discovery.get("max_attempts", 3)),
            base_interval=float(self.discovery.get("base_interval", 0.1)),
            max_interval=float(self.discovery.get("max_interval", 1.0)),
            retryable=lambda e: isinstance(e, socket.gaierror),
        )

    @property
    def discovery_servers(self) -> list[dict[str, Any]]:
        return list(self.discovery.get("servers") or [])

    def resolve(self, host: str) -> list[str]:
        infos = self._retry.call(
            lambda attempt: socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
        )
        return sorted({info[4][0] for info in infos})

    def discover(self) -> list[Backend]:
        backends = []
        for server in self.discovery_servers:
            try:
                addresses = self.resolve(server["host"])
            except OSError as e:
                self._ctx.log.warning("error while resolving %s: %r", server["host"], e)
                continue
            for address in addresses:
                backends.append(Backend(host=address, port=server["port"], name=server.get("name")))
        return backends

    def _validate_discovery_opts(self) -> None:
        super()._validate_discovery_opts()
        if not self.discovery_servers:
            raise ConfigError("a non-empty list of servers is required")


def normalize_endpoints(payload: object) -> list[Backend]:
    """
    Normalize heterogenous discovery payloads to backends.

    Accepts either:
      - {"backends": [{"url": "http://h:p"}, ...]}
      - [{"id": "web-1", "host": "1.2.3.4", "port": 8080}, ...]  (registry shape)
      - [{"url": "http://h:p"}, ...]
    Items without a usable address are skipped.
    """
    if isinstance(payload, dict):
        items = payload["backends"] if isinstance(payload.get("backends"), list) else [payload]
    elif isinstance(payload, list):
        items = payload
    else:
        return []

    backends = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if "url" in item:
            url = httpx.URL(str(item["url"]))
            host, port = url.host, url.port or (443 if url.scheme == "https" else 80)
        else:
            host, port = item.get("host"), item.get("port")
        if not host or not port:
            continue
        backends.append(Backend(host=host, port=port, name=item.get("id"), weight=item.get("weight")))
    return backends


class HttpWatcher(PollWatcher):
    """Polls a service-discovery registry over HTTP for healthy endpoints."""

    METHOD = "http"

    def __init__(self, *args, client: Optional[httpx.Client] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._base = str(self.discovery["url"]).rstrip("/")
        self._image_id = self.discovery.get("image_id", self.name)
        self._client = client or httpx.Client(timeout=float(self.discovery.get("timeout_s", 2.0)))
        self._retry = RetryPolicy(
            max_attempts=int(self.discovery.get("retries", 2)) + 1,
            base_interval=float(self.discovery.get("backoff", 0.05)),
            max_interval=float(self.discovery.get("max_backoff", 1.0)),
            retryable=lambda e: isinstance(e, httpx.HTTPError),
        )

    def endpoints_url(self) -> str:
        return f"{self._base}/registry/images/{self._image_id}/endpoints?healthy=true"

    def discover(self) -> list[Backend]:
        return self._retry.call(self._fetch)

    def stop(self) -> None:
        super().stop()
        self._client.close()

    def _fetch(self, attempt: int) -> list[Backend]:
        url = self.endpoints_url()
        metrics = self._ctx.metrics
        try:
            with metrics.discovery_latency.labels(method=self.METHOD).time():
                resp = self._client.get(url)
        except httpx.HTTPError as e:
            metrics.discovery_requests.labels(method=self.METHOD, status="error").inc()
            self._ctx.log.warning("SD error (attempt %d) on %s: %s", attempt, url, e)
            raise
        metrics.discovery_requests.labels(method=self.METHOD, status=str(resp.status_code)).inc()
        if resp.status_code != 200:
            self._ctx.log.warning("SD non-200 (%s) on %s", resp.status_code, url)
            resp.raise_for_status()
        return normalize_endpoints(resp.json())

    def _validate_discovery_opts(self) -> None:
        super()._validate_discovery_opts()
        if not self.discovery.get("url"):
            raise ConfigError(f"http discovery for service {self.name} requires a url")


WATCHERS: dict[str, type[BaseWatcher]] = {
    cls.METHOD: cls for cls in (BaseWatcher, FileWatcher, DnsWatcher, HttpWatcher)
}


def create_watcher(
    name: str,
    config: ServiceConfig,
    on_change: Callable[[], None],
    ctx: SyncContext,
    normalize: Optional[Normalizer] = None,
) -> BaseWatcher:
    """Build the watcher for ``config.discovery['method']``."""
    method = str(config.discovery.get("method", "")).lower()
    try:
        cls = WATCHERS[method]
    except KeyError:
        raise ConfigError(
            f"specified a discovery method of {method!r} for {name}, which is not one of {sorted(WATCHERS)}"
        ) from None
    return cls(name, config, on_change, ctx.child(f"watcher.{name}"), normalize)

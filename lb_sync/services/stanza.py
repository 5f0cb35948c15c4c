"""Renders the frontend and backend stanzas of one service.

A backend stanza lists every backend discovery currently reports, enabled,
plus every backend the state cache still remembers, disabled. Stanzas are
returned as nested lists (header, directive lines, server lines) and only
flattened when the whole config is assembled.
"""
from __future__ import annotations

import hashlib
import random
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from lb_sync.core.config import DEFAULT_BIND_ADDRESS, HaproxyOptions
from lb_sync.core.context import SyncContext
from lb_sync.models.schemas import Backend, ServiceDirectives, WatcherView
from lb_sync.services.directives import normalize
from lb_sync.services.restart import RestartState
from lb_sync.services.server_ids import ServerIdAllocator
from lb_sync.services.state_cache import StateCache

_WEIGHT = re.compile(r"(^|\s)weight\s+\S+")


@dataclass
class _CachedStanza:
    revision: int
    frontend: list
    backend: list


def backend_section_name(view: WatcherView) -> str:
    return view.generator_config.get("backend_name", view.name)


def numeric_weight(weight: Any) -> Optional[int]:
    if isinstance(weight, bool):
        return None
    if isinstance(weight, int):
        return weight
    if isinstance(weight, str) and weight.strip().isdigit():
        return int(weight.strip())
    return None


def strip_weight(options: str) -> tuple[str, bool]:
    """Remove ``weight N`` tokens from a server options string."""
    stripped = _WEIGHT.sub(" ", options)
    stripped = " ".join(stripped.split())
    return stripped, stripped != " ".join(options.split())


class StanzaGenerator:
    def __init__(
        self,
        ctx: SyncContext,
        options: HaproxyOptions,
        server_ids: ServerIdAllocator,
        state_cache: StateCache,
        restart_state: RestartState,
        rng: Optional[random.Random] = None,
    ):
        self._ctx = ctx
        self._options = options
        self._server_ids = server_ids
        self._state_cache = state_cache
        self._restart = restart_state
        self._rng = rng or random.Random()
        self._cache: dict[str, _CachedStanza] = {}

    def render(self, view: WatcherView, directives: ServiceDirectives, config_changed: bool = False) -> list:
        """Frontend + backend stanza for ``view``, reusing the last render when possible."""
        cached = self._cache.get(view.name)
        if cached is not None and cached.revision == view.revision and not config_changed:
            self._ctx.metrics.stanza_cache_hits.inc()
            return [cached.frontend, cached.backend]

        frontend = self.frontend_stanza(view, directives)
        backend = self.backend_stanza(view, directives)
        self._cache[view.name] = _CachedStanza(view.revision, frontend, backend)
        self._ctx.metrics.stanza_renders.inc()
        return [frontend, backend]

    def cached(self, service: str) -> Optional[list]:
        entry = self._cache.get(service)
        if entry is None:
            return None
        return [entry.frontend, entry.backend]

    def forget(self, service: str) -> None:
        self._cache.pop(service, None)

    def frontend_stanza(self, view: WatcherView, directives: ServiceDirectives) -> list:
        config = view.generator_config
        if "port" not in config:
            self._ctx.log.debug("not generating frontend stanza for %s because it has no port defined", view.name)
            return []

        port = config["port"]
        bind_address = config.get("bind_address") or self._options.bind_address or DEFAULT_BIND_ADDRESS
        # an explicit null port binds without a port suffix, e.g. a unix socket
        bind_port = "" if port is None else f":{port}"

        bind_line = " ".join(
            part for part in ("\tbind", f"{bind_address}{bind_port}", config.get("bind_options")) if part
        )
        return [
            f"\nfrontend {view.name}",
            [f"\t{c}" for c in directives.frontend],
            bind_line,
            f"\tdefault_backend {backend_section_name(view)}",
        ]

    def backend_stanza(self, view: WatcherView, directives: ServiceDirectives) -> list:
        config = view.generator_config
        service = view.name
        use_weight = bool(config.get("use_weight"))
        backends: dict[str, tuple[Backend, bool]] = {}

        # everything the cache remembers goes in disabled first...
        for backend_name, entry in self._state_cache.backends(service).items():
            try:
                backend = Backend.model_validate({k: v for k, v in entry.items() if k != "timestamp"})
            except ValidationError as e:
                self._ctx.log.warning("ignoring unusable cached backend %s/%s: %s", service, backend_name, e)
                continue
            backends[backend_name] = (backend, False)
            self._server_ids.remember(service, backend_name, entry.get("haproxy_server_id"))

        # ...then live backends overwrite their placeholders, enabled
        for backend in view.backends:
            backend_name = backend.backend_name
            if backend_name in backends:
                self._detect_changes(service, backend_name, backends[backend_name][0], backend, use_weight)
            backends[backend_name] = (backend, True)

        if not view.backends:
            self._ctx.log.debug("no backends found for watcher %s", service)

        self._server_ids.release_absent(service, backends)
        # explicitly pinned ids are resolved before anything gets allocated
        live = sorted(view.backends, key=lambda b: self._server_ids.explicit_id(b) is None)
        for backend in live:
            self._server_ids.id_for(service, backend.backend_name, backend)

        keys = self._order(list(backends), config)
        tcp_mode = any(normalize(d) == "mode tcp" for d in directives.backend)
        return [
            f"\nbackend {backend_section_name(view)}",
            [f"\t{c}" for c in directives.backend],
            [self._server_line(service, name, *backends[name], config, tcp_mode, use_weight) for name in keys],
        ]

    def _detect_changes(self, service: str, backend_name: str, old: Backend, new: Backend, use_weight: bool) -> None:
        if (old.haproxy_server_options or "") != (new.haproxy_server_options or ""):
            self._restart.require("server_options_changed", f"{service}/{backend_name}")
        if use_weight and numeric_weight(old.weight) != numeric_weight(new.weight):
            self._restart.require("weight_changed", f"{service}/{backend_name}")

    def _order(self, keys: list[str], config: Mapping[str, Any]) -> list[str]:
        order = config.get("backend_order")
        if order == "asc":
            return sorted(keys)
        if order == "desc":
            return sorted(keys, reverse=True)
        if order == "no_shuffle":
            return keys
        seed = config.get("shuffle_seed")
        rng = random.Random(seed) if seed is not None else self._rng
        rng.shuffle(keys)
        return keys

    def _server_line(
        self,
        service: str,
        backend_name: str,
        backend: Backend,
        enabled: bool,
        config: Mapping[str, Any],
        tcp_mode: bool,
        use_weight: bool,
    ) -> str:
        port = config.get("server_port_override") or backend.port
        line = f"\tserver {backend_name} {backend.host}:{port}"

        backend_opts = backend.haproxy_server_options or ""
        # if the registry supplies its own id we must not add a second one
        server_id = self._server_ids.get(service, backend_name)
        if "id" not in backend_opts.split() and server_id is not None:
            line = f"{line} id {server_id}"

        if not tcp_mode:
            cookie = backend_name
            if config.get("cookie_value_method") == "hash":
                cookie = hashlib.sha1(backend_name.encode()).hexdigest()
            line = f"{line} cookie {cookie}"

        server_opts = config.get("server_options") or ""
        weight = numeric_weight(backend.weight) if use_weight else None
        if weight is not None:
            server_opts, had_weight = strip_weight(server_opts)
            if had_weight:
                self._ctx.log.warning("service %s: dropping weight from server_options; backend weight wins", service)
            backend_opts, had_weight = strip_weight(backend_opts)
            if had_weight:
                self._ctx.log.warning(
                    "service %s: dropping weight from haproxy_server_options of %s", service, backend_name
                )
            line = f"{line} weight {weight}"
        elif use_weight and backend.weight is not None:
            self._ctx.log.warning("service %s: ignoring non-numeric weight %r of %s", service, backend.weight, backend_name)

        if server_opts:
            line = f"{line} {server_opts}"
        if backend_opts:
            line = f"{line} {backend_opts}"
        if not enabled:
            line = f"{line} disabled"
        return line

"""HAProxy config generator and reload coordinator.

``update_config`` runs whenever a watcher reports a change: it first tries
to apply the new backend set through the stats socket, then renders and
writes the full config, and reloads HAProxy only if something could not
be applied in place. ``tick`` runs once per logical second to flush the
state file and to retry reloads that were rate limited.
"""
from __future__ import annotations

import random
import time
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional

from lb_sync.core.config import HaproxyOptions
from lb_sync.core.context import SyncContext
from lb_sync.core.errors import ConfigCheckFailed
from lb_sync.models.schemas import ServiceDirectives, WatcherView
from lb_sync.services.config_writer import ConfigWriter, strip_header
from lb_sync.services.directives import parse_service_directives, validate
from lb_sync.services.restart import RestartCoordinator, RestartState
from lb_sync.services.server_ids import ServerIdAllocator
from lb_sync.services.socket_reconciler import SocketReconciler
from lb_sync.services.stanza import StanzaGenerator
from lb_sync.services.state_cache import StateCache, plain_config

STATE_FILE_UPDATE_INTERVAL = 60  # ticks


def normalize_generator_config(service_name: str, config: Mapping[str, Any], log=None) -> dict[str, Any]:
    """Return ``config`` with the generator defaults filled in."""
    normalized: dict[str, Any] = {
        "server_options": "",
        "server_port_override": None,
        "backend": [],
        "frontend": [],
        "listen": [],
    }
    normalized.update(config)
    if "port" not in normalized and log is not None:
        log.warning(
            "service %s: haproxy config does not include a port; only backend sections for the "
            "service will be created; you must move traffic there manually using `extra_sections`",
            service_name,
        )
    return normalized


def flatten(stanza: Iterable[Any]) -> list[str]:
    lines = []
    for item in stanza:
        if isinstance(item, (list, tuple)):
            lines.extend(flatten(item))
        else:
            lines.append(item)
    return lines


def structural_lines(config: str) -> list[str]:
    """Config lines that a stats-socket toggle cannot change.

    Drops the timestamp header, the ``disabled`` flag of server lines and
    the order of server lines within a section.
    """
    lines: list[str] = []
    servers: list[str] = []
    for line in strip_header(config).split("\n"):
        if line.startswith("\tserver "):
            servers.append(line[: -len(" disabled")] if line.endswith(" disabled") else line)
            continue
        lines.extend(sorted(servers))
        servers = []
        lines.append(line)
    lines.extend(sorted(servers))
    return lines


class HaproxyGenerator:
    NAME = "haproxy"

    def __init__(
        self,
        ctx: SyncContext,
        options: HaproxyOptions,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._ctx = ctx
        self.options = options
        self._clock = clock
        rng = rng or random.Random()

        self.restart_state = RestartState(
            interval=options.restart_interval, jitter=options.restart_jitter, ctx=ctx
        )
        self.server_ids = ServerIdAllocator(ctx.child("server_ids"), options.max_server_id)
        self.state_cache = StateCache(ctx.child("state"), options.state_file_path, options.state_file_ttl)
        self.stanzas = StanzaGenerator(
            ctx.child("stanza"), options, self.server_ids, self.state_cache, self.restart_state, rng
        )
        self.reconciler = SocketReconciler(
            ctx.child("socket"), self.restart_state, timeout=options.socket_timeout_s
        )
        self.restarter = RestartCoordinator(ctx.child("restart"), self.restart_state, options.reload_command, rng)
        self.writer = (
            ConfigWriter(ctx.child("writer"), options.config_file_path, options.check_command)
            if options.config_file_path else None
        )

        self._directives: dict[str, ServiceDirectives] = {}
        self._applied_configs: dict[str, Any] = {}
        self._last_structure: Optional[list[str]] = None

    @property
    def name(self) -> str:
        return self.NAME

    def normalize_watcher_provided_config(self, service_name: str, config: Mapping[str, Any]) -> dict[str, Any]:
        return normalize_generator_config(service_name, config, self._ctx.log)

    def tick(self, views: list[WatcherView]) -> None:
        if self.restart_state.time % STATE_FILE_UPDATE_INTERVAL == 0:
            self.update_state_file(views)

        self.restarter.advance()

        # a restart may still be owed if it was rate limited in update_config
        if self.options.do_reloads and self.restart_state.restart_required:
            self.restarter.maybe_restart()

    def update_config(self, views: list[WatcherView]) -> str:
        if self.options.do_socket:
            for socket_path in self.options.socket_file_paths:
                self.reconciler.reconcile(socket_path, views)
        else:
            self.restart_state.require("socket_disabled")

        new_config = self.generate_config(views)

        if self.options.do_writes:
            self.write_config(new_config)
            if self.options.do_reloads and self.restart_state.restart_required:
                self.restarter.maybe_restart()
        return new_config

    def write_config(self, new_config: str) -> bool:
        structure = structural_lines(new_config)
        try:
            written = self.writer.write(new_config)
        except ConfigCheckFailed as e:
            self._ctx.log.error("refusing to install new haproxy config: %s", e)
            self.restart_state.require("config_check_failed")
            return False
        except OSError as e:
            self._ctx.log.error("failed to write haproxy config %s: %s", self.writer.path, e)
            self._ctx.metrics.config_writes.labels(result="error").inc()
            self.restart_state.require("config_write_failed")
            return False

        # toggling enabled servers is the socket's job; anything else needs a reload
        previous, self._last_structure = self._last_structure, structure
        if written and previous is not None and previous != structure:
            self.restart_state.require("config_changed", self.writer.path)
        return written

    def generate_config(self, views: list[WatcherView]) -> str:
        """Render the complete HAProxy config for ``views``."""
        new_config = self.generate_base_config()
        shared_frontend_lines = self.generate_shared_frontend()

        for view in views:
            config = view.generator_config
            if config.get("disabled"):
                continue

            config_changed = self._config_changed(view)
            if config_changed or view.name not in self._directives:
                self._directives[view.name] = parse_service_directives(view.name, config, self._ctx)
            new_config.extend(self.stanzas.render(view, self._directives[view.name], config_changed))
            self._ctx.metrics.backends.labels(service=view.name).set(len(view.backends))

            if "shared_frontend" in config:
                if shared_frontend_lines is None:
                    self._ctx.log.warning(
                        "service %s contains a shared frontend section but the base config does not! skipping.",
                        view.name,
                    )
                else:
                    shared_frontend_lines.append(validate(
                        [f"\t{line}" for line in config["shared_frontend"]],
                        "frontend",
                        f"shared frontend section for {view.name}",
                        self._ctx,
                    ))

        if shared_frontend_lines:
            new_config.append(shared_frontend_lines)

        return "\n".join(flatten(new_config))

    def generate_base_config(self) -> list:
        base_config: list = [f"# auto-generated by lb-sync at {datetime.now()}\n"]
        for section, options in (("global", self.options.global_), ("defaults", self.options.defaults)):
            base_config.append(section)
            base_config.extend(f"\t{option}" for option in options)

        for title, section in self.options.extra_sections.items():
            base_config.append(f"\n{title}")
            base_config.extend(f"\t{option}" for option in section)
        return base_config

    def generate_shared_frontend(self) -> Optional[list]:
        if self.options.shared_frontend is None:
            return None
        self._ctx.log.debug("found a shared frontend section")
        return [
            "\nfrontend shared-frontend",
            validate([f"\t{line}" for line in self.options.shared_frontend], "frontend", "shared frontend", self._ctx),
        ]

    def update_state_file(self, views: list[WatcherView]) -> None:
        self.state_cache.refresh(views, self._clock(), self.server_ids)
        self.state_cache.flush()

    def service_config_text(self, service: str) -> Optional[str]:
        """Last rendered stanzas of ``service``, or None if it was never rendered."""
        stanza = self.stanzas.cached(service)
        if stanza is None:
            return None
        return "\n".join(flatten(stanza))

    def _config_changed(self, view: WatcherView) -> bool:
        current = plain_config(view.generator_config)
        previous = self._applied_configs.get(view.name)
        if previous is None:
            previous = self.state_cache.generator_config(view.name)
        self._applied_configs[view.name] = current
        if previous is not None and previous != current:
            self.restart_state.require("generator_config_changed", view.name)
            return True
        return False

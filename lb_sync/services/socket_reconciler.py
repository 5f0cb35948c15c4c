"""Enable/disable HAProxy servers through the stats socket.

HAProxy can toggle servers it already knows about at runtime, but it
cannot add sections or servers without a reload. ``reconcile`` brings the
enabled state of every known server in line with discovery and falls back
to "restart required" whenever that is not enough or the socket misbehaves.
"""
from __future__ import annotations

import socket
from typing import Iterable, Optional

from lb_sync.core.context import SyncContext
from lb_sync.models.schemas import WatcherView
from lb_sync.services.restart import RestartState

HAPROXY_CMD_BATCH_SIZE = 4
STAT_COMMAND = "show stat\n"

# column positions in the `show stat` CSV
PXNAME, SVNAME, STATUS = 0, 1, 17

AGGREGATE_ROWS = ("FRONTEND", "BACKEND")


class StatParseError(ValueError):
    pass


def parse_stat(text: str) -> dict[str, dict[str, str]]:
    """Map section -> server -> status from a ``show stat`` reply."""
    sections: dict[str, dict[str, str]] = {}
    for line in text.split("\n"):
        if not line or line.startswith("#"):
            continue
        fields = line.split(",")
        if len(fields) <= STATUS:
            raise StatParseError(f"unexpected stat line: {line!r}")
        name, addr, status = fields[PXNAME], fields[SVNAME], fields[STATUS]
        if addr in AGGREGATE_ROWS:
            continue
        sections.setdefault(name, {})[addr] = status
    return sections


class SocketReconciler:
    def __init__(
        self,
        ctx: SyncContext,
        restart_state: RestartState,
        batch_size: int = HAPROXY_CMD_BATCH_SIZE,
        timeout: Optional[float] = None,
    ):
        self._ctx = ctx
        self._restart = restart_state
        self._batch_size = batch_size
        self._timeout = timeout

    def talk(self, socket_path: str, command: str) -> str:
        """Send one command over a fresh connection and read the reply to EOF."""
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(self._timeout)
            s.connect(socket_path)
            s.sendall(command.encode())
            chunks = []
            while True:
                chunk = s.recv(65536)
                if not chunk:
                    break
                chunks.append(chunk)
        return b"".join(chunks).decode(errors="replace")

    def reconcile(self, socket_path: str, views: Iterable[WatcherView]) -> None:
        """Toggle servers at ``socket_path`` to match ``views``. Never raises."""
        try:
            info = self.talk(socket_path, STAT_COMMAND)
            current = parse_stat(info)
        except (OSError, StatParseError) as e:
            self._restart.require("socket_query_failed", f"{STAT_COMMAND.strip()} on {socket_path}: {e!r}")
            return

        enabled = self._desired(current, views)
        commands = self._commands(current, enabled)

        for start in range(0, len(commands), self._batch_size):
            batch = commands[start:start + self._batch_size]
            joined = ";".join(batch)
            try:
                output = self.talk(socket_path, joined + "\n")
            except OSError as e:
                self._restart.require("socket_command_failed", f"{joined} failed with {e!r}")
                continue
            if output != "\n" * len(batch):
                self._restart.require("socket_command_failed", f"{joined} returned {output!r}")
                continue
            for command in batch:
                self._ctx.metrics.socket_commands.labels(action=command.split(" ", 1)[0]).inc()

        self._ctx.log.info("reconfigured haproxy via %s", socket_path)

    def _desired(self, current: dict[str, dict[str, str]], views: Iterable[WatcherView]) -> dict[str, set[str]]:
        enabled: dict[str, set[str]] = {}
        for view in views:
            section = view.generator_config.get("backend_name", view.name)
            enabled[section] = set()
            if not view.backends or view.generator_config.get("disabled"):
                continue

            if section not in current:
                self._restart.require("new_section", section)
                continue

            for backend in view.backends:
                backend_name = backend.backend_name
                if backend_name in current[section]:
                    enabled[section].add(backend_name)
                else:
                    self._restart.require("new_backend", f"{section}/{backend_name}")
        return enabled

    def _commands(self, current: dict[str, dict[str, str]], enabled: dict[str, set[str]]) -> list[str]:
        commands = []
        for section, servers in current.items():
            wanted = enabled.get(section, set())
            for server, status in servers.items():
                if " " in status.strip():
                    self._ctx.log.warning(
                        "ambiguous status %r for %s/%s; toggling explicitly", status, section, server
                    )
                if server in wanted:
                    if status == "UP":
                        continue
                    commands.append(f"enable server {section}/{server}")
                else:
                    if status == "MAINT":
                        continue
                    commands.append(f"disable server {section}/{server}")
        return commands

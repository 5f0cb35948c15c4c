"""Rate-limited HAProxy reloads driven by a virtual clock.

Anything that notices the live HAProxy can no longer be brought in line
without a reload calls :meth:`RestartState.require`. The coordinator then
runs the reload command on the first tick at or after ``next_restart`` and
schedules the following window ``interval`` (plus jitter) ticks later.
"""
from __future__ import annotations

import random
import subprocess
from dataclasses import dataclass
from typing import Optional

from lb_sync.core.context import SyncContext


@dataclass
class RestartState:
    time: int = 0
    next_restart: float = 0
    # a fresh process has not loaded the config it is about to write yet
    restart_required: bool = True
    interval: int = 2
    jitter: float = 0.0
    ctx: Optional[SyncContext] = None

    def require(self, reason: str, detail: str = "") -> None:
        """Mark a reload as owed. Safe to call any number of times."""
        if self.ctx is not None:
            self.ctx.log.info("restart required because %s%s", reason, f": {detail}" if detail else "")
            self.ctx.metrics.restart_required.labels(reason=reason).inc()
        self.restart_required = True


class RestartCoordinator:
    def __init__(
        self,
        ctx: SyncContext,
        state: RestartState,
        reload_command: Optional[str],
        rng: Optional[random.Random] = None,
    ):
        self._ctx = ctx
        self.state = state
        self._reload_command = reload_command
        self._rng = rng or random.Random()

    def advance(self) -> int:
        self.state.time += 1
        return self.state.time

    def maybe_restart(self) -> bool:
        """Reload HAProxy if one is owed and the rate limit allows it."""
        state = self.state
        if not state.restart_required:
            return False
        if state.time < state.next_restart:
            self._ctx.log.info("at time %d waiting until %s to restart", state.time, state.next_restart)
            return False

        state.next_restart = state.time + state.interval + self._rng.uniform(0, state.jitter * state.interval)

        if not self._reload_command:
            self._ctx.log.error("restart required but no reload command is configured")
            self._ctx.metrics.restarts.labels(result="error").inc()
            return False

        try:
            res = subprocess.run(
                self._reload_command, shell=True, capture_output=True, text=True
            )
        except OSError as e:
            self._ctx.log.error("failed to reload haproxy via %s: %s", self._reload_command, e)
            self._ctx.metrics.restarts.labels(result="error").inc()
            return False
        if res.returncode != 0:
            output = (res.stdout + res.stderr).strip()
            self._ctx.log.error(
                "failed to reload haproxy via %s (exit %d): %s", self._reload_command, res.returncode, output
            )
            self._ctx.metrics.restarts.labels(result="error").inc()
            return False

        self._ctx.log.info("restarted haproxy")
        self._ctx.metrics.restarts.labels(result="ok").inc()
        state.restart_required = False
        return True

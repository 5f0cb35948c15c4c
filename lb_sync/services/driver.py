"""Main loop tying the watchers to the HAProxy generator.

Watchers call :meth:`SyncDriver.reconfigure` from their own threads; the
driver itself does all generator work from a single execution context,
one :meth:`step` per logical second.
"""
from __future__ import annotations

import asyncio
import threading
from typing import Sequence

from lb_sync.core.context import SyncContext
from lb_sync.core.errors import WatcherUnhealthyError
from lb_sync.models.schemas import WatcherView
from lb_sync.services.generator import HaproxyGenerator
from lb_sync.services.watchers import BaseWatcher


class SyncDriver:
    def __init__(
        self,
        ctx: SyncContext,
        generator: HaproxyGenerator,
        watchers: Sequence[BaseWatcher] = (),
        tick_interval: float = 1.0,
    ):
        self._ctx = ctx
        self.generator = generator
        self.watchers = list(watchers)
        self._tick_interval = tick_interval
        # configure on the first step
        self._config_updated = threading.Event()
        self._config_updated.set()
        self.loops = 0

    def reconfigure(self) -> None:
        self._config_updated.set()

    def views(self) -> list[WatcherView]:
        return [w.snapshot(self.generator.name) for w in self.watchers]

    def start_watchers(self) -> None:
        self._ctx.log.info("starting...")
        for watcher in self.watchers:
            watcher.start()

    def stop_watchers(self) -> None:
        self._ctx.log.warning("exiting; sending stop signal to all watchers")
        for watcher in self.watchers:
            watcher.stop()

    def step(self) -> None:
        """One logical second: regenerate if a watcher changed, then tick."""
        for watcher in self.watchers:
            if not watcher.healthy():
                raise WatcherUnhealthyError(f"service watcher {watcher.name} failed ping!")

        if self._config_updated.is_set():
            self._config_updated.clear()
            self._ctx.log.info("configuring %s", self.generator.name)
            self.generator.update_config(self.views())

        self.generator.tick(self.views())

        self.loops += 1
        if self.loops % 60 == 0:
            self._ctx.log.debug("still running after %d loops", self.loops)

    async def run(self) -> None:
        """Run :meth:`step` forever off the event loop thread."""
        try:
            while True:
                await asyncio.to_thread(self.step)
                await asyncio.sleep(self._tick_interval)
        except Exception:
            self._ctx.log.exception("encountered unexpected exception in main loop")
            raise

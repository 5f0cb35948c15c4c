"""Writes the rendered HAProxy config to disk.

The file is only touched when its content changed (the timestamp comment
on the first line does not count). Writes go to a temporary file that is
renamed into place so HAProxy never reads a half-written config.
"""
from __future__ import annotations

import os
import subprocess
from typing import Optional

from lb_sync.core.context import SyncContext
from lb_sync.core.errors import ConfigCheckFailed


def strip_header(text: str) -> str:
    """Drop the leading ``# auto-generated ...`` comment line."""
    if text.startswith("#"):
        _, _, rest = text.partition("\n")
        return rest
    return text


class ConfigWriter:
    def __init__(self, ctx: SyncContext, path: str, check_command: Optional[str] = None):
        self._ctx = ctx
        self.path = path
        self._check_command = check_command

    def read(self) -> str:
        try:
            with open(self.path) as f:
                return f.read()
        except FileNotFoundError:
            self._ctx.log.info("could not open haproxy config file at %s", self.path)
            return ""

    def write(self, new_config: str) -> bool:
        """Write ``new_config`` if it differs from the file; return whether it did.

        Raises :class:`ConfigCheckFailed` when the check command rejects the
        candidate; the live file is left untouched in that case.
        """
        if strip_header(self.read()) == strip_header(new_config):
            self._ctx.metrics.config_writes.labels(result="unchanged").inc()
            return False

        if self._check_command:
            self._check(new_config)

        self._atomic_write(self.path, new_config)
        self._ctx.log.info("wrote haproxy config to %s", self.path)
        self._ctx.metrics.config_writes.labels(result="written").inc()
        return True

    def _check(self, new_config: str) -> None:
        candidate = f"{self.path}.candidate"
        self._atomic_write(candidate, new_config)
        command = self._check_command.replace("{config_file}", candidate)
        try:
            res = subprocess.run(command, shell=True, capture_output=True, text=True)
        except OSError as e:
            self._ctx.metrics.config_writes.labels(result="check_failed").inc()
            raise ConfigCheckFailed(command, -1, str(e)) from e
        if res.returncode != 0:
            self._ctx.metrics.config_writes.labels(result="check_failed").inc()
            raise ConfigCheckFailed(command, res.returncode, (res.stdout + res.stderr).strip())

    @staticmethod
    def _atomic_write(path: str, content: str) -> None:
        tmp_path = os.path.join(os.path.dirname(path) or ".", f".{os.path.basename(path)}.tmp")
        with open(tmp_path, "w") as f:
            f.write(content)
        os.replace(tmp_path, path)

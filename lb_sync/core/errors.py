"""Exception types raised by lb-sync.

Only configuration errors are fatal. Everything that can go wrong while
the generator is running (socket trouble, reload failures, a broken state
file) is logged and degraded into "restart required" instead.
"""


class LbSyncError(Exception):
    """Base class for lb-sync errors."""


class ConfigError(LbSyncError, ValueError):
    """The configuration cannot be used; raised while building components."""


class ConfigCheckFailed(LbSyncError):
    """The configured check command rejected a freshly rendered config."""

    def __init__(self, command: str, returncode: int, output: str = ""):
        super().__init__(f"config check `{command}` exited with {returncode}: {output}")
        self.command = command
        self.returncode = returncode
        self.output = output


class WatcherUnhealthyError(LbSyncError):
    """A discovery watcher stopped responding."""

"""Data models shared by the watchers and the HAProxy generator."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict


class Backend(BaseModel):
    """One upstream instance reported by a discovery source.

    Unknown fields supplied by a watcher (labels, zone, ...) are kept so they
    survive a round trip through the state file.
    """

    model_config = ConfigDict(extra="allow")

    host: str
    port: int
    name: Optional[str] = None
    weight: Optional[Union[int, str]] = None
    haproxy_server_options: Optional[str] = None
    haproxy_server_id: Optional[int] = None

    @property
    def backend_name(self) -> str:
        """Stable join key between live and cached backends of a service."""
        address = f"{self.host}:{self.port}"
        if self.name:
            return f"{self.name}_{address}"
        return address

    def to_state(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass(frozen=True)
class WatcherView:
    """Consistent snapshot of a watcher, read once per generation cycle."""

    name: str
    backends: tuple[Backend, ...] = ()
    generator_config: Mapping[str, Any] = field(default_factory=dict)
    revision: int = 0


@dataclass(frozen=True)
class ServiceDirectives:
    """Validated directive lines for a service's frontend and backend."""

    frontend: tuple[str, ...] = ()
    backend: tuple[str, ...] = ()

"""Stable HAProxy server ids per (service, backend).

External consumers of the stats socket track servers by their numeric id,
so once a backend has an id it keeps it for as long as the backend is
rendered. Ids come from, in order: the discovery source
(``haproxy_server_id``), an ``id N`` token in the backend's
``haproxy_server_options``, the id remembered from the previous cycle or
the state file, and finally the lowest free id.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Optional

from lb_sync.core.config import MAX_SERVER_ID
from lb_sync.core.context import SyncContext
from lb_sync.models.schemas import Backend


class ServerIdAllocator:
    def __init__(self, ctx: SyncContext, max_server_id: int = MAX_SERVER_ID):
        self._ctx = ctx
        self._max = max_server_id
        # service -> backend name -> id, and the reverse
        self._ids: dict[str, dict[str, int]] = defaultdict(dict)
        self._names: dict[str, dict[int, str]] = defaultdict(dict)

    @property
    def max_server_id(self) -> int:
        return self._max

    @staticmethod
    def explicit_id(backend: Backend) -> Optional[int]:
        """Id pinned by the discovery source, if any."""
        if backend.haproxy_server_id is not None:
            return int(backend.haproxy_server_id)
        return options_id(backend.haproxy_server_options)

    def get(self, service: str, backend_name: str) -> Optional[int]:
        return self._ids[service].get(backend_name)

    def assignments(self, service: str) -> dict[str, int]:
        return dict(self._ids[service])

    def remember(self, service: str, backend_name: str, server_id: Optional[int]) -> None:
        """Seed an id recovered from the state cache.

        Existing assignments win, and an id already owned by another
        backend is not taken.
        """
        if server_id is None or backend_name in self._ids[service]:
            return
        try:
            server_id = int(server_id)
        except (TypeError, ValueError):
            return
        if not 1 <= server_id <= self._max:
            return
        if server_id in self._names[service]:
            return
        self._assign(service, backend_name, server_id)

    def id_for(self, service: str, backend_name: str, backend: Backend) -> Optional[int]:
        """Resolve the id of a live backend, allocating one if needed.

        Returns ``None`` when every id up to ``max_server_id`` is taken; the
        backend is then rendered without an id.
        """
        explicit = self.explicit_id(backend)
        if explicit is not None:
            owner = self._names[service].get(explicit)
            if owner is not None and owner != backend_name:
                self._ctx.log.warning(
                    "service %s: backend %s claims server id %d held by %s; reassigning %s",
                    service, backend_name, explicit, owner, owner,
                )
                del self._ids[service][owner]
            self._assign(service, backend_name, explicit)
            return explicit

        current = self._ids[service].get(backend_name)
        if current is not None:
            return current
        return self._allocate(service, backend_name)

    def release_absent(self, service: str, present: Iterable[str]) -> None:
        """Forget ids of backends that are no longer rendered."""
        present = set(present)
        ids = self._ids[service]
        for name in [n for n in ids if n not in present]:
            del ids[name]
        names = self._names[service]
        for server_id in [i for i, n in names.items() if n not in present or ids.get(n) != i]:
            del names[server_id]

    def _assign(self, service: str, backend_name: str, server_id: int) -> None:
        previous = self._ids[service].get(backend_name)
        if previous is not None and self._names[service].get(previous) == backend_name:
            del self._names[service][previous]
        self._ids[service][backend_name] = server_id
        self._names[service][server_id] = backend_name

    def _allocate(self, service: str, backend_name: str) -> Optional[int]:
        names = self._names[service]
        if len(self._ids[service]) >= self._max:
            self._ctx.log.error(
                "service %s: ran out of server ids (max %d); %s rendered without an id",
                service, self._max, backend_name,
            )
            self._ctx.metrics.server_id_exhausted.inc()
            return None
        probe = 1
        for _ in range(self._max):
            if names.get(probe, backend_name) == backend_name:
                self._assign(service, backend_name, probe)
                return probe
            probe = probe % self._max + 1
        self._ctx.log.error("service %s: no free server id for %s", service, backend_name)
        self._ctx.metrics.server_id_exhausted.inc()
        return None


def options_id(options: Optional[str]) -> Optional[int]:
    """Parse ``id N`` out of a free-text server options string."""
    if not isinstance(options, str):
        return None
    tokens = options.split()
    if "id" not in tokens:
        return None
    idx = tokens.index("id")
    try:
        return int(tokens[idx + 1])
    except (IndexError, ValueError):
        return None

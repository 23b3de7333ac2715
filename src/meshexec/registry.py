"""Container registry: id → Container store owned by one Executor.

All mutations are synchronous so they never interleave with their own
async continuations. ``locked(id)`` serializes lifecycle commands per id:
commands for different ids still run concurrently.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from meshexec.container import Container
from meshexec.errors import NotFoundError


@dataclass
class _IdLock:
    lock: asyncio.Lock
    users: int = 0


class ContainerRegistry:
    def __init__(self) -> None:
        self._containers: dict[str, Container] = {}
        self._locks: dict[str, _IdLock] = {}

    @staticmethod
    def _key(container_id: Any) -> str:
        # The scheduler may send ids as numbers or strings; treat 3 and "3" alike.
        return str(container_id)

    def __contains__(self, container_id: object) -> bool:
        return self._key(container_id) in self._containers

    def __len__(self) -> int:
        return len(self._containers)

    def __iter__(self) -> Iterator[Container]:
        return iter(list(self._containers.values()))

    def ids(self) -> list[Any]:
        return [c.id for c in self._containers.values()]

    def get(self, container_id: Any) -> Container | None:
        return self._containers.get(self._key(container_id))

    def require(self, container_id: Any) -> Container:
        """Return the container for *container_id* or raise NotFoundError."""
        container = self.get(container_id)
        if container is None:
            raise NotFoundError(container_id)
        return container

    def replace(self, container_id: Any, container: Container) -> Container | None:
        """Install *container* and return the one it displaced, in one mutation."""
        key = self._key(container_id)
        old = self._containers.get(key)
        self._containers[key] = container
        return old

    def remove(self, container_id: Any, container: Container | None = None) -> Container | None:
        """Remove the entry for *container_id*.

        When *container* is given, the entry is only removed if it is still
        that container (a later deploy may have replaced it).
        """
        key = self._key(container_id)
        current = self._containers.get(key)
        if current is None or (container is not None and current is not container):
            return None
        del self._containers[key]
        return current

    def clear(self) -> list[Container]:
        removed = list(self._containers.values())
        self._containers.clear()
        return removed

    def ports(self, exclude: Any = None) -> list[int]:
        """Ports assigned to registered containers, optionally skipping one id."""
        skip = None if exclude is None else self._key(exclude)
        return [
            c.port for key, c in self._containers.items() if key != skip and c.port is not None
        ]

    @asynccontextmanager
    async def locked(self, container_id: Any) -> AsyncIterator[None]:
        """Hold the per-id operation lock for the duration of the block."""
        key = self._key(container_id)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _IdLock(lock=asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

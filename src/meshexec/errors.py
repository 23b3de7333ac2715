"""Exception taxonomy.

Every one of these is converted into a reply payload at the command
dispatch boundary; none of them reaches the control channel as a raised
exception.
"""

from __future__ import annotations


class MeshExecError(Exception):
    """Base class for executor errors."""


class NotFoundError(MeshExecError):
    """A command referenced a container id that is not registered."""

    def __init__(self, container_id: object) -> None:
        super().__init__(f"container {container_id} does not exist")
        self.container_id = container_id


class ContainerError(MeshExecError):
    """A lifecycle operation is not valid in the container's current state."""


class DownloadError(MeshExecError):
    """Fetching or unpacking a deployment artifact failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class SpawnError(MeshExecError):
    """The process runtime could not be spawned."""


class ChannelError(MeshExecError):
    """The control channel is unavailable or a request over it failed."""

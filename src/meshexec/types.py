"""Data models for meshexec."""

from __future__ import annotations

import signal
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

# Signal name ("SIGTERM") when the process was killed, else its exit code.
ExitReason = str | int


class ContainerState(StrEnum):
    CREATED = "created"
    DOWNLOADING = "downloading"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING_SOFT = "stopping-soft"
    STOPPING_HARD = "stopping-hard"
    STOPPED = "stopped"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    DESTROYED = "destroyed"


@dataclass
class StartOptions:
    size: str | int | None = None  # cluster size passed to the runner; None → "CPU"
    trace: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> StartOptions:
        raw = raw or {}
        return cls(size=raw.get("size"), trace=bool(raw.get("trace", False)))

    @property
    def cluster_size(self) -> str:
        return "CPU" if self.size is None else str(self.size)


def exit_reason(returncode: int) -> ExitReason:
    """Translate an asyncio returncode into the reason reported to the scheduler.

    asyncio reports death-by-signal as a negative returncode.
    """
    if returncode < 0:
        try:
            return signal.Signals(-returncode).name
        except ValueError:
            return returncode
    return returncode

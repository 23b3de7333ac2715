"""Shared test fixtures for meshexec."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"soft_stop_timeout", "containers_dir"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (executor, container, etc.) and cached property
    overrides (containers_dir, soft_stop_timeout).

    Usage::

        s = make_settings(containers_dir=tmp_path)
        s = make_settings(channel=ChannelConfig(reconnect_min_seconds=0.01))
    """
    from meshexec.config import (
        ChannelConfig,
        ContainerConfig,
        ExecutorConfig,
        LoggingConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "executor": ExecutorConfig(),
        "container": ContainerConfig(),
        "channel": ChannelConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* on the event loop until it holds or *timeout* expires."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


class FakeProcess:
    """Simulates asyncio.subprocess.Process for testing.

    ``terminate()`` schedules an exit by SIGTERM unless the process was
    told to ignore it; ``exit()`` simulates the process ending on its own.
    """

    def __init__(self, pid: int, log: list[tuple[str, int]] | None = None) -> None:
        self.pid = pid
        self._returncode: int | None = None
        self._exited = asyncio.Event()
        self._log = log if log is not None else []
        self.terminated = 0
        self.ignore_terminate = False
        self.gone = False  # terminate() raises ProcessLookupError
        self.terminate_error: OSError | None = None

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def exit(self, code: int = 0) -> None:
        if self._returncode is not None:
            return
        self._returncode = code
        self._log.append(("exit", self.pid))
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self._returncode  # type: ignore[return-value]

    def terminate(self) -> None:
        if self.terminate_error is not None:
            raise self.terminate_error
        if self.gone or self._returncode is not None:
            raise ProcessLookupError(self.pid)
        self.terminated += 1
        self._log.append(("terminate", self.pid))
        if not self.ignore_terminate:
            asyncio.get_running_loop().call_soon(self.exit, -signal.SIGTERM)


class FakeSpawner:
    """Stands in for asyncio.create_subprocess_exec; records every spawn."""

    def __init__(self, first_pid: int = 9876) -> None:
        self.calls: list[tuple[list[str], dict[str, str]]] = []
        self.procs: list[FakeProcess] = []
        self.log: list[tuple[str, int]] = []
        self.error: OSError | None = None
        self.gate: asyncio.Event | None = None  # when set, spawns wait for it
        self.requested = 0
        self._next_pid = first_pid

    async def __call__(self, *argv: str, env: dict[str, str] | None = None) -> FakeProcess:
        self.requested += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        proc = FakeProcess(self._next_pid, self.log)
        self._next_pid += 1
        self.calls.append((list(argv), dict(env or {})))
        self.procs.append(proc)
        self.log.append(("spawn", proc.pid))
        return proc

    @property
    def last(self) -> FakeProcess:
        return self.procs[-1]


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Ensure each test starts with a clean Settings singleton.

    Built from pure defaults with no config or .env file I/O, and with
    container directories under the test's tmp_path.
    """
    safe = make_settings(containers_dir=tmp_path / "containers", soft_stop_timeout=5.0)
    monkeypatch.setattr("meshexec.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()

"""Tests for the container lifecycle: URLs, runner invocation, stop/restart, respawn."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from conftest import FakeSpawner, wait_for
from yarl import URL

from meshexec.container import Container, artifact_url, container_control_url
from meshexec.errors import ContainerError, DownloadError, SpawnError
from meshexec.types import ContainerState, StartOptions

CONTROL = "ws://exec-token@some.host:8765/executor-control"


def make_container(spawner: FakeSpawner | None = None, **overrides) -> Container:
    kwargs = {
        "id": 3,
        "control": CONTROL,
        "deployment_id": 12345,
        "env": {"PORT": 3003},
        "options": {"size": 9},
        "token": "sched-token",
        "runner": ["sl-run"],
        "spawn": spawner,
    }
    kwargs.update(overrides)
    return Container(**kwargs)


@pytest.fixture
def fetch():
    with patch("meshexec.container.fetch_artifact", new_callable=AsyncMock) as mock:
        mock.return_value = 1
        yield mock


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestUrls:
    def test_download_and_control_urls(self):
        c = make_container()
        assert c.download_url == "http://some.host:8765/artifacts/executor/3/12345"
        assert c.control_url == "http://sched-token@some.host:8765"

    def test_secure_control_maps_to_https(self):
        c = make_container(control="wss://tok@host:1/executor-control")
        assert c.download_url == "https://host:1/artifacts/executor/3/12345"
        assert c.control_url == "https://sched-token@host:1"

    def test_execution_token_not_in_download_url(self):
        c = make_container()
        assert "exec-token" not in c.download_url

    def test_helpers_without_port(self):
        control = URL("ws://tok@host/executor-control")
        assert artifact_url(control, "a", 1) == "http://host/artifacts/executor/a/1"
        assert container_control_url(control, "t") == "http://t@host"


class TestRequiredFields:
    @pytest.mark.parametrize("field", ["id", "control", "deployment_id", "env", "options", "token"])
    def test_missing_field_rejected(self, field):
        with pytest.raises(ValueError, match="missing required field"):
            make_container(**{field: None})

    def test_empty_env_is_accepted(self):
        c = make_container(env={})
        assert c.env == {}
        assert c.port is None


class TestConfiguration:
    def test_port_from_env(self):
        assert make_container().port == 3003

    def test_set_env_replaces_env(self):
        c = make_container()
        c.set_env({"HI": "there", "PORT": 4000})
        assert c.env == {"HI": "there", "PORT": "4000"}
        assert c.port == 4000

    def test_runner_args(self, tmp_path):
        c = make_container()
        assert c.runner_args() == [
            "--cluster=9",
            "--control=http://sched-token@some.host:8765",
            str(tmp_path / "containers" / "3"),
        ]

    def test_size_defaults_to_cpu(self):
        c = make_container(options={})
        assert c.runner_args()[0] == "--cluster=CPU"

    def test_set_start_options_adds_trace(self):
        c = make_container()
        c.set_start_options({"size": 2, "trace": True})
        assert c.options == StartOptions(size=2, trace=True)
        args = c.runner_args()
        assert args[0] == "--cluster=2"
        assert args[-2] == "--trace"

    def test_runner_env_inherits_allowlist_only(self, monkeypatch):
        monkeypatch.setenv("PATH", "/usr/bin:/bin")
        monkeypatch.setenv("DEBUG", "outer")
        monkeypatch.setenv("SECRET_THING", "nope")
        monkeypatch.delenv("MESH_LICENSE", raising=False)
        c = make_container(env={"PORT": 3003, "DEBUG": "inner"})

        env = c.runner_env()
        assert env == {"PATH": "/usr/bin:/bin", "DEBUG": "inner", "PORT": "3003"}


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------


class TestStart:
    async def test_start_downloads_then_spawns(self, spawner, fetch, tmp_path):
        c = make_container(spawner)
        await c.start()

        fetch.assert_awaited_once_with(
            "http://some.host:8765/artifacts/executor/3/12345",
            "exec-token",
            tmp_path / "containers" / "3",
            session=None,
            chunk_size=65536,
        )
        argv, env = spawner.calls[0]
        assert argv == ["sl-run", *c.runner_args()]
        assert env["PORT"] == "3003"
        assert c.state is ContainerState.RUNNING
        assert c.pid == 9876
        await c.destroy()

    async def test_download_failure_stops_sequence(self, spawner, fetch):
        fetch.side_effect = DownloadError("status code 404", status=404)
        c = make_container(spawner)

        with pytest.raises(DownloadError, match="status code 404"):
            await c.start()
        assert spawner.calls == []
        assert c.state is ContainerState.STOPPED

    async def test_spawn_failure_raises_spawn_error(self, spawner, fetch):
        spawner.error = FileNotFoundError("sl-run")
        c = make_container(spawner)

        with pytest.raises(SpawnError):
            await c.start()
        assert c.state is ContainerState.STOPPED
        assert not c.is_running

    async def test_start_while_running_rejected(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()
        with pytest.raises(ContainerError, match="already running"):
            await c.start()
        assert len(spawner.procs) == 1
        await c.destroy()

    async def test_start_after_destroy_rejected(self, spawner, fetch):
        c = make_container(spawner)
        await c.destroy()
        with pytest.raises(ContainerError, match="destroyed"):
            await c.start()
        fetch.assert_not_awaited()

    async def test_destroy_during_download_prevents_spawn(self, spawner, fetch):
        release = asyncio.Event()

        async def slow_fetch(*args, **kwargs):
            await release.wait()
            return 1

        fetch.side_effect = slow_fetch
        c = make_container(spawner)
        task = asyncio.create_task(c.start())
        await wait_for(lambda: c.state is ContainerState.DOWNLOADING)

        destroy = asyncio.create_task(c.destroy())
        await asyncio.sleep(0.01)
        assert not destroy.done()

        release.set()
        await task
        assert await destroy is None
        assert spawner.calls == []
        assert c.state is ContainerState.DESTROYED

    async def test_set_env_does_not_touch_running_process(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()
        c.set_env({"PORT": 3003, "NEW": "value"})
        assert len(spawner.procs) == 1
        assert "NEW" not in spawner.calls[0][1]

        await c.restart()
        assert spawner.calls[1][1]["NEW"] == "value"
        await c.destroy()


# ---------------------------------------------------------------------------
# Stop / restart
# ---------------------------------------------------------------------------


class TestStop:
    async def test_hard_stop_reports_signal(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()

        assert await c.stop() == "SIGTERM"
        assert spawner.last.terminated == 1
        assert c.state is ContainerState.STOPPED
        assert not c.is_running

    async def test_stop_without_process_returns_none(self, spawner, fetch):
        c = make_container(spawner)
        assert await c.stop() is None
        assert await c.stop(soft=True) is None

    async def test_stop_when_process_already_gone(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()
        spawner.last.gone = True

        assert await c.stop() is None

        spawner.last.exit(0)
        await wait_for(lambda: c.state is ContainerState.STOPPED)

    async def test_stop_twice_second_is_noop(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()
        await c.stop()
        assert await c.stop() is None
        assert spawner.last.terminated == 1

    async def test_soft_stop_natural_exit(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()
        proc = spawner.last
        asyncio.get_running_loop().call_soon(proc.exit, 7)

        assert await c.stop(soft=True, timeout=1.0) == 7
        assert proc.terminated == 0
        assert len(spawner.procs) == 1

    async def test_soft_stop_escalates_after_timeout(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()

        assert await c.stop(soft=True, timeout=0.05) == "SIGTERM"
        assert spawner.last.terminated == 1
        assert c.state is ContainerState.STOPPED

    async def test_soft_stop_escalation_failure_raised(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()
        spawner.last.terminate_error = PermissionError("not allowed")

        with pytest.raises(PermissionError):
            await c.stop(soft=True, timeout=0.01)
        spawner.last.exit(0)
        await wait_for(lambda: not c.is_running)
        assert len(spawner.procs) == 1

    async def test_restart_spawns_new_process(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()
        first = c.pid

        await c.restart()
        assert c.pid == first + 1
        assert fetch.await_count == 2
        assert spawner.procs[0].terminated == 1
        assert spawner.calls[0][0] == spawner.calls[1][0]
        await c.destroy()

    async def test_soft_restart(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()
        asyncio.get_running_loop().call_soon(spawner.last.exit, 0)

        await c.restart(soft=True, timeout=1.0)
        assert spawner.procs[0].terminated == 0
        assert c.pid == 9877
        await c.destroy()

    async def test_destroy_marks_container_destroyed(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()

        assert await c.destroy() == "SIGTERM"
        assert c.state is ContainerState.DESTROYED


# ---------------------------------------------------------------------------
# Exit watcher
# ---------------------------------------------------------------------------


class TestExitWatcher:
    async def test_crash_respawns_exactly_once(self, spawner, fetch):
        exits = []
        c = make_container(spawner)
        c.on_exit(lambda reason, pid: exits.append((reason, pid)))
        await c.start()

        spawner.procs[0].exit(1)
        await wait_for(lambda: len(spawner.procs) == 2)
        await asyncio.sleep(0.02)

        assert len(spawner.procs) == 2
        assert spawner.calls[0] == spawner.calls[1]
        assert exits == [(1, 9876)]
        assert c.state is ContainerState.RUNNING
        assert c.pid == 9877
        # Respawn reuses the unpacked artifact.
        assert fetch.await_count == 1
        await c.destroy()

    async def test_killed_by_signal_reports_signal_name(self, spawner, fetch):
        exits = []
        c = make_container(spawner)
        c.on_exit(lambda reason, pid: exits.append(reason))
        await c.start()

        spawner.procs[0].exit(-9)
        await wait_for(lambda: exits)
        assert exits == ["SIGKILL"]
        await c.destroy()

    async def test_intentional_stop_does_not_respawn(self, spawner, fetch):
        exits = []
        c = make_container(spawner)
        c.on_exit(lambda reason, pid: exits.append((reason, pid)))
        await c.start()

        await c.stop()
        await asyncio.sleep(0.02)

        assert len(spawner.procs) == 1
        assert exits == [("SIGTERM", 9876)]

    async def test_failing_listener_does_not_break_watcher(self, spawner, fetch):
        def boom(reason, pid):
            raise RuntimeError("listener broke")

        seen = []
        c = make_container(spawner)
        c.on_exit(boom)
        c.on_exit(lambda reason, pid: seen.append(pid))
        await c.start()

        spawner.procs[0].exit(2)
        await wait_for(lambda: len(spawner.procs) == 2)
        assert seen == [9876]
        await c.destroy()

    async def test_respawn_failure_leaves_container_down(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()

        spawner.error = FileNotFoundError("sl-run")
        spawner.procs[0].exit(1)
        await wait_for(lambda: c.state is ContainerState.STOPPED)
        assert not c.is_running


# ---------------------------------------------------------------------------
# Transitions that overlap a start or respawn
# ---------------------------------------------------------------------------


class GatedFetch:
    """Download stand-in that blocks until released and tracks overlap."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.active = 0
        self.peak = 0

    async def fetch(self, *args, **kwargs) -> int:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.release.wait()
        finally:
            self.active -= 1
        return 1


class TestOverlappingTransitions:
    async def test_stop_during_respawn_spawn_stops_new_process(self, spawner, fetch):
        exits = []
        c = make_container(spawner)
        c.on_exit(lambda reason, pid: exits.append((reason, pid)))
        await c.start()

        spawner.gate = asyncio.Event()
        spawner.procs[0].exit(1)
        await wait_for(lambda: spawner.requested == 2)

        stop = asyncio.create_task(c.stop())
        await asyncio.sleep(0.01)
        assert not stop.done()

        spawner.gate.set()
        assert await stop == "SIGTERM"
        await asyncio.sleep(0.02)

        assert not c.is_running
        assert c.state is ContainerState.STOPPED
        assert len(spawner.procs) == 2
        assert exits == [(1, 9876), ("SIGTERM", 9877)]

    async def test_destroy_during_spawn_reaps_and_reports_exit(self, spawner, fetch):
        exits = []
        c = make_container(spawner)
        c.on_exit(lambda reason, pid: exits.append((reason, pid)))
        spawner.gate = asyncio.Event()

        start = asyncio.create_task(c.start())
        await wait_for(lambda: spawner.requested == 1)
        destroy = asyncio.create_task(c.destroy())
        await asyncio.sleep(0.01)

        spawner.gate.set()
        await start
        assert await destroy == "SIGTERM"

        assert exits == [("SIGTERM", 9876)]
        assert spawner.procs[0].terminated == 1
        assert not c.is_running
        assert c.state is ContainerState.DESTROYED

    async def test_restart_during_download_does_not_overlap_downloads(self, spawner, fetch):
        gated = GatedFetch()
        fetch.side_effect = gated.fetch
        c = make_container(spawner)

        start = asyncio.create_task(c.start())
        await wait_for(lambda: c.state is ContainerState.DOWNLOADING)
        restart = asyncio.create_task(c.restart())
        await asyncio.sleep(0.01)
        assert fetch.await_count == 1

        gated.release.set()
        await start
        await restart

        assert gated.peak == 1
        assert fetch.await_count == 2
        assert len(spawner.procs) == 1
        assert c.is_running
        await c.destroy()

    async def test_start_during_download_rejected(self, spawner, fetch):
        gated = GatedFetch()
        fetch.side_effect = gated.fetch
        c = make_container(spawner)

        start = asyncio.create_task(c.start())
        await wait_for(lambda: c.state is ContainerState.DOWNLOADING)
        with pytest.raises(ContainerError, match="already starting"):
            await c.start()

        gated.release.set()
        await start
        assert gated.peak == 1
        assert len(spawner.procs) == 1
        await c.destroy()

    async def test_start_during_respawn_rejected(self, spawner, fetch):
        c = make_container(spawner)
        await c.start()

        spawner.gate = asyncio.Event()
        spawner.procs[0].exit(1)
        await wait_for(lambda: spawner.requested == 2)
        with pytest.raises(ContainerError, match="already starting"):
            await c.start()

        spawner.gate.set()
        await wait_for(lambda: c.is_running)
        assert len(spawner.procs) == 2
        await c.destroy()

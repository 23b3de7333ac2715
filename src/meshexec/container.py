"""Container lifecycle: artifact download, supervised process, stop/restart/destroy.

A Container owns one deployment of one scheduler-assigned id. ``start()``
downloads the artifact and spawns the process runtime; an exit watcher task
respawns the process when it dies while still expected to run.

Intentional stops clear the respawn flag *before* signalling, so the watcher
sees the exit as expected. Soft stops wait for the process to exit on its
own (the scheduler asks it to, over its own control channel) and escalate to
SIGTERM when the grace period runs out.

A start or a crash respawn is a single in-flight transition. ``stop()``
arriving during one marks it halted and waits for it to settle: a halted
download never spawns, and a process spawned after the halt is registered
without respawn and then stopped like any other.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import aiohttp
from yarl import URL

from meshexec.artifacts import fetch_artifact
from meshexec.config import get_settings
from meshexec.errors import ContainerError, DownloadError, SpawnError
from meshexec.logger import logger
from meshexec.types import ContainerState, ExitReason, StartOptions, exit_reason
from meshexec.utils import create_background_task, mandatory, merge_env


class ProcessLike(Protocol):
    """The subset of asyncio.subprocess.Process a Container relies on."""

    pid: int

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...


SpawnFn = Callable[..., Awaitable[ProcessLike]]
ExitListener = Callable[[ExitReason, int], None]


def _http_scheme(control: URL) -> str:
    return "https" if control.scheme in ("https", "wss") else "http"


def artifact_url(control: URL, container_id: object, deployment_id: object) -> str:
    """Artifact location on the scheduler; the auth token is not embedded."""
    return str(
        URL.build(
            scheme=_http_scheme(control),
            host=mandatory(control.host, "control host"),
            port=control.explicit_port,
            path=f"/artifacts/executor/{container_id}/{deployment_id}",
        )
    )


def container_control_url(control: URL, token: str) -> str:
    """Scheduler URL the supervised process connects back on, under its own token."""
    return str(
        URL.build(
            scheme=_http_scheme(control),
            user=token,
            host=mandatory(control.host, "control host"),
            port=control.explicit_port,
        )
    )


@dataclass
class _Run:
    """One spawned process and the future its exit watcher resolves."""

    proc: ProcessLike
    exited: asyncio.Future[ExitReason]

    @property
    def pid(self) -> int:
        return self.proc.pid


class Container:
    def __init__(
        self,
        *,
        id: Any,
        control: str,
        deployment_id: Any,
        env: Mapping[str, Any],
        options: Mapping[str, Any] | StartOptions,
        token: str,
        containers_dir: Path | None = None,
        runner: list[str] | None = None,
        spawn: SpawnFn | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        s = get_settings()

        self.id = mandatory(id, "id")
        self.deployment_id = mandatory(deployment_id, "deploymentId")
        control_url = URL(mandatory(control, "control"))
        self._exec_token = control_url.user
        self._env = merge_env({}, mandatory(env, "env"))
        self._options = _coerce_options(mandatory(options, "options"))

        self.container_dir = (containers_dir or s.containers_dir) / str(self.id)
        self.download_url = artifact_url(control_url, self.id, self.deployment_id)
        self.control_url = container_control_url(control_url, mandatory(token, "token"))

        self._runner = list(runner or s.container.runner)
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._session = session
        self._chunk_size = s.container.download_chunk_size
        self._soft_stop_timeout = s.soft_stop_timeout

        self._state = ContainerState.CREATED
        self._respawn = False
        self._current: _Run | None = None
        self._inflight: asyncio.Future[None] | None = None
        self._halt = False
        self._listeners: list[ExitListener] = []
        self._log = logger.bind(container=self.id)
        self._log.debug(
            "Container created",
            deployment_id=self.deployment_id,
            download_url=self.download_url,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ContainerState:
        return self._state

    @property
    def env(self) -> dict[str, str]:
        return dict(self._env)

    @property
    def options(self) -> StartOptions:
        return self._options

    @property
    def port(self) -> int | None:
        value = self._env.get("PORT")
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    @property
    def is_running(self) -> bool:
        return self._current is not None and not self._current.exited.done()

    @property
    def pid(self) -> int | None:
        return self._current.pid if self.is_running else None

    def on_exit(self, listener: ExitListener) -> None:
        """Call ``listener(reason, pid)`` after every process exit."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Configuration (consumed by the next run only)
    # ------------------------------------------------------------------

    def set_env(self, env: Mapping[str, Any]) -> None:
        self._log.debug("set_env", env=sorted(env))
        self._env = merge_env({}, env)

    def set_start_options(self, options: Mapping[str, Any] | StartOptions) -> None:
        self._options = _coerce_options(options)
        self._log.debug("set_start_options", options=self._options)

    def runner_args(self) -> list[str]:
        args = [
            f"--cluster={self._options.cluster_size}",
            f"--control={self.control_url}",
        ]
        if self._options.trace:
            args.append("--trace")
        args.append(str(self.container_dir))
        return args

    def runner_env(self) -> dict[str, str]:
        inherited = {
            key: os.environ[key] for key in get_settings().container.inherit_env if key in os.environ
        }
        return merge_env(inherited, self._env)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Download the artifact, then spawn the process runtime.

        Raises DownloadError or SpawnError when a stage fails; the sequence
        stops at the first failure. Raises ContainerError when the container
        is destroyed, running, or already starting.
        """
        self._check_startable()
        with self._transition():
            await self._download()

            if self._halt:
                self._log.info("Stop requested during download, not spawning")
                self._state = ContainerState.STOPPED
                return
            await self._launch()

    async def restart(self, *, soft: bool = False, timeout: float | None = None) -> None:
        """Stop (soft or hard), then start afresh from a new download."""
        await self.stop(soft=soft, timeout=timeout)
        await self.start()

    async def stop(self, *, soft: bool = False, timeout: float | None = None) -> ExitReason | None:
        """Stop the live process and return the observed exit reason.

        Returns None when there was nothing to stop, or when the process was
        already gone by the time it was signalled. A start or respawn in
        flight is halted and awaited first.
        """
        pending = self._inflight
        if pending is not None:
            self._halt = True
            self._respawn = False
            self._log.info("Stop requested during start, waiting for it to settle")
            await asyncio.shield(pending)

        run = self._current
        if run is None or run.exited.done():
            return None

        # Cleared before signalling so the watcher treats this exit as expected.
        self._respawn = False

        if not soft:
            self._state = ContainerState.STOPPING_HARD
            return await self._hard_stop(run)

        self._state = ContainerState.STOPPING_SOFT
        grace = self._soft_stop_timeout if timeout is None else timeout
        return await self._soft_stop(run, grace)

    async def destroy(self) -> ExitReason | None:
        """Hard-stop the process and mark the container unusable."""
        try:
            return await self.stop()
        finally:
            self._respawn = False
            self._state = ContainerState.DESTROYED
            self._log.info("Container destroyed")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_startable(self) -> None:
        if self._state is ContainerState.DESTROYED:
            raise ContainerError(f"container {self.id} is destroyed")
        if self._inflight is not None:
            raise ContainerError(f"container {self.id} is already starting")
        if self.is_running:
            raise ContainerError(f"container {self.id} is already running")

    @contextlib.contextmanager
    def _transition(self) -> Iterator[None]:
        """Mark a start or respawn as in flight until the block exits."""
        settled = asyncio.get_running_loop().create_future()
        self._inflight = settled
        self._halt = False
        try:
            yield
        finally:
            self._inflight = None
            settled.set_result(None)

    async def _download(self) -> None:
        self._state = ContainerState.DOWNLOADING
        self._log.debug("Downloading artifact", url=self.download_url, dest=str(self.container_dir))
        try:
            members = await fetch_artifact(
                self.download_url,
                self._exec_token,
                self.container_dir,
                session=self._session,
                chunk_size=self._chunk_size,
            )
        except DownloadError as exc:
            self._log.error("Container download failed", err=str(exc), status=exc.status)
            if self._state is ContainerState.DOWNLOADING:
                self._state = ContainerState.STOPPED
            raise
        self._log.info("Artifact unpacked", members=members, dest=str(self.container_dir))

    async def _launch(self) -> None:
        argv = [*self._runner, *self.runner_args()]
        if self._state is not ContainerState.RESTARTING:
            self._state = ContainerState.STARTING
        self._log.debug("Spawning runner", argv=argv)

        try:
            proc = await self._spawn(*argv, env=self.runner_env())
        except OSError as exc:
            self._state = ContainerState.STOPPED
            raise SpawnError(f"spawn failed: {exc}") from exc

        run = _Run(proc=proc, exited=asyncio.get_running_loop().create_future())
        self._current = run
        # When halted, the waiting stop() signals this run; the watcher reaps it.
        self._respawn = not self._halt
        if self._respawn:
            self._state = ContainerState.RUNNING
        create_background_task(self._watch(run), name=f"container-{self.id}-{proc.pid}")
        if self._halt:
            self._log.warning("Stop requested while spawning", pid=proc.pid)
        else:
            self._log.info("Container process started", pid=proc.pid)

    async def _watch(self, run: _Run) -> None:
        """Wait for *run* to exit; report it and respawn if the exit was a crash."""
        reason = exit_reason(await run.proc.wait())
        if not run.exited.done():
            run.exited.set_result(reason)

        crashed = self._respawn and self._current is run
        self._log.debug("Runner exited", pid=run.pid, reason=reason, expected=not crashed)
        self._emit_exit(reason, run.pid)

        if not crashed:
            if self._current is run and self._state is not ContainerState.DESTROYED:
                self._state = ContainerState.STOPPED
            return

        self._state = ContainerState.CRASHED
        self._log.error("Restarting container: unexpected exit", pid=run.pid, reason=reason)
        self._state = ContainerState.RESTARTING
        with self._transition():
            try:
                await self._launch()
            except SpawnError:
                self._log.exception("Respawn failed, container left stopped")

    def _emit_exit(self, reason: ExitReason, pid: int) -> None:
        for listener in list(self._listeners):
            try:
                listener(reason, pid)
            except Exception:
                self._log.exception("Exit listener failed", pid=pid)

    async def _hard_stop(self, run: _Run) -> ExitReason | None:
        try:
            run.proc.terminate()
        except ProcessLookupError:
            self._log.debug("Process already gone", pid=run.pid)
            return None
        reason = await asyncio.shield(run.exited)
        self._log.info("Container stopped", pid=run.pid, reason=reason)
        return reason

    async def _soft_stop(self, run: _Run, grace: float) -> ExitReason | None:
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[ExitReason | None] = loop.create_future()

        def settle(reason: ExitReason | None = None, error: BaseException | None = None) -> None:
            # Natural exit and a failed escalation can both fire; answer once.
            if outcome.done():
                return
            if error is not None:
                outcome.set_exception(error)
            else:
                outcome.set_result(reason)

        def on_exited(fut: asyncio.Future[ExitReason]) -> None:
            settle(reason=fut.result())

        def escalate() -> None:
            self._log.info("Soft-stop timed out, hard-stopping", pid=run.pid, grace=grace)
            self._state = ContainerState.STOPPING_HARD
            try:
                run.proc.terminate()
            except ProcessLookupError:
                pass  # already exiting; on_exited answers the caller
            except OSError as exc:
                self._log.error("Unable to kill container", pid=run.pid, err=str(exc))
                settle(error=exc)

        run.exited.add_done_callback(on_exited)
        timer = loop.call_later(grace, escalate)
        try:
            reason = await outcome
        finally:
            timer.cancel()
            run.exited.remove_done_callback(on_exited)
        self._log.info("Container stopped", pid=run.pid, reason=reason, soft=True)
        return reason


def _coerce_options(options: Mapping[str, Any] | StartOptions) -> StartOptions:
    if isinstance(options, StartOptions):
        return options
    return StartOptions.from_dict(dict(options))

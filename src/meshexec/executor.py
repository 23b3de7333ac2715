"""Executor: owns the control-channel session, the container registry and dispatch.

Inbound requests are translated into Container operations by
``meshexec.commands``; every container exit is forwarded to the scheduler
as a ``container-exit`` notification.
"""

from __future__ import annotations

import asyncio
import os
import socket
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from functools import partial
from typing import Any

from yarl import URL

from meshexec.channel import Channel, ChannelFactory, WebSocketChannel
from meshexec.commands import dispatch
from meshexec.config import get_settings
from meshexec.container import Container
from meshexec.errors import ChannelError, MeshExecError
from meshexec.logger import logger
from meshexec.registry import ContainerRegistry
from meshexec.types import ExitReason
from meshexec.utils import create_background_task, mandatory, unused_port

CONTROL_PATH = "/executor-control"

# Gives the "shutting down" reply time to leave before the channel closes.
_SHUTDOWN_REPLY_GRACE = 0.1

ContainerFactory = Callable[..., Container]


def control_channel_url(control: str) -> str:
    """Normalise a scheduler URL to the executor WebSocket endpoint.

    ``http://token@host:66`` becomes ``ws://token@host:66/executor-control``.
    """
    url = URL(control)
    return str(
        URL.build(
            scheme="wss" if url.scheme in ("https", "wss") else "ws",
            user=url.user,
            password=url.password,
            host=url.host or "",
            port=url.explicit_port,
            path=CONTROL_PATH,
        )
    )


class Executor:
    def __init__(
        self,
        *,
        control: str | None = None,
        driver: str | None = None,
        base_port: int | None = None,
        svc_addr: str | None = None,
        channel_factory: ChannelFactory | None = None,
        container_factory: ContainerFactory | None = None,
    ) -> None:
        s = get_settings().executor
        self.control = control_channel_url(control or s.control)
        self.driver = driver or s.driver
        self.base_port = s.base_port if base_port is None else base_port
        self.svc_addr = svc_addr or s.svc_addr
        self.registry = ContainerRegistry()

        self._channel_factory = channel_factory or WebSocketChannel
        self._container_factory = container_factory or Container
        self._channel: Channel | None = None
        self._shutting_down = False
        self._closed = asyncio.Event()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def channel(self) -> Channel | None:
        return self._channel

    async def start(self) -> None:
        """Open the control channel; the scheduler is greeted on every connect."""
        logger.info("Executor starting", control=self.control, driver=self.driver)
        self._channel = self._channel_factory(
            self.control,
            self.on_request,
            on_connect=self._on_connect,
        )
        await self._channel.start()

    async def stop(self) -> None:
        """Destroy every container, then close the control channel."""
        logger.info("Stopping executor", containers=len(self.registry))
        containers = self.registry.clear()
        results = await asyncio.gather(*(c.destroy() for c in containers), return_exceptions=True)
        for container, result in zip(containers, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Failed to stop container", id=container.id, err=str(result))

        if self._channel is not None:
            channel, self._channel = self._channel, None
            await channel.close()
        self._closed.set()
        logger.info("Executor stopped")

    def schedule_shutdown(self) -> None:
        """Stop in the background; ``wait_closed`` returns once it is done."""
        if self._shutting_down:
            return
        self._shutting_down = True
        create_background_task(self._shutdown(), name="executor-shutdown")

    async def _shutdown(self) -> None:
        await asyncio.sleep(_SHUTDOWN_REPLY_GRACE)
        await self.stop()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def on_request(self, req: dict[str, Any]) -> dict[str, Any]:
        return await dispatch(self, req)

    async def _on_connect(self, channel: Channel) -> None:
        info: dict[str, Any] = {
            "cmd": "starting",
            "hostname": socket.gethostname(),
            "cpus": os.cpu_count() or 1,
            "driver": self.driver,
        }
        address = self.svc_addr or channel.local_address
        if address:
            info["address"] = address
        try:
            await channel.notify(info)
        except ChannelError as exc:
            logger.warning("Failed to announce executor", err=str(exc))
            return
        logger.info("Executor announced", hostname=info["hostname"], address=address)

    async def _notify(self, data: dict[str, Any]) -> None:
        channel = self._channel
        if channel is None or not channel.connected:
            logger.debug("Control channel down, notification dropped", cmd=data.get("cmd"))
            return
        try:
            await channel.notify(data)
        except ChannelError as exc:
            logger.warning("Notification dropped", cmd=data.get("cmd"), err=str(exc))

    # ------------------------------------------------------------------
    # Container operations
    # ------------------------------------------------------------------

    def unused_port(self, exclude: Any = None) -> int:
        return unused_port(self.registry.ports(exclude=exclude), self.base_port)

    @asynccontextmanager
    async def locked_container(self, container_id: Any) -> AsyncIterator[Container]:
        """Hold the per-id lock and yield the container (NotFoundError if absent)."""
        async with self.registry.locked(container_id):
            yield self.registry.require(container_id)

    async def deploy_container(self, req: dict[str, Any]) -> Container:
        """Ensure deployment ``req["deploymentId"]`` runs for ``req["id"]``.

        The new container is registered in place of any previous one, the
        previous one is destroyed, and the new one starts in the background.
        """
        container_id = mandatory(req.get("id"), "id")
        async with self.registry.locked(container_id):
            env = dict(mandatory(req.get("env"), "env"))
            if env.get("PORT") is None:
                env["PORT"] = self.unused_port(exclude=container_id)

            container = self._container_factory(
                id=container_id,
                control=self.control,
                deployment_id=mandatory(req.get("deploymentId"), "deploymentId"),
                env=env,
                options=req.get("options") or {},
                token=mandatory(req.get("token"), "token"),
            )
            container.on_exit(partial(self._on_container_exit, container_id))

            old = self.registry.replace(container_id, container)
            if old is not None:
                logger.info(
                    "Replacing container",
                    id=container_id,
                    old_deployment=old.deployment_id,
                    deployment=container.deployment_id,
                )
                try:
                    await old.destroy()
                except (MeshExecError, OSError) as exc:
                    logger.error("Failed to stop replaced container", id=container_id, err=str(exc))

        create_background_task(self._start_container(container), name=f"start-{container_id}")
        return container

    async def destroy_container(self, container_id: Any) -> None:
        container = self.registry.require(container_id)
        try:
            await container.destroy()
        finally:
            self.registry.remove(container_id, container)

    async def _start_container(self, container: Container) -> None:
        try:
            await container.start()
        except MeshExecError as exc:
            logger.error("Start container failed", id=container.id, err=str(exc))

    def _on_container_exit(self, container_id: Any, reason: ExitReason, pid: int) -> None:
        create_background_task(
            self._notify(
                {"cmd": "container-exit", "id": container_id, "reason": reason, "pid": pid}
            ),
            name=f"exit-{container_id}-{pid}",
        )

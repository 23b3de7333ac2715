"""Control channel: persistent request/reply + notification link to the scheduler.

The executor only depends on the ``Channel`` protocol. ``WebSocketChannel``
implements it over an aiohttp client WebSocket with JSON text frames::

    {"type": "request", "id": 7, "data": {...}}       either direction
    {"type": "reply", "id": 7, "data": {...}}         answer to request 7
    {"type": "notification", "data": {...}}           one-way

The connection is re-established with exponential backoff; every
(re)connect runs the ``on_connect`` hook.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import aiohttp

from meshexec.config import get_settings
from meshexec.errors import ChannelError
from meshexec.logger import logger
from meshexec.utils import create_background_task

RequestHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]
ConnectHandler = Callable[["Channel"], Awaitable[None]]


class Channel(Protocol):
    @property
    def connected(self) -> bool: ...

    @property
    def local_address(self) -> str | None: ...

    async def start(self) -> None: ...

    async def request(self, data: dict[str, Any]) -> dict[str, Any]: ...

    async def notify(self, data: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


ChannelFactory = Callable[..., Channel]


class WebSocketChannel:
    """Reconnecting WebSocket client speaking the JSON frame protocol above."""

    def __init__(
        self,
        url: str,
        on_request: RequestHandler,
        *,
        on_connect: ConnectHandler | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        s = get_settings().channel
        self._url = url
        self._on_request = on_request
        self._on_connect = on_connect
        self._session = session
        self._owns_session = session is None
        self._reconnect_min = s.reconnect_min_seconds
        self._reconnect_max = s.reconnect_max_seconds
        self._request_timeout = s.request_timeout_seconds
        self._heartbeat = s.heartbeat_seconds

        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._ids = itertools.count(1)
        self._task: asyncio.Task[None] | None = None
        self._closing = False
        self._connected = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def local_address(self) -> str | None:
        if self._ws is None:
            return None
        sockname = self._ws.get_extra_info("sockname")
        return sockname[0] if sockname else None

    async def wait_connected(self) -> None:
        await self._connected.wait()

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._task = create_background_task(self._run(), name="control-channel")

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Control channel closed", url=self._url)

    async def request(self, data: dict[str, Any]) -> dict[str, Any]:
        request_id = next(self._ids)
        fut: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        try:
            await self._send({"type": "request", "id": request_id, "data": data})
            return await asyncio.wait_for(fut, self._request_timeout)
        except TimeoutError as exc:
            raise ChannelError(f"request {data.get('cmd')!r} timed out") from exc
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, data: dict[str, Any]) -> None:
        await self._send({"type": "notification", "data": data})

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        assert self._session is not None
        delay = self._reconnect_min
        while not self._closing:
            try:
                async with self._session.ws_connect(self._url, heartbeat=self._heartbeat) as ws:
                    self._ws = ws
                    self._connected.set()
                    delay = self._reconnect_min
                    logger.info("Control channel connected", url=self._url)
                    if self._on_connect is not None:
                        create_background_task(self._on_connect(self), name="channel-on-connect")
                    await self._read_loop(ws)
            except (aiohttp.ClientError, OSError, TimeoutError) as exc:
                logger.warning("Control channel error", url=self._url, err=str(exc))
            finally:
                self._ws = None
                self._connected.clear()
                self._fail_pending(ChannelError("control channel disconnected"))

            if self._closing:
                break
            logger.info("Reconnecting control channel", delay=delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._reconnect_max)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type is aiohttp.WSMsgType.TEXT:
                self._on_frame(msg.data)
            elif msg.type is aiohttp.WSMsgType.ERROR:
                logger.warning("Control channel read error", err=str(ws.exception()))
                break
        logger.info("Control channel disconnected", code=ws.close_code)

    def _on_frame(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Malformed control frame", frame=raw[:200])
            return
        if not isinstance(frame, dict):
            logger.warning("Malformed control frame", frame=raw[:200])
            return

        match frame.get("type"):
            case "request":
                create_background_task(
                    self._answer(frame.get("id"), frame.get("data") or {}),
                    name=f"control-request-{frame.get('id')}",
                )
            case "reply":
                fut = self._pending.pop(frame.get("id"), None)
                if fut is not None and not fut.done():
                    fut.set_result(frame.get("data") or {})
            case "notification":
                logger.debug("Ignoring notification from scheduler", data=frame.get("data"))
            case other:
                logger.warning("Unknown control frame type", type=other)

    async def _answer(self, request_id: Any, data: dict[str, Any]) -> None:
        reply = await self._on_request(data)
        try:
            await self._send({"type": "reply", "id": request_id, "data": reply})
        except ChannelError as exc:
            logger.warning("Reply dropped", cmd=data.get("cmd"), err=str(exc))

    async def _send(self, frame: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise ChannelError("control channel not connected")
        try:
            await ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionError) as exc:
            raise ChannelError(f"send failed: {exc}") from exc

    def _fail_pending(self, exc: ChannelError) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(exc)
        self._pending.clear()

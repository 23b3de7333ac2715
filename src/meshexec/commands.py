"""Control-channel command handlers and the dispatch boundary.

Each handler is registered under one or more command names and returns the
reply payload. ``dispatch`` guarantees exactly one reply per request: lookup
failures, unknown ids and unexpected exceptions all become reply fields.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from meshexec import __version__
from meshexec.errors import MeshExecError, NotFoundError
from meshexec.logger import logger

if TYPE_CHECKING:
    from meshexec.executor import Executor

Handler = Callable[["Executor", dict[str, Any]], Awaitable[dict[str, Any]]]

# cmd -> async handler(executor, request)
HANDLERS: dict[str, Handler] = {}

CONTAINER_TYPE = "meshexec"

# Lifecycle failures a handler reports in its reply rather than raising.
_LIFECYCLE_ERRORS = (MeshExecError, OSError)


def ok() -> dict[str, Any]:
    return {"message": "ok"}


def register(*names: str) -> Callable[[Handler], Handler]:
    """Register the decorated coroutine as the handler for each of *names*."""

    def decorator(handler: Handler) -> Handler:
        for name in names:
            HANDLERS[name] = handler
        return handler

    return decorator


async def dispatch(executor: Executor, req: dict[str, Any]) -> dict[str, Any]:
    """Run the handler for ``req["cmd"]`` and return its reply."""
    cmd = req.get("cmd")
    handler = HANDLERS.get(cmd) if isinstance(cmd, str) else None
    if handler is None:
        logger.warning("Unsupported command", cmd=cmd)
        return {"error": f"unsupported command {json.dumps(cmd)}"}

    logger.debug("Dispatching command", cmd=cmd, id=req.get("id"))
    try:
        reply = await handler(executor, req)
    except NotFoundError as exc:
        logger.info("Command for unknown container", cmd=cmd, id=exc.container_id)
        return {"error": str(exc)}
    except Exception as exc:
        logger.exception("Command failed", cmd=cmd, id=req.get("id"))
        return {"error": str(exc)}
    logger.debug("Command reply", cmd=cmd, reply=reply)
    return reply


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


@register("shutdown")
async def _shutdown(executor: Executor, req: dict[str, Any]) -> dict[str, Any]:
    executor.schedule_shutdown()
    return {"message": "shutting down"}


@register("container-deploy")
async def _deploy(executor: Executor, req: dict[str, Any]) -> dict[str, Any]:
    # Replies once the container is registered; download and spawn continue
    # in the background and failures there are only logged.
    await executor.deploy_container(req)
    return {
        "driverMeta": {},
        "container": {"type": CONTAINER_TYPE, "version": __version__},
    }


@register("container-set-options")
async def _set_options(executor: Executor, req: dict[str, Any]) -> dict[str, Any]:
    async with executor.locked_container(req.get("id")) as container:
        container.set_start_options(req.get("options") or {})
    return ok()


@register("container-set-env")
async def _set_env(executor: Executor, req: dict[str, Any]) -> dict[str, Any]:
    container_id = req.get("id")
    async with executor.locked_container(container_id) as container:
        env = dict(req.get("env") or {})
        if env.get("PORT") is None:
            env["PORT"] = container.port or executor.unused_port(exclude=container_id)
        container.set_env(env)
    return ok()


@register("container-start")
async def _start(executor: Executor, req: dict[str, Any]) -> dict[str, Any]:
    async with executor.locked_container(req.get("id")) as container:
        try:
            await container.start()
        except _LIFECYCLE_ERRORS as exc:
            return {"error": str(exc)}
    return ok()


@register("container-stop", "container-soft-stop")
async def _stop(executor: Executor, req: dict[str, Any]) -> dict[str, Any]:
    soft = req.get("cmd") == "container-soft-stop"
    async with executor.locked_container(req.get("id")) as container:
        try:
            await container.stop(soft=soft)
        except _LIFECYCLE_ERRORS as exc:
            return {"message": str(exc)}
    return ok()


@register("container-restart", "container-soft-restart")
async def _restart(executor: Executor, req: dict[str, Any]) -> dict[str, Any]:
    soft = req.get("cmd") == "container-soft-restart"
    async with executor.locked_container(req.get("id")) as container:
        try:
            await container.restart(soft=soft)
        except _LIFECYCLE_ERRORS as exc:
            return {"message": str(exc)}
    return ok()


@register("container-destroy")
async def _destroy(executor: Executor, req: dict[str, Any]) -> dict[str, Any]:
    container_id = req.get("id")
    async with executor.locked_container(container_id):
        try:
            await executor.destroy_container(container_id)
        except _LIFECYCLE_ERRORS as exc:
            return {"message": str(exc)}
    return ok()

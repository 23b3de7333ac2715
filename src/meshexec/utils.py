"""Shared utility functions.

Small helpers used across the executor and its containers: required-field
checks, env merging, port allocation, URL defaulting and fire-and-forget
task creation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine, Iterable, Mapping
from typing import Any, TypeVar

from yarl import URL

from meshexec.logger import logger

T = TypeVar("T")


def mandatory(value: T | None, name: str) -> T:
    """Return *value*, or raise ValueError if it is missing.

    Empty mappings are accepted (an empty env is valid); ``None`` and the
    empty string are not.
    """
    if value is None or value == "":
        raise ValueError(f"missing required field {name!r}")
    return value


def merge_env(base: Mapping[str, str], extra: Mapping[str, Any]) -> dict[str, str]:
    """Overlay *extra* on *base* without modifying either; values become strings."""
    merged = {k: str(v) for k, v in base.items()}
    merged.update({k: str(v) for k, v in extra.items() if v is not None})
    return merged


def unused_port(assigned: Iterable[int | None], base: int) -> int:
    """Return the lowest port above *base* not present in *assigned*."""
    used = {p for p in assigned if p is not None}
    port = base + 1
    while port in used:
        port += 1
    return port


def url_defaults(url: str, *, host: str, port: int) -> str:
    """Fill in a missing host and/or port, keeping everything else from *url*.

    ``"http:"`` becomes ``"http://127.0.0.1:8701"`` with the usual defaults.
    """
    parsed = URL(url)
    return str(
        URL.build(
            scheme=parsed.scheme or "http",
            user=parsed.user,
            password=parsed.password,
            host=parsed.host or host,
            port=parsed.explicit_port or port,
            path=parsed.path if parsed.raw_path not in ("", "/") else "",
            query_string=parsed.query_string,
        )
    )


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    Used for fire-and-forget work (container starts after a deploy reply,
    exit notifications, shutdown) where nobody awaits the result.
    """
    task = asyncio.create_task(coro, name=name)
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)
    task.add_done_callback(_log_task_exception)
    return task


# Strong references so pending tasks are not garbage collected mid-flight.
_BACKGROUND_TASKS: set[asyncio.Task[Any]] = set()


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks; logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here because we're in a done-callback,
        # not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )

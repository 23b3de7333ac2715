"""Entry point for `python -m meshexec` / `meshexec`.

Usage:
    meshexec [--base DIR] [--driver NAME] [--control URL] [--svc-addr ADDR]
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path

from meshexec import __version__

_DEFAULT_CONTROL_HOST = "127.0.0.1"
_DEFAULT_CONTROL_PORT = 8701


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="meshexec",
        description="Run and supervise containers on behalf of a central scheduler",
    )
    parser.add_argument("-v", "--version", action="version", version=__version__)
    parser.add_argument(
        "-b",
        "--base",
        help="Base directory to work in (default: executor.base_dir from config)",
    )
    parser.add_argument("-d", "--driver", help="Execution driver reported to the scheduler")
    parser.add_argument(
        "-C",
        "--control",
        help=(
            "Scheduler URL, with the executor token as user-info "
            f"(default host {_DEFAULT_CONTROL_HOST}, port {_DEFAULT_CONTROL_PORT})"
        ),
    )
    parser.add_argument("--svc-addr", help="Address advertised to the scheduler")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    from meshexec.config import get_settings
    from meshexec.executor import Executor
    from meshexec.logger import logger
    from meshexec.utils import url_defaults

    s = get_settings()
    control = url_defaults(
        args.control or s.executor.control,
        host=_DEFAULT_CONTROL_HOST,
        port=_DEFAULT_CONTROL_PORT,
    )
    executor = Executor(control=control, driver=args.driver, svc_addr=args.svc_addr)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, executor.schedule_shutdown)

    await executor.start()
    await executor.wait_closed()
    logger.info("Exiting")


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    from meshexec.config import get_settings, reset_settings

    base = Path(args.base or get_settings().executor.base_dir).resolve()
    # Run from the base directory so containers/ and config.toml resolve inside it.
    base.mkdir(parents=True, exist_ok=True)
    os.chdir(base)
    reset_settings()

    from meshexec.logger import configure_level

    configure_level(get_settings().logging.level)
    asyncio.run(_run(args))
    sys.exit(0)


if __name__ == "__main__":
    main()

from __future__ import annotations

import asyncio
import logging
import sys
from types import TracebackType
from typing import Any

from pairlink.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

logger = logging.getLogger("pairlink.crash")


def configure_logging() -> None:
    # Apply the configured level once; repeated app factories must not stack handlers.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)


def _excepthook(
    exc_type: type[BaseException],
    exc: BaseException,
    tb: TracebackType | None,
) -> None:
    # Uncaught exceptions outside every handler are fatal for the process.
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc, tb)
        return
    logger.critical("uncaught_exception", exc_info=(exc_type, exc, tb))
    logging.shutdown()
    sys.exit(1)


def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    # Orphaned task failures are logged; the loop keeps serving other tenants.
    exc = context.get("exception")
    message = context.get("message", "unhandled_task_exception")
    if exc is not None:
        logger.error("unhandled_task_exception message=%s", message, exc_info=exc)
    else:
        logger.error("unhandled_task_exception message=%s", message)


def install_crash_handlers(loop: asyncio.AbstractEventLoop | None = None) -> None:
    sys.excepthook = _excepthook
    if loop is None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
    loop.set_exception_handler(_loop_exception_handler)

"""Logging setup for harness runs.

Embedded services log from their own accept and connection threads, so the
format carries the thread name (``broker-51234``, ``coordination-51233``)
next to the module that emitted the record.
"""

from __future__ import annotations

import sys
from collections.abc import Iterable
from typing import Any, TextIO

from loguru import logger

from .config import HarnessSettings

PACKAGE_PREFIX = "clusterharness."

DEFAULT_LOG_FORMAT = (
    "{time:HH:mm:ss.SSS} | {level: <8} | {thread.name: <18} | "
    "{name}:{function}:{line} - {message}"
)


def _scope_matches(record_name: str, scope: str) -> bool:
    if record_name.startswith(scope):
        return True
    return not scope.startswith(PACKAGE_PREFIX) and record_name.startswith(
        f"{PACKAGE_PREFIX}{scope}"
    )


def configure_logging(
    level: str,
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
    sink: TextIO | None = None,
) -> tuple[int, ...]:
    """Replace every loguru handler with one sink at ``level``.

    ``debug_scopes`` lets DEBUG records through for selected modules only,
    either fully qualified (``"clusterharness.coordination.server"``) or
    relative to the package (``"broker"``). Returns the handler ids.
    """
    logger.remove()
    target = sink if sink is not None else sys.stderr

    handler_ids = [
        logger.add(target, level=level, format=DEFAULT_LOG_FORMAT, colorize=colorize)
    ]

    scopes = tuple(scope.strip() for scope in debug_scopes if scope.strip())
    if scopes and level.upper() != "DEBUG":

        def _debug_filter(record: dict[str, Any]) -> bool:
            return record["level"].name == "DEBUG" and any(
                _scope_matches(record["name"] or "", scope) for scope in scopes
            )

        handler_ids.append(
            logger.add(
                target,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=_debug_filter,
            )
        )

    return tuple(handler_ids)


def configure_logging_from_settings(
    settings: HarnessSettings, *, sink: TextIO | None = None
) -> tuple[int, ...]:
    """``configure_logging`` driven by ``log_level`` and ``log_debug_scopes``."""
    return configure_logging(
        settings.log_level, debug_scopes=settings.log_debug_scopes, sink=sink
    )

"""Injectable time source.

Services take a ``Clock`` instead of calling ``time`` directly so tests can
substitute their own.
"""

import time
from dataclasses import dataclass
from typing import Protocol

from .type_aliases import DurationSeconds, Timestamp


class Clock(Protocol):
    """Protocol for anything that can tell time and wait."""

    def time(self) -> Timestamp: ...

    def monotonic(self) -> float: ...

    def sleep(self, seconds: DurationSeconds) -> None: ...


@dataclass(frozen=True, slots=True)
class SystemClock:
    """Wall-clock backed by the ``time`` module."""

    def time(self) -> Timestamp:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: DurationSeconds) -> None:
        time.sleep(seconds)

"""Error taxonomy for cluster lifecycle management.

Setup errors (``ResourceExhaustedError``, ``ConfigError``, ``StartupError``)
are fatal to the test using the harness. ``TeardownWarning`` is recorded and
logged but never raised.
"""

from collections.abc import Sequence
from typing import Any


class HarnessError(Exception):
    """Base exception for clusterharness errors."""

    pass


class ResourceExhaustedError(HarnessError):
    """Raised when not enough free local ports can be found."""

    pass


class ConfigError(HarnessError):
    """Raised for invalid cluster configuration (no brokers, short port supply)."""

    pass


class StartupError(HarnessError):
    """Raised when a service fails to bind or initialize."""

    pass


class BrokerGroupStartupError(StartupError):
    """Raised when one broker of a group fails to start.

    ``started`` holds the brokers that did come up before the failure so the
    caller can stop them.
    """

    def __init__(self, message: str, started: Sequence[Any] = ()) -> None:
        super().__init__(message)
        self.started = tuple(started)


class ServiceError(HarnessError):
    """An operation on an embedded service failed.

    Raised by request handlers inside a service and re-raised on the client
    side with the same ``code``.
    """

    def __init__(self, message: str, code: str = "error") -> None:
        super().__init__(message)
        self.code = code


class TeardownWarning(Warning):
    """Non-fatal cleanup failure, e.g. a log directory that could not be removed."""

    def __init__(self, component: str, message: str) -> None:
        super().__init__(f"{component}: {message}")
        self.component = component
        self.message = message

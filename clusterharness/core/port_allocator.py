"""
Port allocation for ephemeral local clusters.

Every service in a cluster needs a stable address before any of them starts,
so ports are allocated in one batch up front. Candidate ports come from the
operating system (binding to port 0) and are held open together while probing,
which guarantees the batch is distinct. Ports handed out by the process-wide
allocator are remembered until released so two harnesses in the same process
never receive the same port.
"""

from __future__ import annotations

import socket
import threading
from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field

from loguru import logger

from .errors import ConfigError, ResourceExhaustedError
from .type_aliases import HostAddress, PortNumber

DEFAULT_RETRY_BUDGET = 10


class PortAllocator:
    """Thread-safe allocator of free local TCP ports."""

    def __init__(
        self, host: HostAddress = "127.0.0.1", retry_budget: int = DEFAULT_RETRY_BUDGET
    ) -> None:
        if retry_budget <= 0:
            raise ValueError("retry_budget must be positive")
        self.host = host
        self.retry_budget = retry_budget

        self._lock = threading.Lock()
        self._allocated_ports: set[PortNumber] = set()

    def is_port_available(self, port: PortNumber) -> bool:
        """Check if a port is available for binding."""
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((self.host, port))
                return True
        except OSError:
            return False

    def _probe(self, count: int) -> list[PortNumber]:
        """Bind ``count`` sockets at once and return the ports the OS chose."""
        with ExitStack() as stack:
            ports: list[PortNumber] = []
            for _ in range(count):
                sock = stack.enter_context(
                    socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                )
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((self.host, 0))
                ports.append(sock.getsockname()[1])
            return ports

    def allocate(self, count: int) -> list[PortNumber]:
        """
        Allocate ``count`` distinct free ports.

        Args:
            count: Number of ports to allocate

        Returns:
            List of allocated port numbers, in allocation order

        Raises:
            ResourceExhaustedError: If ``count`` distinct free ports could not
                be found within the retry budget
        """
        if count <= 0:
            return []

        with self._lock:
            last_error: OSError | None = None
            for attempt in range(1, self.retry_budget + 1):
                try:
                    candidates = self._probe(count)
                except OSError as e:
                    last_error = e
                    logger.debug(
                        "Port probe attempt {}/{} failed: {}",
                        attempt,
                        self.retry_budget,
                        e,
                    )
                    continue

                if self._allocated_ports.isdisjoint(candidates):
                    self._allocated_ports.update(candidates)
                    logger.debug("Allocated ports {}", candidates)
                    return candidates

                logger.debug(
                    "Port probe attempt {}/{} returned ports already in use: {}",
                    attempt,
                    self.retry_budget,
                    sorted(self._allocated_ports.intersection(candidates)),
                )

            message = (
                f"Could not allocate {count} free ports on {self.host} "
                f"after {self.retry_budget} attempts"
            )
            if last_error is not None:
                message += f": {last_error}"
            raise ResourceExhaustedError(message)

    def release(self, ports: Sequence[PortNumber]) -> None:
        """Forget previously allocated ports."""
        with self._lock:
            self._allocated_ports.difference_update(ports)

    @property
    def allocated_ports(self) -> frozenset[PortNumber]:
        with self._lock:
            return frozenset(self._allocated_ports)

    @contextmanager
    def port_range_context(self, count: int) -> Iterator[list[PortNumber]]:
        """Context manager for multiple port allocation."""
        ports = self.allocate(count)
        try:
            yield ports
        finally:
            self.release(ports)


@dataclass(slots=True)
class PortPool:
    """An owned, consumed-once sequence of ports.

    Ports are handed out strictly in allocation order and never returned.
    """

    ports: tuple[PortNumber, ...]
    _next: int = field(default=0, init=False, repr=False)

    def take(self) -> PortNumber:
        """Hand out the next port."""
        if self._next >= len(self.ports):
            raise ConfigError(
                f"Port pool exhausted: all {len(self.ports)} ports already assigned"
            )
        port = self.ports[self._next]
        self._next += 1
        return port

    def take_many(self, count: int) -> list[PortNumber]:
        """Hand out the next ``count`` ports."""
        if count < 0:
            raise ConfigError(f"Cannot take a negative number of ports: {count}")
        if count > self.remaining:
            raise ConfigError(
                f"Port pool has {self.remaining} ports left, {count} requested"
            )
        return [self.take() for _ in range(count)]

    @property
    def remaining(self) -> int:
        return len(self.ports) - self._next


# Global port allocator instance
_port_allocator: PortAllocator | None = None


def get_port_allocator() -> PortAllocator:
    """Get the global port allocator instance."""
    global _port_allocator
    if _port_allocator is None:
        _port_allocator = PortAllocator()
    return _port_allocator


def allocate_ports(count: int) -> list[PortNumber]:
    """Allocate ports using the global allocator."""
    return get_port_allocator().allocate(count)


def release_ports(ports: Sequence[PortNumber]) -> None:
    """Release ports using the global allocator."""
    get_port_allocator().release(ports)


@contextmanager
def port_range_context(count: int) -> Iterator[list[PortNumber]]:
    """Context manager for multiple port allocation using the global allocator."""
    with get_port_allocator().port_range_context(count) as ports:
        yield ports

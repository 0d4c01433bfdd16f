"""Protocols shared by every managed cluster process."""

from typing import Protocol, runtime_checkable

from .type_aliases import ConnectString, NodePath


@runtime_checkable
class ManagedProcess(Protocol):
    """Anything the harness can start and stop."""

    @property
    def name(self) -> str: ...

    @property
    def is_running(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


class CoordinationHandle(ManagedProcess, Protocol):
    """A running coordination service."""

    @property
    def connect_string(self) -> ConnectString: ...


class CoordinationSession(Protocol):
    """The part of a coordination client the harness relies on."""

    def connect(self) -> object: ...

    def close(self) -> None: ...

    def get_children(self, path: NodePath) -> list[str]: ...

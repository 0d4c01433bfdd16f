from __future__ import annotations

from typing import Any

from loguru import logger

from clusterharness.core.clock import Clock, SystemClock
from clusterharness.core.connection import ServiceConnection
from clusterharness.core.errors import ServiceError, StartupError
from clusterharness.core.serialization import JsonSerializer, Serializer
from clusterharness.core.type_aliases import (
    ConnectString,
    DurationMilliseconds,
    NodeData,
    NodePath,
    SessionId,
)

DEFAULT_SESSION_TIMEOUT_MS = 6000
DEFAULT_CONNECTION_TIMEOUT_MS = 6000


class CoordinationClient:
    """A connected session with a coordination service.

    One websocket connection carries one session. ``close()`` ends the session,
    which removes every ephemeral node it created, and must run before the
    coordination service itself is stopped.
    """

    def __init__(
        self,
        connect_string: ConnectString,
        session_timeout_ms: DurationMilliseconds = DEFAULT_SESSION_TIMEOUT_MS,
        connection_timeout_ms: DurationMilliseconds = DEFAULT_CONNECTION_TIMEOUT_MS,
        *,
        serializer: Serializer | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.connect_string = connect_string
        self.session_timeout_ms = session_timeout_ms
        self.connection_timeout_ms = connection_timeout_ms
        self.session_id: SessionId | None = None
        self._connection = ServiceConnection(
            url=f"ws://{connect_string}",
            open_timeout=connection_timeout_ms / 1000,
            request_timeout=session_timeout_ms / 1000,
            serializer=serializer or JsonSerializer(),
            clock=clock or SystemClock(),
        )

    @property
    def is_connected(self) -> bool:
        return self.session_id is not None and self._connection.is_connected

    def connect(self) -> CoordinationClient:
        """Open the connection and establish a session.

        Raises:
            StartupError: If the service cannot be reached within the
                connection timeout or refuses the session.
        """
        if self.is_connected:
            return self
        try:
            self._connection.connect()
            reply = self._connection.request(
                "connect", session_timeout_ms=self.session_timeout_ms
            )
        except (ConnectionError, ServiceError) as e:
            self._connection.close()
            raise StartupError(
                f"Could not connect to coordination service at {self.connect_string}: {e}"
            ) from e
        self.session_id = reply["session_id"]
        logger.debug(
            "[coordination-client] Session {} established with {}",
            self.session_id,
            self.connect_string,
        )
        return self

    def close(self) -> None:
        """End the session and close the connection.

        Safe to call when never connected, already closed, or when the service
        has already gone away.
        """
        if self.session_id is not None and self._connection.is_connected:
            try:
                self._connection.request("close_session")
            except (ConnectionError, ServiceError) as e:
                logger.debug(
                    "[coordination-client] Could not close session {} cleanly: {}",
                    self.session_id,
                    e,
                )
        self.session_id = None
        self._connection.close()

    def create(
        self,
        path: NodePath,
        data: NodeData = None,
        *,
        ephemeral: bool = False,
        make_parents: bool = False,
    ) -> NodePath:
        return self._connection.request(
            "create",
            path=path,
            data=data,
            ephemeral=ephemeral,
            make_parents=make_parents,
        )

    def ensure_path(self, path: NodePath) -> None:
        """Create ``path`` and its parents as persistent nodes if missing."""
        try:
            self.create(path, make_parents=True)
        except ServiceError as e:
            if e.code != "node_exists":
                raise

    def get(self, path: NodePath) -> NodeData:
        return self._connection.request("get", path=path)["data"]

    def get_with_stat(self, path: NodePath) -> dict[str, Any]:
        return self._connection.request("get", path=path)

    def set(self, path: NodePath, data: NodeData, version: int | None = None) -> dict[str, Any]:
        return self._connection.request("set", path=path, data=data, version=version)

    def exists(self, path: NodePath) -> bool:
        return self._connection.request("exists", path=path) is not None

    def get_children(self, path: NodePath) -> list[str]:
        return self._connection.request("get_children", path=path)

    def delete(self, path: NodePath) -> None:
        self._connection.request("delete", path=path)

    def __enter__(self) -> CoordinationClient:
        return self.connect()

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

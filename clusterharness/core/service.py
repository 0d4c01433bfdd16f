"""
Base class for embedded cluster services.

Each service listens on its own websocket port. The accept loop runs on a
background thread and every connection gets a handler thread from
``websockets.sync.server``. Requests are ``ServiceRequest`` messages
dispatched to handlers registered by the subclass; replies are
``ServiceResponse`` messages.

``start()`` returns once the port is bound and the service is initialized.
``stop()`` returns once the listening socket and every open connection are
closed. Both are idempotent.
"""

from __future__ import annotations

import threading
import uuid
from abc import ABC
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar

from loguru import logger
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed
from websockets.sync.server import Server, ServerConnection, serve

from .clock import Clock, SystemClock
from .errors import ServiceError, StartupError
from .model import ServiceRequest, ServiceResponse
from .serialization import JsonSerializer, Serializer
from .type_aliases import ConnectionId, EndpointString, HostAddress, PortNumber

type Handler = Callable[[dict[str, Any], "ConnectionContext"], Any]

SERVER_THREAD_JOIN_TIMEOUT = 5.0


@dataclass(slots=True)
class ConnectionContext:
    """Per-connection state handed to every request handler."""

    connection_id: ConnectionId = field(default_factory=lambda: uuid.uuid4().hex)
    attributes: dict[str, Any] = field(default_factory=dict)


class EmbeddedService(ABC):
    """A managed service process running inside the test process.

    Subclasses register operation handlers in ``__init__`` via
    ``register_handler`` and may override the lifecycle hooks:

    - ``_prepare``: before binding (create directories)
    - ``_on_started``: after binding (register with other services)
    - ``_on_stopping``: after the listener closed, before ``_release``
    - ``_release``: free everything the service owns
    - ``_abort_start``: undo a failed start; defaults to stop + release
    """

    kind: ClassVar[str] = "service"

    def __init__(
        self,
        port: PortNumber,
        *,
        bind_host: HostAddress = "127.0.0.1",
        advertised_host: HostAddress = "localhost",
        serializer: Serializer | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.port = port
        self.bind_host = bind_host
        self.advertised_host = advertised_host
        self.serializer = serializer or JsonSerializer()
        self.clock = clock or SystemClock()

        self._handlers: dict[str, Handler] = {}
        self._server: Server | None = None
        self._server_thread: threading.Thread | None = None
        self._connections: set[ServerConnection] = set()
        self._connections_lock = threading.Lock()
        self._running = False

    @property
    def name(self) -> str:
        return f"{self.kind}@{self.address}"

    @property
    def address(self) -> EndpointString:
        return f"{self.advertised_host}:{self.port}"

    @property
    def url(self) -> str:
        return f"ws://{self.address}"

    @property
    def is_running(self) -> bool:
        return self._running

    def register_handler(self, op: str, handler: Handler) -> None:
        self._handlers[op] = handler

    def start(self) -> None:
        """Bind the port and initialize the service.

        Raises:
            StartupError: If the port is already bound or initialization fails.
                Anything created before the failure is released again.
        """
        if self._running:
            logger.debug("[{}] Already running.", self.name)
            return

        logger.info("[{}] Starting...", self.name)
        try:
            self._prepare()
            self._bind()
            self._running = True
            self._on_started()
        except StartupError as e:
            logger.error("[{}] Failed to start: {}", self.name, e)
            self._abort_start()
            raise
        except Exception as e:
            logger.error("[{}] Failed to start: {}", self.name, e)
            self._abort_start()
            raise StartupError(f"{self.name} failed to start: {e}") from e
        logger.info("[{}] Started.", self.name)

    def stop(self) -> None:
        """Close the listener and all connections, then release resources."""
        if not self._running:
            return
        self._running = False
        logger.info("[{}] Stopping...", self.name)
        try:
            self._shutdown_server()
            self._on_stopping()
        finally:
            self._release()
        logger.info("[{}] Stopped.", self.name)

    def _bind(self) -> None:
        try:
            self._server = serve(
                self._handle_connection,
                self.bind_host,
                self.port,
                compression=None,
                max_size=None,
            )
        except OSError as e:
            raise StartupError(
                f"{self.name} could not bind {self.bind_host}:{self.port}: {e}"
            ) from e

        self._server_thread = threading.Thread(
            target=self._server.serve_forever,
            name=f"{self.kind}-{self.port}",
            daemon=True,
        )
        self._server_thread.start()
        logger.debug("[{}] Listening on {}:{}", self.name, self.bind_host, self.port)

    def _shutdown_server(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server = None

        with self._connections_lock:
            connections = list(self._connections)
        for connection in connections:
            try:
                connection.close()
            except Exception as e:
                logger.debug("[{}] Error closing connection: {}", self.name, e)

        if self._server_thread is not None:
            self._server_thread.join(timeout=SERVER_THREAD_JOIN_TIMEOUT)
            if self._server_thread.is_alive():
                logger.warning("[{}] Accept loop did not exit in time", self.name)
            self._server_thread = None

    def _abort_start(self) -> None:
        self._running = False
        try:
            self._shutdown_server()
            self._on_stopping()
        finally:
            try:
                self._release()
            except OSError as e:
                logger.warning("[{}] Cleanup after failed start incomplete: {}", self.name, e)

    def _prepare(self) -> None:
        pass

    def _on_started(self) -> None:
        pass

    def _on_stopping(self) -> None:
        pass

    def _release(self) -> None:
        pass

    def _open_context(self, context: ConnectionContext) -> None:
        pass

    def _close_context(self, context: ConnectionContext) -> None:
        pass

    def _handle_connection(self, connection: ServerConnection) -> None:
        context = ConnectionContext()
        with self._connections_lock:
            self._connections.add(connection)
        self._open_context(context)
        logger.debug("[{}] Connection {} opened", self.name, context.connection_id)
        try:
            for message in connection:
                response = self._respond(message, context)
                connection.send(self.serializer.serialize(response.model_dump()))
        except ConnectionClosed as e:
            logger.debug(
                "[{}] Connection {} closed: {}", self.name, context.connection_id, e
            )
        finally:
            with self._connections_lock:
                self._connections.discard(connection)
            self._close_context(context)
            logger.debug("[{}] Connection {} finished", self.name, context.connection_id)

    def _respond(
        self, message: bytes | str, context: ConnectionContext
    ) -> ServiceResponse:
        try:
            request = ServiceRequest.model_validate(self.serializer.deserialize(message))
        except (ValidationError, ValueError) as e:
            return ServiceResponse(ok=False, error=f"Bad request: {e}", code="bad_request")

        handler = self._handlers.get(request.op)
        if handler is None:
            return ServiceResponse(
                ok=False,
                error=f"Unknown operation '{request.op}'",
                code="unknown_operation",
            )

        try:
            result = handler(request.args, context)
        except ServiceError as e:
            logger.debug("[{}] {} failed: {}", self.name, request.op, e)
            return ServiceResponse(ok=False, error=str(e), code=e.code)
        except Exception as e:
            logger.exception("[{}] {} raised unexpectedly", self.name, request.op)
            return ServiceResponse(ok=False, error=str(e), code="internal_error")
        return ServiceResponse(ok=True, result=result)

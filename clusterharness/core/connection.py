import threading
from dataclasses import dataclass, field
from typing import Any, Self

from loguru import logger
from websockets.exceptions import ConnectionClosed, InvalidHandshake
from websockets.sync.client import ClientConnection, connect

from .clock import Clock, SystemClock
from .errors import ServiceError
from .model import ServiceRequest, ServiceResponse
from .serialization import JsonSerializer, Serializer
from .type_aliases import DurationSeconds, UrlString


@dataclass(slots=True)
class ServiceConnection:
    """Encapsulates a request/response websocket connection to an embedded service.

    Requests are serialized one at a time; a reply is always read before the
    next request is sent.
    """

    url: UrlString
    open_timeout: DurationSeconds = 5.0
    request_timeout: DurationSeconds | None = 10.0
    max_retries: int = field(default=0, repr=False)
    base_delay: DurationSeconds = field(default=0.1, repr=False)
    serializer: Serializer = field(default_factory=JsonSerializer, repr=False)
    clock: Clock = field(default_factory=SystemClock, repr=False)
    _websocket: ClientConnection | None = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def connect(self) -> None:
        """Opens the websocket connection with exponential backoff.

        Raises:
            ConnectionError: If the service cannot be reached after
                ``max_retries + 1`` attempts.
        """
        if self._websocket is not None:
            logger.debug("[{}] Connection already open.", self.url)
            return

        for attempt in range(self.max_retries + 1):
            try:
                self._websocket = connect(
                    self.url,
                    open_timeout=self.open_timeout,
                    close_timeout=2.0,
                    compression=None,
                    max_size=None,
                    user_agent_header=None,
                    proxy=None,
                )
                logger.debug("[{}] Connected.", self.url)
                return
            except (OSError, TimeoutError, InvalidHandshake) as e:
                logger.debug(
                    "[{}] Failed to connect (attempt {}/{}): {}",
                    self.url,
                    attempt + 1,
                    self.max_retries + 1,
                    e,
                )
                if attempt < self.max_retries:
                    self.clock.sleep(self.base_delay * (2**attempt))
                else:
                    raise ConnectionError(
                        f"Failed to connect to {self.url} after {self.max_retries + 1} attempts: {e}"
                    ) from e

    def request(self, op: str, **args: Any) -> Any:
        """Sends one request and returns the result of its reply.

        Raises:
            ConnectionError: If the connection is not open or drops.
            ServiceError: If the service reports the operation failed.
        """
        payload = self.serializer.serialize(
            ServiceRequest(op=op, args=args).model_dump()
        )
        with self._lock:
            websocket = self._websocket
            if websocket is None:
                raise ConnectionError(f"Connection to {self.url} is not open.")
            try:
                websocket.send(payload)
                raw = websocket.recv(timeout=self.request_timeout)
            except TimeoutError as e:
                self._drop()
                raise ConnectionError(
                    f"No reply from {self.url} to '{op}' within {self.request_timeout}s"
                ) from e
            except ConnectionClosed as e:
                self._drop()
                raise ConnectionError(f"Connection to {self.url} closed: {e}") from e

        response = ServiceResponse.model_validate(self.serializer.deserialize(raw))
        if not response.ok:
            raise ServiceError(response.error or "", code=response.code or "error")
        return response.result

    def close(self) -> None:
        """Closes the websocket connection; safe to call repeatedly."""
        with self._lock:
            self._drop()

    def _drop(self) -> None:
        websocket, self._websocket = self._websocket, None
        if websocket is None:
            return
        try:
            websocket.close()
        except Exception as e:
            logger.debug("[{}] Error during disconnect: {}", self.url, e)
        logger.debug("[{}] Disconnected.", self.url)

    @property
    def is_connected(self) -> bool:
        return self._websocket is not None

    def __enter__(self) -> Self:
        self.connect()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

from __future__ import annotations

from typing import Any

from clusterharness.core.clock import Clock, SystemClock
from clusterharness.core.connection import ServiceConnection
from clusterharness.core.serialization import Serializer
from clusterharness.core.type_aliases import (
    DurationSeconds,
    EndpointString,
    Offset,
    PartitionId,
    RecordHeaders,
    RecordValue,
    TopicName,
)


class BrokerClient:
    """Minimal producer/consumer handle for one broker.

    Accepts either a single ``host:port`` endpoint or a bootstrap list, in
    which case the first reachable broker is used.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        *,
        open_timeout: DurationSeconds = 5.0,
        request_timeout: DurationSeconds = 10.0,
        serializer: Serializer | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.endpoints: list[EndpointString] = [
            endpoint.strip() for endpoint in bootstrap_servers.split(",") if endpoint.strip()
        ]
        if not self.endpoints:
            raise ValueError("bootstrap_servers must name at least one broker")
        self.open_timeout = open_timeout
        self.request_timeout = request_timeout
        self.serializer = serializer
        self.clock = clock or SystemClock()
        self._connection: ServiceConnection | None = None

    def connect(self) -> BrokerClient:
        if self._connection is not None:
            return self
        last_error: ConnectionError | None = None
        for endpoint in self.endpoints:
            connection = ServiceConnection(
                url=f"ws://{endpoint}",
                open_timeout=self.open_timeout,
                request_timeout=self.request_timeout,
                clock=self.clock,
            )
            if self.serializer is not None:
                connection.serializer = self.serializer
            try:
                connection.connect()
            except ConnectionError as e:
                last_error = e
                continue
            self._connection = connection
            return self
        raise ConnectionError(
            f"No broker reachable in {','.join(self.endpoints)}: {last_error}"
        )

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _request(self, op: str, **args: Any) -> Any:
        if self._connection is None:
            self.connect()
        assert self._connection is not None
        return self._connection.request(op, **args)

    def metadata(self) -> dict[str, Any]:
        return self._request("metadata")

    def create_topic(self, topic: TopicName, partitions: int | None = None) -> dict[str, Any]:
        return self._request("create_topic", topic=topic, partitions=partitions)

    def produce(
        self,
        topic: TopicName,
        value: RecordValue,
        *,
        key: Any = None,
        partition: PartitionId | None = None,
        headers: RecordHeaders | None = None,
    ) -> dict[str, Any]:
        return self._request(
            "produce",
            topic=topic,
            value=value,
            key=key,
            partition=partition,
            headers=dict(headers or {}),
        )

    def fetch(
        self,
        topic: TopicName,
        offset: Offset = 0,
        *,
        partition: PartitionId = 0,
        max_records: int = 500,
    ) -> list[dict[str, Any]]:
        reply = self._request(
            "fetch",
            topic=topic,
            offset=offset,
            partition=partition,
            max_records=max_records,
        )
        return reply["records"]

    def __enter__(self) -> BrokerClient:
        return self.connect()

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

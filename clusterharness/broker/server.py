"""
Embedded broker.

A broker owns one or more log directories and stores each topic partition as
an append-only JSON-lines segment inside one of them. On start it binds its
port and registers itself as an ephemeral node under ``/brokers/ids`` in the
coordination service; the registration disappears when the broker stops.
"""

from __future__ import annotations

import shutil
import tempfile
import threading
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from clusterharness.coordination.client import CoordinationClient
from clusterharness.core.clock import Clock
from clusterharness.core.errors import ServiceError, StartupError
from clusterharness.core.serialization import Serializer
from clusterharness.core.service import ConnectionContext, EmbeddedService
from clusterharness.core.type_aliases import (
    DurationMilliseconds,
    HostAddress,
    Offset,
    PartitionId,
    TopicName,
)

from .config import BrokerConfig

BROKER_IDS_PATH = "/brokers/ids"
BROKER_TOPICS_PATH = "/brokers/topics"
SEGMENT_NAME = "00000000000000000000.log"
DEFAULT_FETCH_MAX_RECORDS = 500


@dataclass(slots=True)
class PartitionLog:
    """Records of one topic partition, mirrored to a segment file."""

    directory: Path
    records: list[dict[str, Any]] = field(default_factory=list)

    @property
    def segment(self) -> Path:
        return self.directory / SEGMENT_NAME

    @property
    def next_offset(self) -> Offset:
        return len(self.records)


def validate_topic_name(topic: Any) -> TopicName:
    if not isinstance(topic, str) or not topic:
        raise ServiceError("Topic name must be a non-empty string", code="invalid_topic")
    if topic in (".", "..") or "/" in topic or len(topic) > 249:
        raise ServiceError(f"Illegal topic name {topic!r}", code="invalid_topic")
    return topic


class EmbeddedBroker(EmbeddedService):
    """In-process broker started from a ``BrokerConfig``."""

    kind = "broker"

    def __init__(
        self,
        config: BrokerConfig,
        *,
        bind_host: HostAddress = "127.0.0.1",
        log_root: Path | None = None,
        session_timeout_ms: DurationMilliseconds = 6000,
        connection_timeout_ms: DurationMilliseconds = 6000,
        serializer: Serializer | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(
            config.port,
            bind_host=bind_host,
            advertised_host=config.host,
            serializer=serializer,
            clock=clock,
        )
        self.config = config
        self.log_root = log_root
        self.session_timeout_ms = session_timeout_ms
        self.connection_timeout_ms = connection_timeout_ms

        self._log_dirs: list[Path] = []
        self._topics: dict[TopicName, list[PartitionLog]] = {}
        self._topics_lock = threading.RLock()
        self._coordination: CoordinationClient | None = None

        self.register_handler("metadata", self._metadata)
        self.register_handler("create_topic", self._create_topic)
        self.register_handler("produce", self._produce)
        self.register_handler("fetch", self._fetch)

    @property
    def name(self) -> str:
        return f"broker-{self.config.broker_id}@{self.address}"

    @property
    def broker_id(self) -> int:
        return self.config.broker_id

    def log_directories(self) -> tuple[Path, ...]:
        """The on-disk log directories this broker created."""
        return tuple(self._log_dirs)

    def topics(self) -> list[TopicName]:
        with self._topics_lock:
            return sorted(self._topics)

    def _prepare(self) -> None:
        self._log_dirs = []
        self._topics = {}
        try:
            for index in range(self.config.log_dir_count):
                self._log_dirs.append(
                    Path(
                        tempfile.mkdtemp(
                            prefix=f"broker-{self.config.broker_id}-logs{index}-",
                            dir=str(self.log_root) if self.log_root else None,
                        )
                    )
                )
        except OSError as e:
            raise StartupError(f"{self.name} could not create log directories: {e}") from e

    def _on_started(self) -> None:
        self._coordination = CoordinationClient(
            self.config.coordination_connect,
            self.session_timeout_ms,
            self.connection_timeout_ms,
            serializer=self.serializer,
            clock=self.clock,
        ).connect()
        registration = {
            "broker_id": self.config.broker_id,
            "host": self.config.host,
            "port": self.config.port,
            "timestamp": self.clock.time(),
        }
        try:
            self._coordination.create(
                f"{BROKER_IDS_PATH}/{self.config.broker_id}",
                registration,
                ephemeral=True,
                make_parents=True,
            )
        except ServiceError as e:
            if e.code == "node_exists":
                raise StartupError(
                    f"Broker id {self.config.broker_id} is already registered"
                ) from e
            raise
        logger.debug("[{}] Registered with {}", self.name, self.config.coordination_connect)

    def _on_stopping(self) -> None:
        if self._coordination is not None:
            self._coordination.close()
            self._coordination = None

    def _abort_start(self) -> None:
        try:
            super()._abort_start()
        finally:
            try:
                self.remove_log_directories()
            except OSError as e:
                logger.warning("[{}] Could not remove log directories: {}", self.name, e)

    def remove_log_directories(self) -> None:
        """Delete every log directory; raises ``OSError`` on the first failure."""
        while self._log_dirs:
            directory = self._log_dirs[0]
            if directory.exists():
                shutil.rmtree(directory)
            self._log_dirs.pop(0)
            logger.debug("[{}] Removed log directory {}", self.name, directory)

    # Topic storage

    def _ensure_topic(
        self, topic: TopicName, partitions: int | None = None, *, explicit: bool = False
    ) -> list[PartitionLog]:
        with self._topics_lock:
            existing = self._topics.get(topic)
            if existing is not None:
                if explicit:
                    raise ServiceError(
                        f"Topic {topic} already exists", code="topic_already_exists"
                    )
                return existing
            if not explicit and not self.config.auto_create_topics_enable:
                raise ServiceError(
                    f"Topic {topic} does not exist", code="unknown_topic_or_partition"
                )

            count = partitions or self.config.num_partitions
            if count < 1:
                raise ServiceError("partitions must be >= 1", code="invalid_partitions")
            logs = []
            for partition in range(count):
                log_dir = self._log_dirs[partition % len(self._log_dirs)]
                directory = log_dir / f"{topic}-{partition}"
                directory.mkdir(parents=True, exist_ok=True)
                log = PartitionLog(directory)
                log.segment.touch()
                logs.append(log)
            self._topics[topic] = logs

            if self._coordination is not None:
                try:
                    self._coordination.create(
                        f"{BROKER_TOPICS_PATH}/{topic}",
                        {"partitions": count, "broker_id": self.config.broker_id},
                        make_parents=True,
                    )
                except ServiceError as e:
                    if e.code != "node_exists":
                        raise
            logger.info("[{}] Created topic {} with {} partition(s)", self.name, topic, count)
            return logs

    def _partition_for(
        self, logs: list[PartitionLog], key: Any, partition: Any
    ) -> PartitionId:
        if partition is not None:
            if not isinstance(partition, int) or not 0 <= partition < len(logs):
                raise ServiceError(
                    f"Partition {partition} out of range", code="unknown_topic_or_partition"
                )
            return partition
        if key is None:
            return 0
        return zlib.crc32(str(key).encode()) % len(logs)

    # Operation handlers

    def _metadata(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        brokers = []
        if self._coordination is not None:
            for broker_id in self._coordination.get_children(BROKER_IDS_PATH):
                brokers.append(self._coordination.get(f"{BROKER_IDS_PATH}/{broker_id}"))
        with self._topics_lock:
            topics = {topic: len(logs) for topic, logs in self._topics.items()}
        return {
            "broker_id": self.config.broker_id,
            "brokers": sorted(brokers, key=lambda broker: broker["broker_id"]),
            "topics": topics,
        }

    def _create_topic(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        topic = validate_topic_name(args.get("topic"))
        partitions = args.get("partitions")
        logs = self._ensure_topic(topic, partitions, explicit=True)
        return {"topic": topic, "partitions": len(logs)}

    def _produce(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        topic = validate_topic_name(args.get("topic"))
        with self._topics_lock:
            logs = self._ensure_topic(topic)
            partition = self._partition_for(logs, args.get("key"), args.get("partition"))
            log = logs[partition]
            record = {
                "offset": log.next_offset,
                "timestamp": self.clock.time(),
                "key": args.get("key"),
                "value": args.get("value"),
                "headers": dict(args.get("headers") or {}),
            }
            with log.segment.open("ab") as segment:
                segment.write(self.serializer.serialize(record) + b"\n")
            log.records.append(record)
        return {"topic": topic, "partition": partition, "offset": record["offset"]}

    def _fetch(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        topic = validate_topic_name(args.get("topic"))
        offset = int(args.get("offset", 0))
        max_records = int(args.get("max_records", DEFAULT_FETCH_MAX_RECORDS))
        with self._topics_lock:
            logs = self._topics.get(topic)
            if logs is None:
                raise ServiceError(
                    f"Topic {topic} does not exist", code="unknown_topic_or_partition"
                )
            partition = self._partition_for(logs, None, args.get("partition", 0))
            log = logs[partition]
            if offset < 0 or offset > log.next_offset:
                raise ServiceError(
                    f"Offset {offset} out of range for {topic}-{partition}",
                    code="offset_out_of_range",
                )
            records = log.records[offset : offset + max_records]
            return {
                "topic": topic,
                "partition": partition,
                "records": records,
                "high_watermark": log.next_offset,
            }

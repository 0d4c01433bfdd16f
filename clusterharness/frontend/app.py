"""
Embedded front-end service.

A schema-registry-like metadata service sitting on top of the cluster: it
finds the brokers through the coordination service and keeps every
registration as a record in a single store topic, replaying that topic on
start. It must start after the brokers and stop before them.
"""

from __future__ import annotations

import threading
from enum import StrEnum
from typing import Any

from loguru import logger

from clusterharness.broker.client import BrokerClient
from clusterharness.broker.server import BROKER_IDS_PATH
from clusterharness.coordination.client import CoordinationClient
from clusterharness.core.clock import Clock
from clusterharness.core.config import DEFAULT_STORE_TOPIC
from clusterharness.core.errors import ConfigError, ServiceError, StartupError
from clusterharness.core.serialization import Serializer
from clusterharness.core.service import ConnectionContext, EmbeddedService
from clusterharness.core.type_aliases import (
    ConnectString,
    DurationMilliseconds,
    HostAddress,
    PortNumber,
    SchemaId,
    SubjectName,
    TopicName,
)

FRONTEND_INSTANCES_PATH = "/frontend/instances"
REPLAY_BATCH_SIZE = 500


class CompatibilityMode(StrEnum):
    NONE = "NONE"
    BACKWARD = "BACKWARD"
    FORWARD = "FORWARD"
    FULL = "FULL"

    @classmethod
    def parse(cls, value: str | CompatibilityMode) -> CompatibilityMode:
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ConfigError(
                f"Unknown compatibility mode {value!r}; expected one of "
                f"{', '.join(mode.value for mode in cls)}"
            ) from None


class FrontEndService(EmbeddedService):
    """In-process front-end service bound to one port."""

    kind = "frontend"

    def __init__(
        self,
        port: PortNumber,
        coordination_connect: ConnectString,
        store_topic: TopicName = DEFAULT_STORE_TOPIC,
        compatibility_mode: str | CompatibilityMode = CompatibilityMode.NONE,
        *,
        bind_host: HostAddress = "127.0.0.1",
        advertised_host: HostAddress = "localhost",
        session_timeout_ms: DurationMilliseconds = 6000,
        connection_timeout_ms: DurationMilliseconds = 6000,
        serializer: Serializer | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(
            port,
            bind_host=bind_host,
            advertised_host=advertised_host,
            serializer=serializer,
            clock=clock,
        )
        self.coordination_connect = coordination_connect
        self.store_topic = store_topic
        self.compatibility_mode = CompatibilityMode.parse(compatibility_mode)
        self.session_timeout_ms = session_timeout_ms
        self.connection_timeout_ms = connection_timeout_ms

        self._coordination: CoordinationClient | None = None
        self._store: BrokerClient | None = None
        self._state_lock = threading.RLock()
        self._schemas: dict[SchemaId, str] = {}
        self._subjects: dict[SubjectName, list[SchemaId]] = {}
        self._subject_modes: dict[SubjectName, CompatibilityMode] = {}

        self.register_handler("register", self._register)
        self.register_handler("schema_by_id", self._schema_by_id)
        self.register_handler("subjects", self._list_subjects)
        self.register_handler("versions", self._versions)
        self.register_handler("get_config", self._get_config)
        self.register_handler("set_config", self._set_config)

    def _prepare(self) -> None:
        self._coordination = CoordinationClient(
            self.coordination_connect,
            self.session_timeout_ms,
            self.connection_timeout_ms,
            serializer=self.serializer,
            clock=self.clock,
        ).connect()

        broker_ids = (
            self._coordination.get_children(BROKER_IDS_PATH)
            if self._coordination.exists(BROKER_IDS_PATH)
            else []
        )
        if not broker_ids:
            raise StartupError(
                f"{self.name} found no brokers registered at {self.coordination_connect}"
            )
        endpoints = []
        for broker_id in sorted(broker_ids, key=int):
            registration = self._coordination.get(f"{BROKER_IDS_PATH}/{broker_id}")
            endpoints.append(f"{registration['host']}:{registration['port']}")

        self._store = BrokerClient(
            ",".join(endpoints),
            open_timeout=self.connection_timeout_ms / 1000,
            serializer=self.serializer,
            clock=self.clock,
        ).connect()
        try:
            self._store.create_topic(self.store_topic, partitions=1)
        except ServiceError as e:
            if e.code != "topic_already_exists":
                raise
        self._replay()

    def _on_started(self) -> None:
        assert self._coordination is not None
        self._coordination.create(
            f"{FRONTEND_INSTANCES_PATH}/{self.address}",
            {"host": self.advertised_host, "port": self.port},
            ephemeral=True,
            make_parents=True,
        )

    def _on_stopping(self) -> None:
        if self._store is not None:
            self._store.close()
            self._store = None
        if self._coordination is not None:
            self._coordination.close()
            self._coordination = None

    def _release(self) -> None:
        with self._state_lock:
            self._schemas.clear()
            self._subjects.clear()
            self._subject_modes.clear()

    def _replay(self) -> None:
        assert self._store is not None
        offset = 0
        while True:
            records = self._store.fetch(
                self.store_topic, offset, max_records=REPLAY_BATCH_SIZE
            )
            for record in records:
                self._apply(record["value"])
            if len(records) < REPLAY_BATCH_SIZE:
                break
            offset += len(records)
        logger.debug(
            "[{}] Replayed {} schema(s) from {}", self.name, len(self._schemas), self.store_topic
        )

    def _apply(self, entry: dict[str, Any]) -> None:
        with self._state_lock:
            if entry["type"] == "SCHEMA":
                self._schemas[entry["id"]] = entry["schema"]
                versions = self._subjects.setdefault(entry["subject"], [])
                if entry["id"] not in versions:
                    versions.append(entry["id"])
            elif entry["type"] == "CONFIG":
                mode = CompatibilityMode(entry["compatibility"])
                if entry.get("subject") is None:
                    self.compatibility_mode = mode
                else:
                    self._subject_modes[entry["subject"]] = mode

    def _publish(self, entry: dict[str, Any]) -> None:
        if self._store is None:
            raise ServiceError("Store is not available", code="unavailable")
        self._store.produce(self.store_topic, entry)
        self._apply(entry)

    # Operation handlers

    def _register(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        subject = args.get("subject")
        schema = args.get("schema")
        if not isinstance(subject, str) or not subject:
            raise ServiceError("subject must be a non-empty string", code="invalid_subject")
        if not isinstance(schema, str) or not schema:
            raise ServiceError("schema must be a non-empty string", code="invalid_schema")

        with self._state_lock:
            versions = self._subjects.get(subject, [])
            for version, schema_id in enumerate(versions, start=1):
                if self._schemas[schema_id] == schema:
                    return {"id": schema_id, "version": version}

            schema_id = next(
                (existing for existing, text in self._schemas.items() if text == schema),
                max(self._schemas, default=0) + 1,
            )
            self._publish(
                {"type": "SCHEMA", "subject": subject, "id": schema_id, "schema": schema}
            )
            return {"id": schema_id, "version": len(self._subjects[subject])}

    def _schema_by_id(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        schema_id = args.get("id")
        with self._state_lock:
            if schema_id not in self._schemas:
                raise ServiceError(f"Schema {schema_id} not found", code="schema_not_found")
            return self._schemas[schema_id]

    def _list_subjects(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        with self._state_lock:
            return sorted(self._subjects)

    def _versions(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        subject = args.get("subject")
        with self._state_lock:
            if subject not in self._subjects:
                raise ServiceError(f"Subject {subject} not found", code="subject_not_found")
            return list(range(1, len(self._subjects[subject]) + 1))

    def _get_config(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        subject = args.get("subject")
        with self._state_lock:
            mode = self._subject_modes.get(subject, self.compatibility_mode)
        return {"compatibility": mode.value}

    def _set_config(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        try:
            mode = CompatibilityMode.parse(args.get("compatibility", ""))
        except ConfigError as e:
            raise ServiceError(str(e), code="invalid_compatibility_level") from e
        subject = args.get("subject")
        self._publish({"type": "CONFIG", "subject": subject, "compatibility": mode.value})
        return {"compatibility": mode.value}

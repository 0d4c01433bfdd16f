"""
Embedded coordination service.

A small hierarchical metadata store in the spirit of ZooKeeper: nodes are
addressed by slash-separated paths, carry arbitrary JSON data and a version,
and are either persistent or ephemeral. Ephemeral nodes belong to the session
that created them and disappear when that session ends, which is how brokers
announce themselves.

Each service instance owns a freshly created temporary data directory holding
an append-only transaction log. The directory is removed on stop.
"""

from __future__ import annotations

import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from clusterharness.core.clock import Clock
from clusterharness.core.errors import ServiceError, StartupError
from clusterharness.core.serialization import Serializer
from clusterharness.core.service import ConnectionContext, EmbeddedService
from clusterharness.core.type_aliases import (
    ConnectString,
    HostAddress,
    NodeData,
    NodePath,
    NodeVersion,
    PortNumber,
    SessionId,
    Timestamp,
)

TRANSACTION_LOG_NAME = "txnlog.jsonl"


@dataclass(slots=True)
class ZNode:
    """A single node of the coordination tree."""

    data: NodeData = None
    version: NodeVersion = 0
    ephemeral_owner: SessionId | None = None
    ctime: Timestamp = 0.0
    mtime: Timestamp = 0.0

    def stat(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "ephemeral_owner": self.ephemeral_owner,
            "ctime": self.ctime,
            "mtime": self.mtime,
        }


@dataclass(slots=True)
class Session:
    session_id: SessionId
    timeout_ms: int
    ephemeral_paths: set[NodePath] = field(default_factory=set)


def normalize_path(path: str) -> NodePath:
    """Validate and canonicalize a node path."""
    if not isinstance(path, str) or not path.startswith("/"):
        raise ServiceError(f"Path must be absolute: {path!r}", code="bad_path")
    if path == "/":
        return path
    if path.endswith("/") or "//" in path:
        raise ServiceError(f"Invalid path: {path!r}", code="bad_path")
    return path


def parent_path(path: NodePath) -> NodePath:
    parent = path.rsplit("/", 1)[0]
    return parent or "/"


class EmbeddedCoordinationService(EmbeddedService):
    """In-process coordination service bound to one port."""

    kind = "coordination"

    def __init__(
        self,
        port: PortNumber,
        *,
        bind_host: HostAddress = "127.0.0.1",
        advertised_host: HostAddress = "localhost",
        data_root: Path | None = None,
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
        self.data_root = data_root
        self.data_dir: Path | None = None

        self._tree_lock = threading.RLock()
        self._nodes: dict[NodePath, ZNode] = {}
        self._sessions: dict[SessionId, Session] = {}
        self._zxid = 0

        self.register_handler("connect", self._connect)
        self.register_handler("close_session", self._close_session)
        self.register_handler("create", self._create)
        self.register_handler("get", self._get)
        self.register_handler("set", self._set)
        self.register_handler("exists", self._exists)
        self.register_handler("get_children", self._get_children)
        self.register_handler("delete", self._delete)

    @property
    def connect_string(self) -> ConnectString:
        return self.address

    @property
    def session_count(self) -> int:
        with self._tree_lock:
            return len(self._sessions)

    def _prepare(self) -> None:
        try:
            self.data_dir = Path(
                tempfile.mkdtemp(
                    prefix=f"coordination-{self.port}-",
                    dir=str(self.data_root) if self.data_root else None,
                )
            )
        except OSError as e:
            raise StartupError(
                f"{self.name} could not create its data directory: {e}"
            ) from e
        now = self.clock.time()
        with self._tree_lock:
            self._nodes = {"/": ZNode(ctime=now, mtime=now)}
            self._sessions.clear()
            self._zxid = 0
        logger.debug("[{}] Data directory {}", self.name, self.data_dir)

    def _release(self) -> None:
        """Drop all state and delete the data directory.

        Raises:
            OSError: If the data directory cannot be removed.
        """
        # Handlers only append to the log while data_dir is set.
        with self._tree_lock:
            self._sessions.clear()
            self._nodes.clear()
            data_dir, self.data_dir = self.data_dir, None
        if data_dir is None:
            return
        try:
            shutil.rmtree(data_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(
                "[{}] Could not remove data directory {}: {}", self.name, data_dir, e
            )
            raise
        logger.debug("[{}] Removed data directory {}", self.name, data_dir)

    def _close_context(self, context: ConnectionContext) -> None:
        session_id = context.attributes.pop("session_id", None)
        if session_id is not None:
            self._expire_session(session_id)

    def _log_transaction(self, op: str, path: NodePath, data: NodeData = None) -> None:
        self._zxid += 1
        data_dir = self.data_dir
        if data_dir is None:
            return
        entry = {"zxid": self._zxid, "op": op, "path": path, "data": data}
        with (data_dir / TRANSACTION_LOG_NAME).open("ab") as log:
            log.write(self.serializer.serialize(entry) + b"\n")

    def _session_for(self, context: ConnectionContext) -> Session:
        session_id = context.attributes.get("session_id")
        session = self._sessions.get(session_id) if session_id else None
        if session is None:
            raise ServiceError("No session; send 'connect' first", code="no_session")
        return session

    def _expire_session(self, session_id: SessionId) -> None:
        with self._tree_lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return
            for path in sorted(session.ephemeral_paths, reverse=True):
                if self._nodes.pop(path, None) is not None:
                    self._log_transaction("delete", path)
        logger.debug("[{}] Session {} closed", self.name, session_id)

    # Operation handlers

    def _connect(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        timeout_ms = int(args.get("session_timeout_ms", 6000))
        if timeout_ms <= 0:
            raise ServiceError("session_timeout_ms must be positive", code="bad_args")
        with self._tree_lock:
            if "session_id" in context.attributes:
                raise ServiceError("Session already established", code="bad_state")
            session = Session(session_id=uuid.uuid4().hex, timeout_ms=timeout_ms)
            self._sessions[session.session_id] = session
            context.attributes["session_id"] = session.session_id
        logger.debug("[{}] Session {} opened", self.name, session.session_id)
        return {"session_id": session.session_id, "session_timeout_ms": timeout_ms}

    def _close_session(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        session_id = context.attributes.pop("session_id", None)
        if session_id is not None:
            self._expire_session(session_id)
        return None

    def _create(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        path = normalize_path(args.get("path", ""))
        data = args.get("data")
        ephemeral = bool(args.get("ephemeral", False))
        make_parents = bool(args.get("make_parents", False))
        if path == "/":
            raise ServiceError("Root node already exists", code="node_exists")

        with self._tree_lock:
            session = self._session_for(context)
            if path in self._nodes:
                raise ServiceError(f"Node {path} already exists", code="node_exists")

            parent = parent_path(path)
            missing: list[NodePath] = []
            while parent not in self._nodes:
                missing.append(parent)
                parent = parent_path(parent)
            if missing and not make_parents:
                raise ServiceError(f"Parent of {path} does not exist", code="no_node")
            if self._nodes[parent].ephemeral_owner is not None:
                raise ServiceError(
                    f"Ephemeral node {parent} cannot have children",
                    code="no_children_for_ephemerals",
                )

            now = self.clock.time()
            for missing_path in reversed(missing):
                self._nodes[missing_path] = ZNode(ctime=now, mtime=now)
                self._log_transaction("create", missing_path)

            node = ZNode(data=data, ctime=now, mtime=now)
            if ephemeral:
                node.ephemeral_owner = session.session_id
                session.ephemeral_paths.add(path)
            self._nodes[path] = node
            self._log_transaction("create", path, data)
        return path

    def _get(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        path = normalize_path(args.get("path", ""))
        with self._tree_lock:
            self._session_for(context)
            node = self._nodes.get(path)
            if node is None:
                raise ServiceError(f"Node {path} does not exist", code="no_node")
            return {"data": node.data, "stat": node.stat()}

    def _set(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        path = normalize_path(args.get("path", ""))
        expected_version = args.get("version")
        with self._tree_lock:
            self._session_for(context)
            node = self._nodes.get(path)
            if node is None:
                raise ServiceError(f"Node {path} does not exist", code="no_node")
            if expected_version is not None and expected_version != node.version:
                raise ServiceError(
                    f"Version mismatch for {path}: expected {expected_version}, "
                    f"found {node.version}",
                    code="bad_version",
                )
            node.data = args.get("data")
            node.version += 1
            node.mtime = self.clock.time()
            self._log_transaction("set", path, node.data)
            return node.stat()

    def _exists(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        path = normalize_path(args.get("path", ""))
        with self._tree_lock:
            self._session_for(context)
            node = self._nodes.get(path)
            return None if node is None else node.stat()

    def _get_children(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        path = normalize_path(args.get("path", ""))
        prefix = "/" if path == "/" else f"{path}/"
        with self._tree_lock:
            self._session_for(context)
            if path not in self._nodes:
                raise ServiceError(f"Node {path} does not exist", code="no_node")
            return sorted(
                candidate[len(prefix) :]
                for candidate in self._nodes
                if candidate != "/"
                and candidate.startswith(prefix)
                and "/" not in candidate[len(prefix) :]
            )

    def _delete(self, args: dict[str, Any], context: ConnectionContext) -> Any:
        path = normalize_path(args.get("path", ""))
        if path == "/":
            raise ServiceError("Cannot delete the root node", code="bad_path")
        with self._tree_lock:
            self._session_for(context)
            node = self._nodes.get(path)
            if node is None:
                raise ServiceError(f"Node {path} does not exist", code="no_node")
            prefix = f"{path}/"
            if any(candidate.startswith(prefix) for candidate in self._nodes):
                raise ServiceError(f"Node {path} has children", code="not_empty")
            del self._nodes[path]
            if node.ephemeral_owner is not None:
                owner = self._sessions.get(node.ephemeral_owner)
                if owner is not None:
                    owner.ephemeral_paths.discard(path)
            self._log_transaction("delete", path)
        return None


class CoordinationServiceLauncher:
    """Starts and stops embedded coordination services."""

    def __init__(
        self,
        *,
        bind_host: HostAddress = "127.0.0.1",
        advertised_host: HostAddress = "localhost",
        data_root: Path | None = None,
        serializer: Serializer | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.bind_host = bind_host
        self.advertised_host = advertised_host
        self.data_root = data_root
        self.serializer = serializer
        self.clock = clock

    def start(self, port: PortNumber) -> EmbeddedCoordinationService:
        """Start a coordination service on ``port``.

        Raises:
            StartupError: If the port is already bound or the data directory
                cannot be created.
        """
        service = EmbeddedCoordinationService(
            port,
            bind_host=self.bind_host,
            advertised_host=self.advertised_host,
            data_root=self.data_root,
            serializer=self.serializer,
            clock=self.clock,
        )
        service.start()
        return service

    def stop(self, service: EmbeddedCoordinationService) -> None:
        """Stop ``service``; a no-op if it is already stopped.

        Raises:
            OSError: If the data directory cannot be removed. The service is
                stopped and its port released regardless.
        """
        service.stop()

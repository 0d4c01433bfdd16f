"""
Cluster test harness.

Runs a real, local cluster for integration tests: one coordination service,
a group of brokers and optionally the front-end service. Defaults to a
1-coordination, 1-broker cluster without the front-end.

Ports are allocated when the harness is constructed, so every address is
known before anything starts. ``setup()`` starts the services in dependency
order and ``teardown()`` stops them in exactly the reverse order, continuing
past individual failures.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any, Protocol, Self

import psutil
from loguru import logger

from clusterharness.broker.config import BrokerConfig, broker_list
from clusterharness.broker.launcher import Broker, BrokerGroupLauncher
from clusterharness.broker.server import BROKER_IDS_PATH
from clusterharness.coordination.client import CoordinationClient
from clusterharness.coordination.server import CoordinationServiceLauncher
from clusterharness.core.clock import Clock, SystemClock
from clusterharness.core.config import HarnessSettings
from clusterharness.core.errors import (
    BrokerGroupStartupError,
    ConfigError,
    StartupError,
    TeardownWarning,
)
from clusterharness.core.port_allocator import PortAllocator, PortPool, get_port_allocator
from clusterharness.core.process import (
    CoordinationHandle,
    CoordinationSession,
    ManagedProcess,
)
from clusterharness.core.serialization import JsonSerializer, Serializer
from clusterharness.core.type_aliases import (
    ConnectString,
    DurationMilliseconds,
    PortNumber,
    TopicName,
)
from clusterharness.frontend.app import CompatibilityMode, FrontEndService

DEFAULT_NUM_BROKERS = 1
BROKER_READY_POLL_INTERVAL = 0.05


def _allocator_for(settings: HarnessSettings) -> PortAllocator:
    """The shared allocator, unless the settings ask for a different one."""
    shared = get_port_allocator()
    if (
        shared.host == settings.bind_host
        and shared.retry_budget == settings.port_retry_budget
    ):
        return shared
    return PortAllocator(settings.bind_host, retry_budget=settings.port_retry_budget)


class FixtureState(Enum):
    CONSTRUCTED = "constructed"
    SETUP_IN_PROGRESS = "setup_in_progress"
    READY = "ready"
    TEARDOWN_IN_PROGRESS = "teardown_in_progress"
    TORN_DOWN = "torn_down"


class CoordinationLauncher(Protocol):
    def start(self, port: PortNumber) -> CoordinationHandle: ...

    def stop(self, service: CoordinationHandle) -> None: ...


class BrokerLauncher(Protocol):
    def validate(self, configs: Sequence[BrokerConfig]) -> None: ...

    def start_all(self, configs: Sequence[BrokerConfig]) -> list[Broker]: ...

    def stop_all(self, brokers: Sequence[Broker]) -> list[TeardownWarning]: ...


type ClientFactory = Callable[
    [ConnectString, DurationMilliseconds, DurationMilliseconds], CoordinationSession
]
type FrontEndFactory = Callable[
    [PortNumber, ConnectString, TopicName, CompatibilityMode], ManagedProcess
]


class ClusterHarness:
    """Ephemeral localhost cluster with a strict setup/teardown lifecycle."""

    def __init__(
        self,
        num_brokers: int | None = None,
        setup_front_end: bool | None = None,
        compatibility_mode: str | None = None,
        *,
        settings: HarnessSettings | None = None,
        port_allocator: PortAllocator | None = None,
        coordination_launcher: CoordinationLauncher | None = None,
        broker_launcher: BrokerLauncher | None = None,
        client_factory: ClientFactory | None = None,
        front_end_factory: FrontEndFactory | None = None,
        serializer: Serializer | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings or HarnessSettings()
        self.num_brokers = (
            self.settings.num_brokers if num_brokers is None else num_brokers
        )
        self.setup_front_end = (
            self.settings.setup_front_end if setup_front_end is None else setup_front_end
        )
        self.compatibility_mode = CompatibilityMode.parse(
            compatibility_mode or self.settings.compatibility_mode
        )
        if self.num_brokers < 0:
            raise ConfigError(f"num_brokers must be >= 0, got {self.num_brokers}")

        self.serializer = serializer or JsonSerializer()
        self.clock = clock or SystemClock()
        self.port_allocator = port_allocator or _allocator_for(self.settings)
        self.coordination_launcher: CoordinationLauncher = (
            coordination_launcher
            or CoordinationServiceLauncher(
                bind_host=self.settings.bind_host,
                advertised_host=self.settings.advertised_host,
                data_root=self.settings.data_root,
                serializer=self.serializer,
                clock=self.clock,
            )
        )
        self.broker_launcher: BrokerLauncher = broker_launcher or BrokerGroupLauncher(
            bind_host=self.settings.bind_host,
            log_root=self.settings.data_root,
            session_timeout_ms=self.settings.session_timeout_ms,
            connection_timeout_ms=self.settings.connection_timeout_ms,
            serializer=self.serializer,
            clock=self.clock,
        )
        self.client_factory: ClientFactory = client_factory or self._coordination_client
        front_end_factory = front_end_factory or self._front_end_service

        # 1 port for coordination, 1 per broker, and 1 for the front-end if needed
        num_ports = 1 + self.num_brokers + (1 if self.setup_front_end else 0)
        self.ports: tuple[PortNumber, ...] = tuple(self.port_allocator.allocate(num_ports))
        host = self.settings.advertised_host
        self.front_end_port: PortNumber | None = None
        self.front_end: ManagedProcess | None = None
        try:
            pool = PortPool(self.ports)
            self.coordination_port = pool.take()
            self.coordination_connect: ConnectString = f"{host}:{self.coordination_port}"

            self.broker_ports = pool.take_many(self.num_brokers)
            self.broker_configs: list[BrokerConfig] = BrokerGroupLauncher.build_configs(
                self.num_brokers, self.coordination_connect, self.broker_ports, host=host
            )
            self.bootstrap_servers = broker_list(self.broker_configs)

            if self.setup_front_end:
                self.front_end_port = pool.take()
                self.front_end = front_end_factory(
                    self.front_end_port,
                    self.coordination_connect,
                    self.settings.store_topic,
                    self.compatibility_mode,
                )
        except BaseException:
            self.port_allocator.release(self.ports)
            raise

        self.coordination: CoordinationHandle | None = None
        self.coordination_client: CoordinationSession | None = None
        self.brokers: list[Broker] = []
        self.teardown_warnings: list[TeardownWarning] = []
        self.state = FixtureState.CONSTRUCTED
        logger.debug(
            "Cluster harness constructed: coordination={}, brokers={}, front_end={}",
            self.coordination_connect,
            self.bootstrap_servers or "-",
            self.front_end_port,
        )

    @property
    def front_end_url(self) -> str | None:
        if self.front_end_port is None:
            return None
        return f"ws://{self.settings.advertised_host}:{self.front_end_port}"

    def _coordination_client(
        self,
        connect_string: ConnectString,
        session_timeout_ms: DurationMilliseconds,
        connection_timeout_ms: DurationMilliseconds,
    ) -> CoordinationSession:
        return CoordinationClient(
            connect_string,
            session_timeout_ms,
            connection_timeout_ms,
            serializer=self.serializer,
            clock=self.clock,
        )

    def _front_end_service(
        self,
        port: PortNumber,
        coordination_connect: ConnectString,
        store_topic: TopicName,
        compatibility_mode: CompatibilityMode,
    ) -> ManagedProcess:
        return FrontEndService(
            port,
            coordination_connect,
            store_topic,
            compatibility_mode,
            bind_host=self.settings.bind_host,
            advertised_host=self.settings.advertised_host,
            session_timeout_ms=self.settings.session_timeout_ms,
            connection_timeout_ms=self.settings.connection_timeout_ms,
            serializer=self.serializer,
            clock=self.clock,
        )

    def setup(self) -> None:
        """Start the cluster.

        Raises:
            ConfigError: If there are no brokers; nothing is started.
            StartupError: If any service fails to start. Everything already
                started is torn down before the error propagates.
        """
        if self.state is not FixtureState.CONSTRUCTED:
            raise RuntimeError(f"setup() requires a fresh harness, state is {self.state.name}")
        self.state = FixtureState.SETUP_IN_PROGRESS
        logger.info(
            "Setting up cluster: {} broker(s), front-end {}",
            self.num_brokers,
            "enabled" if self.front_end is not None else "disabled",
        )
        try:
            self.broker_launcher.validate(self.broker_configs)

            self.coordination = self.coordination_launcher.start(self.coordination_port)
            self.coordination_client = self.client_factory(
                self.coordination.connect_string,
                self.settings.session_timeout_ms,
                self.settings.connection_timeout_ms,
            )
            self.coordination_client.connect()

            try:
                self.brokers = self.broker_launcher.start_all(self.broker_configs)
            except BrokerGroupStartupError as e:
                self.brokers = list(e.started)
                raise
            self._await_brokers_registered()

            if self.front_end is not None:
                self.front_end.start()
        except BaseException as e:
            logger.error("Cluster setup failed, tearing down: {}", e)
            self.teardown()
            raise

        self.state = FixtureState.READY
        logger.info("Cluster ready: brokers={}", self.bootstrap_servers)

    def _await_brokers_registered(self) -> None:
        assert self.coordination_client is not None
        expected = {str(config.broker_id) for config in self.broker_configs}
        deadline = self.clock.monotonic() + self.settings.broker_ready_timeout
        while True:
            registered = set(self.coordination_client.get_children(BROKER_IDS_PATH))
            if expected <= registered:
                return
            if self.clock.monotonic() >= deadline:
                raise StartupError(
                    f"Brokers {sorted(expected - registered, key=int)} did not register "
                    f"within {self.settings.broker_ready_timeout}s"
                )
            self.clock.sleep(BROKER_READY_POLL_INTERVAL)

    def teardown(self) -> None:
        """Stop everything that was started, in reverse start order.

        Never raises: each failing step is recorded in ``teardown_warnings``
        and logged. A second call does nothing.
        """
        if self.state in (FixtureState.TEARDOWN_IN_PROGRESS, FixtureState.TORN_DOWN):
            return
        self.state = FixtureState.TEARDOWN_IN_PROGRESS
        logger.info("Tearing down cluster")

        if self.front_end is not None:
            self._cleanup("front-end", self.front_end.stop)

        if self.brokers:
            brokers, self.brokers = self.brokers, []
            self._cleanup(
                "brokers",
                lambda: self.teardown_warnings.extend(
                    self.broker_launcher.stop_all(brokers)
                ),
            )

        if self.coordination_client is not None:
            self._cleanup("coordination-client", self.coordination_client.close)
            self.coordination_client = None

        if self.coordination is not None:
            coordination = self.coordination
            self._cleanup(
                "coordination", lambda: self.coordination_launcher.stop(coordination)
            )
            self.coordination = None

        self._check_for_leaked_listeners()
        self.port_allocator.release(self.ports)
        self.state = FixtureState.TORN_DOWN
        if self.teardown_warnings:
            logger.warning(
                "Cluster torn down with {} warning(s)", len(self.teardown_warnings)
            )
        else:
            logger.info("Cluster torn down")

    def _cleanup(self, component: str, action: Callable[[], Any]) -> None:
        try:
            action()
        except Exception as e:
            warning = TeardownWarning(component, f"cleanup failed: {e}")
            logger.warning("{}", warning)
            self.teardown_warnings.append(warning)

    def _check_for_leaked_listeners(self) -> None:
        ports = set(self.ports)
        try:
            connections = psutil.Process().net_connections(kind="tcp")
        except psutil.Error as e:
            logger.debug("Could not inspect listening sockets: {}", e)
            return
        for connection in connections:
            if connection.status == psutil.CONN_LISTEN and connection.laddr.port in ports:
                warning = TeardownWarning(
                    "harness", f"port {connection.laddr.port} still listening after teardown"
                )
                logger.warning("{}", warning)
                self.teardown_warnings.append(warning)

    def __enter__(self) -> Self:
        self.setup()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.teardown()

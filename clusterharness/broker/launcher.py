from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Protocol

from loguru import logger

from clusterharness.core.clock import Clock
from clusterharness.core.errors import (
    BrokerGroupStartupError,
    ConfigError,
    TeardownWarning,
)
from clusterharness.core.serialization import Serializer
from clusterharness.core.type_aliases import (
    ConnectString,
    DurationMilliseconds,
    HostAddress,
    PortNumber,
)

from .config import BrokerConfig, build_broker_configs
from .server import EmbeddedBroker


class Broker(Protocol):
    """What the launcher needs from a running broker."""

    config: BrokerConfig

    @property
    def is_running(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def log_directories(self) -> tuple[Path, ...]: ...

    def remove_log_directories(self) -> None: ...


type BrokerFactory = Callable[[BrokerConfig], Broker]


class BrokerGroupLauncher:
    """Builds broker configs and starts/stops a group of brokers."""

    def __init__(
        self,
        broker_factory: BrokerFactory | None = None,
        *,
        bind_host: HostAddress = "127.0.0.1",
        log_root: Path | None = None,
        session_timeout_ms: DurationMilliseconds = 6000,
        connection_timeout_ms: DurationMilliseconds = 6000,
        serializer: Serializer | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.bind_host = bind_host
        self.log_root = log_root
        self.session_timeout_ms = session_timeout_ms
        self.connection_timeout_ms = connection_timeout_ms
        self.serializer = serializer
        self.clock = clock
        self.broker_factory = broker_factory or self._embedded_broker

    def _embedded_broker(self, config: BrokerConfig) -> Broker:
        return EmbeddedBroker(
            config,
            bind_host=self.bind_host,
            log_root=self.log_root,
            session_timeout_ms=self.session_timeout_ms,
            connection_timeout_ms=self.connection_timeout_ms,
            serializer=self.serializer,
            clock=self.clock,
        )

    @staticmethod
    def build_configs(
        num_brokers: int,
        coordination_connect: ConnectString,
        ports: Sequence[PortNumber],
        *,
        host: HostAddress = "localhost",
    ) -> list[BrokerConfig]:
        return build_broker_configs(num_brokers, coordination_connect, ports, host=host)

    @staticmethod
    def validate(configs: Sequence[BrokerConfig]) -> None:
        if not configs:
            raise ConfigError("Must supply at least one broker config.")

    def start_all(self, configs: Sequence[BrokerConfig]) -> list[Broker]:
        """Start one broker per config, in config order.

        Raises:
            ConfigError: If ``configs`` is empty.
            BrokerGroupStartupError: On the first broker that fails to start;
                ``started`` holds the brokers that are already running.
        """
        self.validate(configs)
        started: list[Broker] = []
        for config in configs:
            try:
                broker = self.broker_factory(config)
                broker.start()
            except Exception as e:
                raise BrokerGroupStartupError(
                    f"Broker {config.broker_id} failed to start: {e}", started
                ) from e
            started.append(broker)
        logger.info("Started {} broker(s)", len(started))
        return started

    def stop_all(self, brokers: Sequence[Broker]) -> list[TeardownWarning]:
        """Stop every broker, then remove every broker's log directories.

        Brokers are stopped in reverse start order. A failure to stop one
        broker or to remove a directory never prevents the rest; each failure
        is logged and returned as a ``TeardownWarning``.
        """
        warnings: list[TeardownWarning] = []
        for broker in reversed(brokers):
            try:
                broker.stop()
            except Exception as e:
                warning = TeardownWarning(
                    f"broker-{broker.config.broker_id}", f"failed to stop: {e}"
                )
                logger.warning("{}", warning)
                warnings.append(warning)

        for broker in brokers:
            try:
                broker.remove_log_directories()
            except Exception as e:
                warning = TeardownWarning(
                    f"broker-{broker.config.broker_id}",
                    f"failed to remove log directories: {e}",
                )
                logger.warning("{}", warning)
                warnings.append(warning)
        return warnings

from collections.abc import Sequence
from dataclasses import dataclass

from clusterharness.core.errors import ConfigError
from clusterharness.core.type_aliases import (
    BrokerId,
    ConnectString,
    EndpointString,
    HostAddress,
    PortNumber,
)


@dataclass(frozen=True, slots=True)
class BrokerConfig:
    """Configuration for a single broker."""

    broker_id: BrokerId
    port: PortNumber
    coordination_connect: ConnectString
    host: HostAddress = "localhost"
    auto_create_topics_enable: bool = True
    num_partitions: int = 1
    log_dir_count: int = 1

    def __post_init__(self) -> None:
        if self.broker_id < 0:
            raise ConfigError(f"broker_id must be >= 0, got {self.broker_id}")
        if self.num_partitions < 1:
            raise ConfigError(f"num_partitions must be >= 1, got {self.num_partitions}")
        if self.log_dir_count < 1:
            raise ConfigError(f"log_dir_count must be >= 1, got {self.log_dir_count}")

    @property
    def endpoint(self) -> EndpointString:
        return f"{self.host}:{self.port}"


def build_broker_configs(
    num_brokers: int,
    coordination_connect: ConnectString,
    ports: Sequence[PortNumber],
    *,
    host: HostAddress = "localhost",
) -> list[BrokerConfig]:
    """Build one config per broker; broker ``i`` always gets ``ports[i]``.

    Raises:
        ConfigError: If ``num_brokers`` is negative or ``ports`` is too short.
    """
    if num_brokers < 0:
        raise ConfigError(f"num_brokers must be >= 0, got {num_brokers}")
    if len(ports) < num_brokers:
        raise ConfigError(
            f"{num_brokers} brokers need {num_brokers} ports, only {len(ports)} supplied"
        )
    return [
        BrokerConfig(
            broker_id=broker_id,
            port=ports[broker_id],
            coordination_connect=coordination_connect,
            host=host,
        )
        for broker_id in range(num_brokers)
    ]


def broker_list(configs: Sequence[BrokerConfig]) -> str:
    """Comma-separated ``host:port`` list of brokers in creation order."""
    return ",".join(config.endpoint for config in configs)

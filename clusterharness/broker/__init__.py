from .client import BrokerClient
from .config import BrokerConfig, broker_list, build_broker_configs
from .launcher import BrokerGroupLauncher
from .server import EmbeddedBroker

__all__ = [
    "BrokerClient",
    "BrokerConfig",
    "BrokerGroupLauncher",
    "EmbeddedBroker",
    "broker_list",
    "build_broker_configs",
]

"""
clusterharness - ephemeral localhost clusters for integration tests

Stands up a coordination service, a group of brokers and an optional
front-end service on free local ports, and tears them all down again after
each test.

## Architecture

- **core**: ports, errors, settings, logging, serialization, the embedded
  service base class and its client connection
- **coordination**: the coordination service and its client
- **broker**: broker configs, the embedded broker, its client and the group launcher
- **frontend**: the front-end service and its client
- **harness**: the ``ClusterHarness`` lifecycle controller
- **testing**: pytest base class, fixture and marker

## Quick Start

```python
from clusterharness import ClusterHarness

with ClusterHarness(num_brokers=3, setup_front_end=True) as cluster:
    print(cluster.bootstrap_servers)
```
"""

from .core.errors import (
    BrokerGroupStartupError,
    ConfigError,
    HarnessError,
    ResourceExhaustedError,
    ServiceError,
    StartupError,
    TeardownWarning,
)
from .harness import ClusterHarness, FixtureState

__all__ = [
    "ClusterHarness",
    "FixtureState",
    # Errors
    "HarnessError",
    "ResourceExhaustedError",
    "ConfigError",
    "StartupError",
    "BrokerGroupStartupError",
    "ServiceError",
    "TeardownWarning",
]

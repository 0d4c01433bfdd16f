"""
Semantic type aliases for clusterharness.

These keep signatures self-documenting where raw ``str``/``int`` would hide
what a value actually is.
"""

from collections.abc import Mapping
from typing import Any

# Time
type Timestamp = float
type DurationSeconds = float
type DurationMilliseconds = int

# Network
type HostAddress = str
type PortNumber = int
type ConnectString = str  # host:port of a coordination service
type EndpointString = str  # host:port of a broker or front-end
type UrlString = str

# Identifiers
type BrokerId = int
type SessionId = str
type ConnectionId = str

# Coordination store
type NodePath = str
type NodeData = Any
type NodeVersion = int

# Broker log
type TopicName = str
type PartitionId = int
type Offset = int
type RecordValue = Any
type RecordHeaders = Mapping[str, str]

# Front-end
type SubjectName = str
type SchemaId = int
type SchemaVersion = int

"""
clusterharness core module

Ports, errors, settings, logging, serialization and the embedded service
plumbing shared by every cluster component.
"""

from .clock import Clock, SystemClock
from .config import HarnessSettings
from .connection import ServiceConnection
from .errors import (
    BrokerGroupStartupError,
    ConfigError,
    HarnessError,
    ResourceExhaustedError,
    ServiceError,
    StartupError,
    TeardownWarning,
)
from .model import ServiceRequest, ServiceResponse
from .port_allocator import PortAllocator, PortPool, get_port_allocator
from .serialization import JsonSerializer, Serializer
from .service import ConnectionContext, EmbeddedService

__all__ = [
    # Clock
    "Clock",
    "SystemClock",
    # Config
    "HarnessSettings",
    # Connection
    "ServiceConnection",
    # Errors
    "HarnessError",
    "ResourceExhaustedError",
    "ConfigError",
    "StartupError",
    "BrokerGroupStartupError",
    "ServiceError",
    "TeardownWarning",
    # Model
    "ServiceRequest",
    "ServiceResponse",
    # Ports
    "PortAllocator",
    "PortPool",
    "get_port_allocator",
    # Serialization
    "Serializer",
    "JsonSerializer",
    # Services
    "ConnectionContext",
    "EmbeddedService",
]

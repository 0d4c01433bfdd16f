from .client import CoordinationClient
from .server import CoordinationServiceLauncher, EmbeddedCoordinationService

__all__ = [
    "CoordinationClient",
    "CoordinationServiceLauncher",
    "EmbeddedCoordinationService",
]

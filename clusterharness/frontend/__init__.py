from .app import CompatibilityMode, FrontEndService
from .client import FrontEndClient

__all__ = ["CompatibilityMode", "FrontEndClient", "FrontEndService"]

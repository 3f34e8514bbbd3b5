"""Key lifecycle management and rotation auditing for environment secrets."""

from envkeeper.errors import KeyLifecycleError, KeyNotFoundError, RotationConfigError
from envkeeper.orchestrator import CryptoOrchestrator, create_orchestrator
from envkeeper.settings import KeyLifecycleSettings, get_settings

__version__ = "0.1.0"

__all__ = [
    "CryptoOrchestrator",
    "KeyLifecycleError",
    "KeyLifecycleSettings",
    "KeyNotFoundError",
    "RotationConfigError",
    "create_orchestrator",
    "get_settings",
]

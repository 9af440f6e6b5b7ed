"""HTTP boundary for genbroker."""

from .app import app, create_app
from .container import BrokerContainer, build_container, build_memory_container
from .settings import ApiSettings, get_api_settings

__all__ = [
    "app",
    "create_app",
    "BrokerContainer",
    "build_container",
    "build_memory_container",
    "ApiSettings",
    "get_api_settings",
]

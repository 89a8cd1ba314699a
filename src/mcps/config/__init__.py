"""Configuration package: settings, logging and the server descriptor store."""

from .config_store import (
    ConfigStore,
    ServerDescriptor,
    ServerKind,
    resolve_env_placeholders,
)
from .exceptions import ConfigurationError
from .settings import DEFAULT_PORT, Settings, load_settings

__all__ = [
    "ConfigStore",
    "ConfigurationError",
    "DEFAULT_PORT",
    "ServerDescriptor",
    "ServerKind",
    "Settings",
    "load_settings",
    "resolve_env_placeholders",
]

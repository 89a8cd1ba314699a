"""Server descriptor store backed by the mcp.json configuration file."""

import json
import os
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import yaml

from .exceptions import ConfigurationError

logger = structlog.get_logger(__name__)

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z0-9_]+)\}|\$([A-Za-z0-9_]+)")


class ServerKind(str, Enum):
    """How a backend is reached."""

    PROCESS = "process"
    HTTP = "http"
    EVENTSTREAM = "eventstream"


# Values accepted in a descriptor's explicit "type" field.
_TYPE_ALIASES = {
    "stdio": ServerKind.PROCESS,
    "process": ServerKind.PROCESS,
    "http": ServerKind.HTTP,
    "streamable-http": ServerKind.HTTP,
    "sse": ServerKind.EVENTSTREAM,
    "eventstream": ServerKind.EVENTSTREAM,
}


@dataclass(frozen=True)
class ServerDescriptor:
    """Persisted description of how to reach one backend."""

    name: str
    kind: ServerKind
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    url: Optional[str] = None
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_config(cls, name: str, raw: Dict[str, Any]) -> "ServerDescriptor":
        """Build a descriptor from one raw config entry.

        Raises:
            ConfigurationError: If the entry is not a valid descriptor
        """
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Server '{name}' must be an object")

        kind = detect_server_kind(raw)
        disabled = raw.get("disabled", False)
        if not isinstance(disabled, bool):
            raise ConfigurationError(f"Server '{name}': 'disabled' must be a boolean")

        if kind is ServerKind.PROCESS:
            command = raw.get("command")
            if not isinstance(command, str) or not command:
                raise ConfigurationError(f"Server '{name}': 'command' is required")
            args = raw.get("args") or []
            if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
                raise ConfigurationError(
                    f"Server '{name}': 'args' must be a list of strings"
                )
            env = raw.get("env") or {}
            if not isinstance(env, dict):
                raise ConfigurationError(f"Server '{name}': 'env' must be an object")
            return cls(
                name=name,
                kind=kind,
                command=command,
                args=list(args),
                env={str(k): str(v) for k, v in env.items()},
                cwd=raw.get("cwd"),
                enabled=not disabled,
            )

        url = raw.get("url")
        if not isinstance(url, str) or not url.startswith(("http://", "https://", "$")):
            raise ConfigurationError(f"Server '{name}': a valid 'url' is required")
        return cls(name=name, kind=kind, url=url, enabled=not disabled)


def detect_server_kind(raw: Dict[str, Any]) -> ServerKind:
    """Work out the backend kind from an explicit type or the fields present."""
    explicit = raw.get("type") or raw.get("transport")
    if explicit:
        try:
            return _TYPE_ALIASES[str(explicit).lower()]
        except KeyError:
            raise ConfigurationError(f"Unknown server type: {explicit}")

    url = raw.get("url")
    if isinstance(url, str):
        return ServerKind.EVENTSTREAM if "/sse" in url else ServerKind.HTTP
    return ServerKind.PROCESS


def resolve_env_placeholders(value: str) -> str:
    """Substitute ``${VAR}`` and ``$VAR`` references from the environment.

    Raises:
        ConfigurationError: If any referenced variable is unset
    """
    missing: List[str] = []

    def _replace(match: "re.Match[str]") -> str:
        key = match.group(1) or match.group(2)
        resolved = os.environ.get(key)
        if resolved is None:
            if key not in missing:
                missing.append(key)
            return match.group(0)
        return resolved

    result = _PLACEHOLDER.sub(_replace, value)
    if missing:
        raise ConfigurationError(
            f"Missing environment variables: {', '.join(missing)}"
        )
    return result


class ConfigStore:
    """Access to the configured backends.

    The file is read on every lookup so that edits apply to the next
    connect or restart without restarting the daemon. Edits rewrite the
    whole file; entries are validated before anything is written.
    """

    def __init__(self, config_file: Path):
        self.config_file = Path(config_file)

    def get(self, name: str) -> Optional[ServerDescriptor]:
        """Return the descriptor named ``name``, enabled or not."""
        for descriptor in self._load_descriptors():
            if descriptor.name == name:
                return descriptor
        return None

    def list(self) -> List[ServerDescriptor]:
        """Return every valid descriptor."""
        return self._load_descriptors()

    def list_enabled(self) -> List[ServerDescriptor]:
        """Return the descriptors that are not disabled."""
        return [d for d in self._load_descriptors() if d.enabled]

    def add(self, name: str, entry: Dict[str, Any]) -> ServerDescriptor:
        """Add a new backend entry under ``mcpServers``.

        Raises:
            ConfigurationError: If the name is taken or the entry is invalid
        """
        raw = self._load_for_update()
        if self._find_entry(raw, name) is not None:
            raise ConfigurationError(f'Server with name "{name}" already exists.')

        descriptor = ServerDescriptor.from_config(name, entry)
        servers = raw.get("mcpServers")
        if not isinstance(servers, dict):
            servers = raw["mcpServers"] = {}
        servers[name] = dict(entry)
        self._save(raw)
        logger.info("Server added to config", server=name, kind=descriptor.kind.value)
        return descriptor

    def remove(self, name: str) -> None:
        """Delete a backend entry.

        Raises:
            ConfigurationError: If no entry has that name
        """
        raw = self._load_for_update()
        if self._find_entry(raw, name) is None:
            raise ConfigurationError(f'Server with name "{name}" not found.')

        servers = raw.get("mcpServers")
        if isinstance(servers, dict):
            servers.pop(name, None)
        legacy = raw.get("servers")
        if isinstance(legacy, list):
            raw["servers"] = [
                e for e in legacy if not (isinstance(e, dict) and e.get("name") == name)
            ]
        self._save(raw)
        logger.info("Server removed from config", server=name)

    def update(self, name: str, updates: Dict[str, Any]) -> ServerDescriptor:
        """Merge ``updates`` into an existing entry and validate the result.

        Raises:
            ConfigurationError: If no entry has that name or the merged
                entry is invalid
        """
        raw = self._load_for_update()
        current = self._find_entry(raw, name)
        if current is None:
            raise ConfigurationError(f'Server with name "{name}" not found.')

        merged = {**current, **updates}
        try:
            descriptor = ServerDescriptor.from_config(name, merged)
        except ConfigurationError as e:
            raise ConfigurationError(f"Invalid update: {e.message}")

        current.clear()
        current.update(merged)
        self._save(raw)
        logger.info("Server config updated", server=name, fields=sorted(updates))
        return descriptor

    @property
    def daemon_timeout(self) -> Optional[float]:
        """Daemon start timeout from the file (stored in ms), in seconds."""
        value = self._load_raw().get("daemonTimeout")
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            return value / 1000.0
        return None

    def _load_descriptors(self) -> List[ServerDescriptor]:
        raw = self._load_raw()
        entries: List[tuple] = []

        servers = raw.get("mcpServers")
        if isinstance(servers, dict):
            entries.extend(servers.items())
        legacy = raw.get("servers")
        if isinstance(legacy, list):
            entries.extend(
                (entry.get("name"), entry) for entry in legacy if isinstance(entry, dict)
            )

        descriptors = []
        seen = set()
        for name, entry in entries:
            if not name or name in seen:
                logger.warning("Skipping server entry without a unique name", server=name)
                continue
            try:
                descriptors.append(ServerDescriptor.from_config(str(name), entry))
                seen.add(name)
            except ConfigurationError as e:
                logger.warning("Skipping invalid server config", server=name, error=e.message)
        return descriptors

    def _load_raw(self) -> Dict[str, Any]:
        if not self.config_file.exists():
            return {}
        try:
            data = self._load_config_file(self.config_file)
        except ConfigurationError as e:
            logger.error("Failed to parse config file", path=str(self.config_file), error=str(e))
            return {}
        if not isinstance(data, dict):
            logger.warning(
                "Invalid config file structure, expected an object",
                path=str(self.config_file),
            )
            return {}
        return data

    def _load_for_update(self) -> Dict[str, Any]:
        """Raw file contents for an edit; a broken file is never overwritten."""
        if not self.config_file.exists():
            return {}
        data = self._load_config_file(self.config_file)
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Invalid config file structure, expected an object: {self.config_file}"
            )
        return data

    @staticmethod
    def _find_entry(raw: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
        servers = raw.get("mcpServers")
        if isinstance(servers, dict) and isinstance(servers.get(name), dict):
            return servers[name]
        legacy = raw.get("servers")
        if isinstance(legacy, list):
            for entry in legacy:
                if isinstance(entry, dict) and entry.get("name") == name:
                    return entry
        return None

    def _save(self, data: Dict[str, Any]) -> None:
        """Write the whole file back in its own format."""
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_file.with_name(self.config_file.name + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                if self.config_file.suffix.lower() in [".yaml", ".yml"]:
                    yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
                else:
                    json.dump(data, f, indent=2)
                    f.write("\n")
            os.replace(tmp_path, self.config_file)
        except OSError as e:
            raise ConfigurationError(
                f"Failed to save configuration file: {self.config_file}",
                {"error": str(e)},
            )

    def _load_config_file(self, file_path: Path) -> Any:
        """Load configuration from YAML or JSON file."""
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                content = f.read()

            if file_path.suffix.lower() == ".json":
                return json.loads(content) if content.strip() else {}
            if file_path.suffix.lower() in [".yaml", ".yml"]:
                return yaml.safe_load(content) or {}
            try:
                return yaml.safe_load(content) or {}
            except yaml.YAMLError:
                return json.loads(content)

        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Invalid configuration file format: {file_path}",
                {"parse_error": str(e)},
            )
        except OSError as e:
            raise ConfigurationError(
                f"Failed to read configuration file: {file_path}",
                {"error": str(e)},
            )

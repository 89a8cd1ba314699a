"""Errors raised by the connection pool, its sessions and the launcher.

Each error carries the HTTP status the control server answers with, so
handlers can convert any of them into an ``{"error": ...}`` response.
"""

from typing import Any, Dict, Optional


class PoolError(Exception):
    """Base error with user-friendly messages."""

    status_code = 500

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.suggestion = suggestion
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to control protocol error body."""
        body: Dict[str, Any] = {"error": self.message}
        if self.suggestion:
            body["suggestion"] = self.suggestion
        return body


class ConfigNotFoundError(PoolError):
    """Backend name is unknown or disabled."""

    status_code = 404

    def __init__(self, server_name: str, disabled: bool = False):
        self.server_name = server_name
        if disabled:
            message = f'Server "{server_name}" is disabled in config.'
        else:
            message = f'Server "{server_name}" not found in config.'
        super().__init__(
            message,
            "Check the configured servers with: mcps servers",
            {"server": server_name, "disabled": disabled},
        )


class ConnectTimeoutError(PoolError):
    """Connect did not finish within its budget."""

    status_code = 504

    def __init__(self, server_name: str, timeout: float):
        self.server_name = server_name
        self.timeout = timeout
        super().__init__(
            f'Timed out connecting to "{server_name}" after {timeout:g}s',
            details={"server": server_name, "timeout": timeout},
        )


class ConnectFailedError(PoolError):
    """Spawn or handshake failed in the protocol client."""

    status_code = 502

    def __init__(self, server_name: str, reason: str):
        self.server_name = server_name
        super().__init__(
            f'Failed to connect to "{server_name}": {reason}',
            details={"server": server_name},
        )


class ListFailedError(PoolError):
    """Connected, but the tool list could not be fetched."""

    status_code = 502

    def __init__(self, server_name: str, reason: str):
        self.server_name = server_name
        super().__init__(
            f'Failed to list tools of "{server_name}": {reason}',
            details={"server": server_name},
        )


class InvocationFailedError(PoolError):
    """The backend reported an error while running a tool."""

    status_code = 500

    def __init__(self, server_name: str, tool_name: str, reason: str):
        self.server_name = server_name
        self.tool_name = tool_name
        super().__init__(reason, details={"server": server_name, "tool": tool_name})


class PortInUseError(PoolError):
    """The control port is held by something that is not an mcps daemon."""

    def __init__(self, port: int):
        self.port = port
        super().__init__(
            f"Port {port} is already in use",
            "Choose a different port with --port or MCPS_PORT",
        )


class DaemonAlreadyRunningError(PoolError):
    """Another live daemon already answers on the control port."""

    def __init__(self, port: int):
        self.port = port
        super().__init__(f"Daemon is already running on port {port}")


class KillFailedError(PoolError):
    """A tracked process could not be terminated (usually already gone)."""

    def __init__(self, pid: int, reason: str):
        self.pid = pid
        super().__init__(f"Could not kill process {pid}: {reason}")


class DaemonStartTimeoutError(PoolError):
    """A spawned daemon did not become ready in time."""

    def __init__(self, timeout: float, log_file: Optional[str] = None):
        self.timeout = timeout
        super().__init__(
            f"Daemon failed to start within {timeout:g}s timeout",
            f"Check the daemon log: {log_file}" if log_file else None,
        )


class DaemonRequestError(PoolError):
    """The daemon answered a control request with an error."""

    def __init__(self, message: str, status_code: int = 500, suggestion: Optional[str] = None):
        super().__init__(message, suggestion)
        self.status_code = status_code

"""Connection pool management: sessions, process tracking and the launcher."""

from .connection_pool import ConnectionPool, InitOutcome, InitPhase, InitReport
from .daemon_launcher import DaemonLauncher
from .exceptions import (
    ConfigNotFoundError,
    ConnectFailedError,
    ConnectTimeoutError,
    DaemonAlreadyRunningError,
    DaemonRequestError,
    DaemonStartTimeoutError,
    InvocationFailedError,
    KillFailedError,
    ListFailedError,
    PoolError,
    PortInUseError,
)
from .process_tracker import CommandLineMatcher, ProcessTracker, PsutilProcessInspector
from .protocol_client import McpProtocolClient
from .session import Session, SessionState

__all__ = [
    "CommandLineMatcher",
    "ConfigNotFoundError",
    "ConnectFailedError",
    "ConnectTimeoutError",
    "ConnectionPool",
    "DaemonAlreadyRunningError",
    "DaemonLauncher",
    "DaemonRequestError",
    "DaemonStartTimeoutError",
    "InitOutcome",
    "InitPhase",
    "InitReport",
    "InvocationFailedError",
    "KillFailedError",
    "ListFailedError",
    "McpProtocolClient",
    "PoolError",
    "PortInUseError",
    "ProcessTracker",
    "PsutilProcessInspector",
    "Session",
    "SessionState",
]

"""Daemon side: control server and runtime."""

from .control_server import ControlServer, ServerState
from .daemon import build_pool, run_daemon

__all__ = ["ControlServer", "ServerState", "build_pool", "run_daemon"]

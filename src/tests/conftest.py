"""Pytest configuration and shared fixtures."""

import asyncio
import json
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from mcps.config import ConfigStore
from mcps.config.settings import DaemonConfig, Settings
from mcps.management.exceptions import KillFailedError
from mcps.management.process_tracker import ProcessTracker

ROOT_PID = 1000

DEFAULT_TOOLS = [
    {
        "name": "echo",
        "description": "Echo the message back",
        "inputSchema": {
            "type": "object",
            "properties": {"message": {"type": "string", "description": "Text to echo"}},
            "required": ["message"],
        },
    },
    {
        "name": "add",
        "inputSchema": {
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
        },
    },
]


class FakeProtocolClient:
    """In-memory stand-in for an MCP client connection."""

    def __init__(
        self,
        tools: Optional[List[Dict[str, Any]]] = None,
        fail_connect: Optional[Exception] = None,
        connect_delay: float = 0.0,
        fail_list: Optional[Exception] = None,
        list_delay: float = 0.0,
        fail_call: Optional[Exception] = None,
        fail_disconnect: Optional[Exception] = None,
        disconnect_delay: float = 0.0,
        on_connect: Optional[Callable[[Any], None]] = None,
    ):
        self.tools = DEFAULT_TOOLS if tools is None else tools
        self.fail_connect = fail_connect
        self.connect_delay = connect_delay
        self.fail_list = fail_list
        self.list_delay = list_delay
        self.fail_call = fail_call
        self.fail_disconnect = fail_disconnect
        self.disconnect_delay = disconnect_delay
        self.on_connect = on_connect

        self.connect_calls = 0
        self.list_calls = 0
        self.disconnect_calls = 0
        self.calls: List[tuple] = []

    async def connect(self, descriptor) -> None:
        self.connect_calls += 1
        if self.on_connect is not None:
            self.on_connect(descriptor)
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.fail_connect is not None:
            raise self.fail_connect

    async def list_tools(self) -> List[Dict[str, Any]]:
        self.list_calls += 1
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.fail_list is not None:
            raise self.fail_list
        return list(self.tools)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append((name, arguments))
        if self.fail_call is not None:
            raise self.fail_call
        if name == "add":
            text = str(arguments.get("a", 0) + arguments.get("b", 0))
        else:
            text = str(arguments.get("message", ""))
        return {"content": [{"type": "text", "text": text}], "isError": False}

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.disconnect_delay:
            await asyncio.sleep(self.disconnect_delay)
        if self.fail_disconnect is not None:
            raise self.fail_disconnect


class FakeClientFactory:
    """Client factory that records every client it hands out."""

    def __init__(self):
        self.behaviours: Dict[str, Dict[str, Any]] = {}
        self.clients: Dict[str, List[FakeProtocolClient]] = defaultdict(list)

    def configure(self, name: str, **behaviour: Any) -> None:
        self.behaviours[name] = behaviour

    def connect_count(self, name: str) -> int:
        return sum(client.connect_calls for client in self.clients[name])

    def __call__(self, descriptor) -> FakeProtocolClient:
        client = FakeProtocolClient(**self.behaviours.get(descriptor.name, {}))
        self.clients[descriptor.name].append(client)
        return client


class FakeInspector:
    """Process table double for the tracker."""

    def __init__(self):
        self.tree = set()
        self.cmdlines: Dict[int, str] = {}
        self.killed: List[int] = []
        self.gone = set()

    def spawn(self, pid: int, cmdline: str) -> None:
        self.tree.add(pid)
        self.cmdlines[pid] = cmdline

    def descendants(self, pid: int):
        return set(self.tree)

    def command_line(self, pid: int) -> Optional[str]:
        return self.cmdlines.get(pid)

    def kill(self, pid: int) -> None:
        self.killed.append(pid)
        if pid in self.gone or pid not in self.tree:
            raise KillFailedError(pid, "no such process")
        self.tree.discard(pid)


@pytest.fixture
def config_path(tmp_path) -> Path:
    return tmp_path / "mcp.json"


@pytest.fixture
def write_config(config_path) -> Callable[..., Path]:
    """Write an mcp.json file and return its path."""

    def _write(mcp_servers: Optional[Dict[str, Any]] = None, **extra: Any) -> Path:
        data = dict(extra)
        if mcp_servers is not None:
            data["mcpServers"] = mcp_servers
        config_path.write_text(json.dumps(data), encoding="utf-8")
        return config_path

    return _write


@pytest.fixture
def http_servers() -> Dict[str, Any]:
    return {
        "alpha": {"url": "http://127.0.0.1:9001/mcp"},
        "beta": {"url": "http://127.0.0.1:9002/mcp"},
        "gamma": {"url": "http://127.0.0.1:9003/sse"},
    }


@pytest.fixture
def config_store(write_config, http_servers) -> ConfigStore:
    return ConfigStore(write_config(http_servers))


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def fake_inspector() -> FakeInspector:
    return FakeInspector()


@pytest.fixture
def tracker(fake_inspector) -> ProcessTracker:
    return ProcessTracker(inspector=fake_inspector, root_pid=ROOT_PID, settle_delay=0)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a temporary config dir, bound to an ephemeral port."""
    return Settings(
        config_dir=tmp_path,
        daemon=DaemonConfig(
            port=0,
            settle_delay=0,
            connect_timeout=5,
            init_timeout=5,
            disconnect_timeout=0.5,
            shutdown_timeout=1,
        ),
    )

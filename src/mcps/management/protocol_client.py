"""Protocol client: one MCP client connection to one backend."""

import asyncio
import contextlib
import dataclasses
import json
import os
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Protocol, Union

import structlog
from mcp.client.session import ClientSession
from mcp.client.sse import sse_client
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import Implementation

from ..__version__ import __version__
from ..config.config_store import ServerDescriptor, ServerKind, resolve_env_placeholders

logger = structlog.get_logger(__name__)

JSONValue = Union[Dict[str, "JSONValue"], List["JSONValue"], str, int, float, bool, None]
JSONObject = Dict[str, JSONValue]


class ProtocolClient(Protocol):
    """What a session needs from a backend connection."""

    async def connect(self, descriptor: ServerDescriptor) -> None:
        ...

    async def list_tools(self) -> List[JSONObject]:
        ...

    async def call_tool(self, name: str, arguments: JSONObject) -> JSONObject:
        ...

    async def disconnect(self) -> None:
        ...


ProtocolClientFactory = Callable[[ServerDescriptor], ProtocolClient]


def to_json(obj: Any) -> Any:
    """Convert SDK result objects into JSON-ready values."""
    if isinstance(obj, dict):
        return obj
    if dataclasses.is_dataclass(obj):
        return dataclasses.asdict(obj)
    if hasattr(obj, "model_dump_json"):
        return json.loads(obj.model_dump_json(exclude_none=True))
    return str(obj)


class McpProtocolClient:
    """MCP client over stdio, streamable HTTP or SSE.

    The transport and ``ClientSession`` context managers are entered and
    exited inside a single background task. Their anyio cancel scopes must
    be left from the task that entered them, and this lets a connect that
    was abandoned by a timeout still be torn down from another task.
    """

    def __init__(self, client_name: str = "mcps", client_version: str = __version__):
        self.client_name = client_name
        self.client_version = client_version
        self._session: Optional[ClientSession] = None
        self._runner: Optional["asyncio.Task[None]"] = None
        self._closing: Optional[asyncio.Event] = None

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def connect(self, descriptor: ServerDescriptor) -> None:
        if self._runner is not None:
            raise RuntimeError("Client already connected")

        ready: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._closing = asyncio.Event()
        self._runner = asyncio.create_task(
            self._run(descriptor, ready, self._closing),
            name=f"mcp-client:{descriptor.name}",
        )
        await ready

    async def list_tools(self) -> List[JSONObject]:
        result = await self._require_session().list_tools()
        return [to_json(tool) for tool in result.tools]

    async def call_tool(self, name: str, arguments: JSONObject) -> JSONObject:
        result = await self._require_session().call_tool(name, arguments)
        return to_json(result)

    async def disconnect(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        if self._closing is not None:
            self._closing.set()
        # cancelling this await cancels the runner as well
        await runner

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError("Client not connected")
        return self._session

    async def _run(
        self,
        descriptor: ServerDescriptor,
        ready: "asyncio.Future[None]",
        closing: asyncio.Event,
    ) -> None:
        try:
            async with contextlib.AsyncExitStack() as stack:
                streams = await stack.enter_async_context(self._open_transport(descriptor))
                session = await stack.enter_async_context(
                    ClientSession(
                        streams[0],
                        streams[1],
                        client_info=Implementation(
                            name=self.client_name, version=self.client_version
                        ),
                    )
                )
                await session.initialize()
                self._session = session
                if not ready.done():
                    ready.set_result(None)
                await closing.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.warning("Transport closed with error", server=descriptor.name, error=str(e))
        finally:
            self._session = None

    def _open_transport(self, descriptor: ServerDescriptor) -> AsyncContextManager[Any]:
        if descriptor.kind is ServerKind.PROCESS:
            resolved_env = {k: resolve_env_placeholders(v) for k, v in descriptor.env.items()}
            params = StdioServerParameters(
                command=descriptor.command,
                args=[resolve_env_placeholders(arg) for arg in descriptor.args],
                env={**os.environ, **resolved_env},
                cwd=descriptor.cwd,
            )
            return stdio_client(params)

        url = resolve_env_placeholders(descriptor.url or "")
        if descriptor.kind is ServerKind.HTTP:
            return streamablehttp_client(url)
        return sse_client(url)


def default_client_factory(descriptor: ServerDescriptor) -> ProtocolClient:
    return McpProtocolClient()

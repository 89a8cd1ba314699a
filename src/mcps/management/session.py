"""A live connection to one backend plus the processes it must clean up."""

import asyncio
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import structlog

from ..config.config_store import ServerDescriptor, ServerKind
from ..config.logging import log_performance, sanitize_log_data
from .exceptions import (
    ConnectFailedError,
    ConnectTimeoutError,
    InvocationFailedError,
    ListFailedError,
)
from .process_tracker import ProcessTracker
from .protocol_client import JSONObject, ProtocolClient

logger = structlog.get_logger(__name__)


class SessionState(str, Enum):
    """Connection state of a session."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Session:
    """Wraps one protocol client connection to one backend."""

    def __init__(
        self,
        descriptor: ServerDescriptor,
        client: ProtocolClient,
        tracker: Optional[ProcessTracker] = None,
        disconnect_timeout: float = 2.0,
    ):
        self.descriptor = descriptor
        self.client = client
        self.disconnect_timeout = disconnect_timeout
        self.state = SessionState.CONNECTING
        self.owned_pids: Set[int] = set()
        self.tools: Optional[List[JSONObject]] = None
        self.connected_at: Optional[float] = None
        # only process-backed sessions spawn anything worth tracking
        self._tracker = tracker if descriptor.kind is ServerKind.PROCESS else None

    @property
    def server_name(self) -> str:
        return self.descriptor.name

    @property
    def kind(self) -> ServerKind:
        return self.descriptor.kind

    @property
    def tool_count(self) -> Optional[int]:
        return len(self.tools) if self.tools is not None else None

    async def connect(self, timeout: float) -> None:
        """Connect, claim spawned processes and fetch the tool list once.

        The handshake and the first tool fetch are each bounded by timeout.
        If anything after the handshake raises or is cancelled, the attempt
        is torn down before the exception propagates.

        Raises:
            ConnectTimeoutError: If the client did not connect within timeout
            ConnectFailedError: If spawn or handshake failed
        """
        self.state = SessionState.CONNECTING
        if self._tracker is not None:
            self._tracker.ensure_baseline()

        logger.info(
            "Connecting to server",
            server=self.server_name,
            kind=self.kind.value,
            command=self.descriptor.command,
            url=self.descriptor.url,
        )
        logger.debug(
            "Server environment",
            server=self.server_name,
            env=sanitize_log_data(self.descriptor.env),
        )

        start_time = time.time()
        try:
            await asyncio.wait_for(self.client.connect(self.descriptor), timeout=timeout)
        except asyncio.TimeoutError:
            self.state = SessionState.ERROR
            await self._abandon()
            raise ConnectTimeoutError(self.server_name, timeout)
        except asyncio.CancelledError:
            self.state = SessionState.ERROR
            await self._abandon()
            raise
        except Exception as e:
            self.state = SessionState.ERROR
            await self._abandon()
            raise ConnectFailedError(self.server_name, str(e) or type(e).__name__) from e

        self.connected_at = time.time()
        log_performance(
            logger,
            "connect",
            (self.connected_at - start_time) * 1000,
            server=self.server_name,
        )

        try:
            if self._tracker is not None:
                self.owned_pids = await self._tracker.discover(self.descriptor)

            try:
                await self.list_tools(refresh=True, timeout=timeout)
            except ListFailedError as e:
                # still usable for direct invocation
                logger.warning("Connected but tool listing failed", server=self.server_name, error=e.message)
                self.state = SessionState.ERROR
                return
        except BaseException:
            self.state = SessionState.ERROR
            await self._abandon()
            raise

        self.state = SessionState.CONNECTED
        logger.info("Server connected", server=self.server_name, tools=self.tool_count)

    async def list_tools(self, refresh: bool = False, timeout: Optional[float] = None) -> List[JSONObject]:
        """Return the cached tool list, fetching it when absent or asked to.

        Raises:
            ListFailedError: If the backend could not enumerate its tools
                or did not answer within timeout
        """
        if self.tools is not None and not refresh:
            return self.tools
        try:
            tools = await asyncio.wait_for(self.client.list_tools(), timeout=timeout)
        except asyncio.TimeoutError as e:
            reason = f"no tool list within {timeout}s" if timeout is not None else "TimeoutError"
            raise ListFailedError(self.server_name, reason) from e
        except Exception as e:
            raise ListFailedError(self.server_name, str(e) or type(e).__name__) from e
        self.tools = list(tools)
        if self.state is SessionState.ERROR and self.connected_at is not None:
            self.state = SessionState.CONNECTED
        return self.tools

    async def call_tool(self, tool_name: str, arguments: JSONObject) -> JSONObject:
        """Invoke a tool.

        Raises:
            InvocationFailedError: If the backend reported an error
        """
        logger.info(
            "Tool request",
            server=self.server_name,
            tool=tool_name,
            args=sanitize_log_data(arguments),
        )
        start_time = time.time()
        try:
            result = await self.client.call_tool(tool_name, arguments)
        except Exception as e:
            logger.warning(
                "Tool request failed",
                server=self.server_name,
                tool=tool_name,
                error=str(e) or type(e).__name__,
            )
            raise InvocationFailedError(
                self.server_name, tool_name, str(e) or type(e).__name__
            ) from e
        logger.info(
            "Tool response",
            server=self.server_name,
            tool=tool_name,
            is_error=bool(result.get("isError")) if isinstance(result, dict) else False,
            duration_ms=round((time.time() - start_time) * 1000, 1),
            result=result,
        )
        return result

    async def close(self) -> None:
        """Kill owned processes, then try to disconnect within a bound."""
        if self.owned_pids and self._tracker is not None:
            logger.info(
                "Killing owned processes",
                server=self.server_name,
                pids=sorted(self.owned_pids),
            )
            self._tracker.kill(self.owned_pids)
        self.owned_pids = set()

        try:
            await asyncio.wait_for(self.client.disconnect(), timeout=self.disconnect_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Disconnect timed out, abandoning transport",
                server=self.server_name,
                timeout=self.disconnect_timeout,
            )
        except Exception as e:
            logger.warning("Error while disconnecting", server=self.server_name, error=str(e))

    def to_dict(self) -> Dict[str, Any]:
        """Status entry for the control protocol."""
        return {
            "name": self.server_name,
            "toolsCount": self.tool_count,
            "status": self.state.value,
        }

    async def _abandon(self) -> None:
        """Tear down a failed connect attempt and anything it spawned."""
        claimed = set(self.owned_pids)
        self.owned_pids = set()
        if claimed and self._tracker is not None:
            logger.info(
                "Killing processes claimed by failed connect",
                server=self.server_name,
                pids=sorted(claimed),
            )
            self._tracker.kill(claimed)

        try:
            await asyncio.wait_for(self.client.disconnect(), timeout=self.disconnect_timeout)
        except asyncio.TimeoutError:
            logger.warning("Abandoned connect did not shut down in time", server=self.server_name)
        except Exception as e:
            logger.debug("Abandoned connect raised on disconnect", server=self.server_name, error=str(e))

        if self._tracker is not None:
            orphans = await self._tracker.discover(self.descriptor)
            if orphans:
                logger.info(
                    "Killing processes left by failed connect",
                    server=self.server_name,
                    pids=sorted(orphans),
                )
                self._tracker.kill(orphans)

"""Registry of live backend sessions owned by the daemon."""

import asyncio
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from ..config.config_store import ConfigStore, ServerDescriptor
from .exceptions import ConfigNotFoundError, PoolError
from .process_tracker import ProcessTracker
from .protocol_client import JSONObject, ProtocolClientFactory, default_client_factory
from .session import Session, SessionState

logger = structlog.get_logger(__name__)


class InitPhase(str, Enum):
    """Bulk initialization progress."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"


@dataclass
class InitOutcome:
    """Result of connecting one backend during bulk initialization."""

    name: str
    success: bool
    message: str


@dataclass
class InitReport:
    """Accumulated outcomes of one ``initialize_all`` run."""

    outcomes: List[InitOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return [o.name for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[str]:
        return [o.name for o in self.outcomes if not o.success]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "outcomes": [asdict(o) for o in self.outcomes],
        }


class ConnectionPool:
    """Owns every session, keyed by backend name.

    Creation, close and restart of a given name are serialized by a
    per-name lock, so concurrent ``get_or_create`` calls for one backend
    never connect twice: the later caller waits and reuses the result.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        client_factory: Optional[ProtocolClientFactory] = None,
        tracker: Optional[ProcessTracker] = None,
        connect_timeout: float = 30.0,
        init_timeout: float = 30.0,
        disconnect_timeout: float = 2.0,
    ):
        self.config_store = config_store
        self.client_factory = client_factory or default_client_factory
        self.tracker = tracker or ProcessTracker()
        self.connect_timeout = connect_timeout
        self.init_timeout = init_timeout
        self.disconnect_timeout = disconnect_timeout

        self.sessions: Dict[str, Session] = {}
        self.init_phase = InitPhase.IDLE
        self.last_report: Optional[InitReport] = None
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def resolve(self, name: str) -> ServerDescriptor:
        """Look up an enabled descriptor.

        Raises:
            ConfigNotFoundError: If the name is unknown or disabled
        """
        descriptor = self.config_store.get(name)
        if descriptor is None:
            raise ConfigNotFoundError(name)
        if not descriptor.enabled:
            raise ConfigNotFoundError(name, disabled=True)
        return descriptor

    async def get_or_create(self, name: str, connect_timeout: Optional[float] = None) -> Session:
        """Return the live session for ``name``, connecting it if needed."""
        session = self.sessions.get(name)
        if session is not None:
            return session

        async with self._lock_for(name):
            # another caller may have connected while we waited
            session = self.sessions.get(name)
            if session is not None:
                return session

            descriptor = self.resolve(name)
            session = Session(
                descriptor,
                self.client_factory(descriptor),
                tracker=self.tracker,
                disconnect_timeout=self.disconnect_timeout,
            )
            timeout = connect_timeout if connect_timeout is not None else self.connect_timeout
            await session.connect(timeout)
            self.sessions[name] = session
            return session

    async def close(self, name: str) -> bool:
        """Close and forget one session. Returns whether one existed."""
        async with self._lock_for(name):
            session = self.sessions.pop(name, None)
            if session is None:
                return False
            logger.info("Closing connection", server=name)
            await self._close_session(session)
            return True

    async def close_all(self) -> None:
        """Close every session; the registry is always empty afterwards."""
        try:
            for name in list(self.sessions):
                try:
                    await self.close(name)
                except Exception as e:
                    logger.error("Error closing connection", server=name, error=str(e))
        finally:
            self.sessions.clear()

    async def initialize_all(self) -> InitReport:
        """Connect every enabled backend in turn, tolerating failures."""
        self.init_phase = InitPhase.INITIALIZING
        report = InitReport()
        try:
            descriptors = self.config_store.list_enabled()
            logger.info("Initializing servers", count=len(descriptors))

            for descriptor in descriptors:
                try:
                    session = await self.get_or_create(descriptor.name, self.init_timeout)
                except PoolError as e:
                    report.outcomes.append(InitOutcome(descriptor.name, False, e.message))
                    logger.error("Server failed to initialize", server=descriptor.name, error=e.message)
                    continue
                except Exception as e:
                    report.outcomes.append(InitOutcome(descriptor.name, False, str(e)))
                    logger.exception("Unexpected error initializing server", server=descriptor.name)
                    continue

                if session.state is SessionState.CONNECTED:
                    message = f"Connected ({session.tool_count} tools)"
                else:
                    message = "Connected, but listing tools failed"
                report.outcomes.append(InitOutcome(descriptor.name, True, message))
        finally:
            self.init_phase = InitPhase.READY
            self.last_report = report

        logger.info(
            "Initialization finished",
            connected=len(report.succeeded),
            failed=len(report.failed),
        )
        return report

    async def restart(self, name: str) -> Session:
        """Reconnect one backend in place; others are untouched."""
        self.resolve(name)
        await self.close(name)
        return await self.get_or_create(name)

    async def restart_all(self) -> InitReport:
        """Close everything and run bulk initialization again."""
        self.init_phase = InitPhase.INITIALIZING
        await self.close_all()
        return await self.initialize_all()

    async def list_tools(self, name: str) -> List[JSONObject]:
        session = await self.get_or_create(name)
        return await session.list_tools(timeout=self.connect_timeout)

    async def call_tool(self, name: str, tool_name: str, arguments: JSONObject) -> JSONObject:
        session = await self.get_or_create(name)
        return await session.call_tool(tool_name, arguments)

    async def get_details(self, include_counts: bool = True) -> List[Dict[str, Any]]:
        """Per-session status using cached tool counts.

        With ``include_counts`` a connected session whose count was never
        fetched gets one fetch attempt; cached counts are never refreshed.
        """
        details = []
        for session in list(self.sessions.values()):
            if include_counts and session.tool_count is None and session.state is SessionState.CONNECTED:
                try:
                    await session.list_tools(timeout=self.connect_timeout)
                except PoolError as e:
                    logger.debug("Tool count unavailable", server=session.server_name, error=e.message)
            details.append(session.to_dict())
        return details

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the initialization phase and session states."""
        return {
            "phase": self.init_phase.value,
            "initializing": self.init_phase is InitPhase.INITIALIZING,
            "initialized": self.init_phase is InitPhase.READY,
            "connections": [session.to_dict() for session in self.sessions.values()],
        }

    async def _close_session(self, session: Session) -> None:
        try:
            await session.close()
        except Exception as e:
            logger.error("Error closing connection", server=session.server_name, error=str(e))

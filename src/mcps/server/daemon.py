"""Daemon runtime: wire the pool to the control server and run until stopped."""

import asyncio
import signal
from typing import Optional

import structlog

from ..config.config_store import ConfigStore
from ..config.settings import Settings
from ..management.connection_pool import ConnectionPool
from ..management.process_tracker import ProcessTracker
from ..management.protocol_client import ProtocolClientFactory
from .control_server import ControlServer

logger = structlog.get_logger(__name__)


def _handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Keep the daemon alive on stray task errors; log them instead."""
    exception = context.get("exception")
    logger.error(
        "Unhandled error in daemon",
        message=context.get("message"),
        error=str(exception) if exception else None,
        exc_info=exception,
    )


def build_pool(
    settings: Settings,
    client_factory: Optional[ProtocolClientFactory] = None,
) -> ConnectionPool:
    """Create a connection pool from settings."""
    return ConnectionPool(
        ConfigStore(settings.config_file),
        client_factory=client_factory,
        tracker=ProcessTracker(settle_delay=settings.daemon.settle_delay),
        connect_timeout=settings.daemon.connect_timeout,
        init_timeout=settings.daemon.init_timeout,
        disconnect_timeout=settings.daemon.disconnect_timeout,
    )


async def run_daemon(
    settings: Settings,
    client_factory: Optional[ProtocolClientFactory] = None,
) -> None:
    """Serve the control protocol until a stop request or signal arrives.

    Binding happens before any backend is contacted, so a second daemon on
    the same port fails fast without spawning anything.

    Raises:
        DaemonAlreadyRunningError: If a live daemon already owns the port
        PortInUseError: If another program owns the port
    """
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_handle_loop_exception)

    pool = build_pool(settings, client_factory)
    server = ControlServer(
        pool,
        host=settings.daemon.host,
        port=settings.daemon.port,
        shutdown_timeout=settings.daemon.shutdown_timeout,
    )
    await server.start()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, server.request_stop)
        except (NotImplementedError, RuntimeError):
            # signal handlers are unavailable off the main thread and on Windows
            logger.debug("Signal handler not installed", signal=sig.name)

    logger.info(
        "Daemon started",
        host=server.host,
        port=server.port,
        config=str(settings.config_file),
    )

    init_task = asyncio.create_task(pool.initialize_all(), name="mcps-initialize")
    try:
        await server.wait_for_stop()
    finally:
        logger.info("Shutting down daemon")
        if not init_task.done():
            init_task.cancel()
        try:
            await init_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Initialization failed", error=str(e))

        await server.shutdown()
        await pool.close_all()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass
        logger.info("Daemon stopped")

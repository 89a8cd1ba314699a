"""Local HTTP control protocol exposing the connection pool."""

import asyncio
import errno
import os
import time
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import structlog
from aiohttp import web

from ..__version__ import __version__
from ..config.logging import log_api_request
from ..config.settings import DEFAULT_HOST, DEFAULT_PORT
from ..management.connection_pool import ConnectionPool
from ..management.daemon_launcher import DaemonLauncher
from ..management.exceptions import (
    DaemonAlreadyRunningError,
    PoolError,
    PortInUseError,
)

logger = structlog.get_logger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

# Gives the /stop response time to reach the client before shutdown begins.
STOP_DELAY = 0.1


class ServerState(str, Enum):
    """Lifecycle of the control listener."""

    STARTING = "starting"
    LISTENING = "listening"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _read_body(request: web.Request) -> Tuple[Dict[str, Any], Optional[web.Response]]:
    """Parse a JSON object body; an empty body is an empty object."""
    if not request.body_exists:
        return {}, None
    try:
        body = await request.json()
    except ValueError:
        return {}, _error("Invalid JSON body", 400)
    if body is None:
        return {}, None
    if not isinstance(body, dict):
        return {}, _error("Request body must be a JSON object", 400)
    return body, None


class ControlServer:
    """Serves the control protocol; every endpoint delegates to the pool."""

    def __init__(
        self,
        pool: ConnectionPool,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        shutdown_timeout: float = 5.0,
    ):
        self.pool = pool
        self.host = host
        self.port = port
        self.shutdown_timeout = shutdown_timeout
        self.state = ServerState.STARTING
        self._runner: Optional[web.AppRunner] = None
        self._stop_event = asyncio.Event()

    def create_app(self) -> web.Application:
        """Build the aiohttp application with routes and middleware."""

        @web.middleware
        async def control_middleware(request: web.Request, handler):
            start_time = time.time()
            if self.state is not ServerState.LISTENING and request.method != "OPTIONS":
                response = _error("Daemon is shutting down", 503)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as exc:
                    exc.headers.update(CORS_HEADERS)
                    log_api_request(
                        logger, request.method, request.path,
                        (time.time() - start_time) * 1000, exc.status,
                    )
                    raise
                except PoolError as e:
                    response = web.json_response(e.to_dict(), status=e.status_code)
                except Exception as e:
                    logger.exception("Unhandled error in control handler", path=request.path)
                    response = _error(str(e) or type(e).__name__, 500)

            response.headers.update(CORS_HEADERS)
            log_api_request(
                logger, request.method, request.path,
                (time.time() - start_time) * 1000, response.status,
            )
            return response

        app = web.Application(middlewares=[control_middleware])
        app.router.add_get("/status", self.handle_status)
        app.router.add_post("/call", self.handle_call)
        app.router.add_post("/list", self.handle_list)
        app.router.add_post("/restart", self.handle_restart)
        app.router.add_post("/stop", self.handle_stop)
        app.router.add_route("OPTIONS", "/{tail:.*}", self.handle_preflight)
        return app

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_status(self, request: web.Request) -> web.Response:
        try:
            connections = await self.pool.get_details(include_counts=True)
        except Exception as e:
            logger.warning("Failed to collect connection details", error=str(e))
            connections = self.pool.get_status()["connections"]
        status = self.pool.get_status()
        return web.json_response({
            "status": "running",
            "version": __version__,
            "pid": os.getpid(),
            "connections": connections,
            "initializing": status["initializing"],
            "initialized": status["initialized"],
        })

    async def handle_call(self, request: web.Request) -> web.Response:
        body, error = await _read_body(request)
        if error is not None:
            return error

        server, tool = body.get("server"), body.get("tool")
        if not server or not tool:
            return _error("Missing server or tool", 400)
        args = body.get("args")
        if args is None:
            args = {}
        if not isinstance(args, dict):
            return _error("Tool arguments must be a JSON object", 400)

        try:
            result = await self.pool.call_tool(server, tool, args)
        except PoolError as e:
            logger.error("Error executing tool", server=server, tool=tool, error=e.message)
            raise
        return web.json_response({"result": result})

    async def handle_list(self, request: web.Request) -> web.Response:
        body, error = await _read_body(request)
        if error is not None:
            return error

        server = body.get("server")
        if not server:
            return _error("Missing server", 400)
        tools = await self.pool.list_tools(server)
        return web.json_response({"tools": tools})

    async def handle_restart(self, request: web.Request) -> web.Response:
        body, error = await _read_body(request)
        if error is not None:
            return error

        server = body.get("server")
        if server:
            await self.pool.restart(server)
            return web.json_response({"message": f"Server {server} restarted"})

        report = await self.pool.restart_all()
        return web.json_response({
            "message": (
                f"Restarted all servers: {len(report.succeeded)} connected, "
                f"{len(report.failed)} failed"
            ),
            "report": report.to_dict(),
        })

    async def handle_stop(self, request: web.Request) -> web.Response:
        logger.info("Stop requested over control protocol")
        asyncio.get_running_loop().call_later(STOP_DELAY, self.request_stop)
        return web.json_response({"message": "Daemon stopping"})

    async def handle_preflight(self, request: web.Request) -> web.Response:
        return web.Response(status=204)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bind the listener.

        Raises:
            DaemonAlreadyRunningError: If a live daemon owns the port
            PortInUseError: If anything else owns the port
        """
        self.state = ServerState.STARTING
        runner = web.AppRunner(
            self.create_app(),
            access_log=None,
            shutdown_timeout=self.shutdown_timeout,
        )
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            self.state = ServerState.STOPPED
            if e.errno != errno.EADDRINUSE:
                raise
            if await self._is_daemon_listening():
                raise DaemonAlreadyRunningError(self.port)
            raise PortInUseError(self.port)

        self._runner = runner
        # resolves port 0 to the ephemeral port actually bound
        self.port = runner.addresses[0][1]
        self.state = ServerState.LISTENING
        logger.info("Control server listening", host=self.host, port=self.port)

    def request_stop(self) -> None:
        self._stop_event.set()

    async def wait_for_stop(self) -> None:
        await self._stop_event.wait()

    async def shutdown(self) -> None:
        """Stop accepting requests and let in-flight ones complete."""
        if self.state is ServerState.STOPPED:
            return
        self.state = ServerState.SHUTTING_DOWN
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self.state = ServerState.STOPPED
        logger.info("Control server stopped")

    async def _is_daemon_listening(self) -> bool:
        status = await DaemonLauncher(self.host, self.port).get_status()
        return bool(status) and status.get("status") == "running" and "connections" in status

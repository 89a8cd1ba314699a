"""Client side of the control protocol: find, start and talk to the daemon."""

import asyncio
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from ..config.settings import DEFAULT_HOST, DEFAULT_PORT
from .exceptions import DaemonRequestError, DaemonStartTimeoutError, PoolError

logger = structlog.get_logger(__name__)


class DaemonLauncher:
    """Probes for a live daemon, spawns one if absent, and sends requests."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        verbose: bool = False,
        log_dir: Optional[Path] = None,
        poll_interval: float = 0.2,
        request_timeout: Optional[float] = None,
    ):
        """Initialize the launcher.

        Args:
            host: Control listener host
            port: Control listener port
            verbose: Propagate verbose logging to a spawned daemon
            log_dir: Where a spawned daemon writes stdout/stderr (default: ~/.mcps/logs)
            poll_interval: Seconds between readiness probes
            request_timeout: Total timeout for control requests (None waits forever)
        """
        self.host = host
        self.port = port
        self.verbose = verbose
        self.log_dir = log_dir or (Path.home() / ".mcps" / "logs")
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def get_status(self) -> Optional[Dict[str, Any]]:
        """Return the daemon's status body, or None if nothing answers."""
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=5)
            ) as session:
                async with session.get(f"{self.base_url}/status") as response:
                    if response.status != 200:
                        return None
                    return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
            return None

    async def is_running(self) -> bool:
        """Check whether a daemon answers on the control port."""
        return await self.get_status() is not None

    async def ensure_daemon(self, timeout: float = 30.0) -> None:
        """Make sure a daemon is reachable, starting one when it is not."""
        if await self.is_running():
            return
        await self.start_daemon(timeout)

    async def start_daemon(self, timeout: float = 30.0) -> None:
        """Spawn a detached daemon and wait until it finished initializing.

        Raises:
            DaemonStartTimeoutError: If it is not ready within timeout
            PoolError: If the spawned process exits before becoming ready
        """
        process, stderr_log = self._spawn_daemon_process()

        start_time = time.time()
        while time.time() - start_time < timeout:
            status = await self.get_status()
            if status is not None and status.get("initialized"):
                logger.info(
                    "Daemon is ready",
                    port=self.port,
                    startup_time=round(time.time() - start_time, 2),
                )
                return

            return_code = process.poll()
            if return_code is not None and status is None:
                # a daemon that lost a start race exits 0 while the winner boots
                if return_code == 0:
                    await asyncio.sleep(self.poll_interval)
                    continue
                raise PoolError(
                    f"Daemon process exited with code {return_code}",
                    f"Check the daemon log: {stderr_log}",
                )

            await asyncio.sleep(self.poll_interval)

        raise DaemonStartTimeoutError(timeout, str(stderr_log))

    async def stop_daemon(self) -> bool:
        """Ask a running daemon to stop. Returns False if none was running."""
        if not await self.is_running():
            return False
        await self.request("POST", "/stop")
        return True

    async def call_tool(self, server: str, tool: str, args: Optional[Dict[str, Any]] = None) -> Any:
        data = await self.request(
            "POST", "/call", {"server": server, "tool": tool, "args": args or {}}
        )
        return data.get("result")

    async def list_tools(self, server: str) -> List[Dict[str, Any]]:
        data = await self.request("POST", "/list", {"server": server})
        return data.get("tools") or []

    async def restart(self, server: Optional[str] = None) -> Dict[str, Any]:
        payload = {"server": server} if server else {}
        return await self.request("POST", "/restart", payload)

    async def request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Send one control request and return its JSON body.

        Raises:
            DaemonRequestError: On a non-2xx answer, with the daemon's message,
                or with status 503 when the daemon cannot be reached
        """
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method, f"{self.base_url}{path}", json=payload
                ) as response:
                    try:
                        data = await response.json(content_type=None)
                    except ValueError:
                        data = {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("Control request failed", path=path, port=self.port, error=str(e))
            raise DaemonRequestError(
                "Daemon is not reachable",
                503,
                f"Check the daemon with: mcps --port {self.port} status",
            ) from e

        if response.status >= 400:
            message = (data or {}).get("error") or f"Daemon error (HTTP {response.status})"
            raise DaemonRequestError(message, response.status)
        return data or {}

    def _spawn_daemon_process(self):
        """Start ``python -m mcps daemon`` detached from this session."""
        cmd = [sys.executable, "-m", "mcps", "--port", str(self.port), "daemon"]

        env = os.environ.copy()
        env.update({
            "MCPS_HOST": self.host,
            "MCPS_PORT": str(self.port),
            "PYTHONUNBUFFERED": "1",
        })
        if self.verbose:
            env["MCPS_VERBOSE"] = "1"

        self.log_dir.mkdir(parents=True, exist_ok=True)
        stdout_log = self.log_dir / "daemon.out"
        stderr_log = self.log_dir / "daemon.err"

        logger.info("Starting background daemon", port=self.port, log=str(stderr_log))
        with open(stdout_log, "ab") as stdout, open(stderr_log, "ab") as stderr:
            process = subprocess.Popen(
                cmd,
                env=env,
                stdout=stdout,
                stderr=stderr,
                stdin=subprocess.DEVNULL,
                start_new_session=True,  # Detach from parent session
            )
        return process, stderr_log

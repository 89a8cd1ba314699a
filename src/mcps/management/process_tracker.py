"""Discovery and cleanup of processes spawned while connecting a backend.

The protocol client only hands back the process it launched directly.
Launchers such as ``npx`` or ``uvx`` fork the real server as a grandchild,
so killing the direct child can leave the worker running. The tracker keeps
a running snapshot of the daemon's descendants and, after each connect,
claims the new descendants whose command line looks like the configured
server.
"""

import asyncio
import os
from typing import Dict, Iterable, Optional, Protocol, Sequence, Set, Tuple

import psutil
import structlog

from ..config.config_store import ServerDescriptor
from .exceptions import KillFailedError

logger = structlog.get_logger(__name__)

# Command line fragments that identify the worker a runner launches.
WRAPPER_SIGNATURES: Dict[str, Tuple[str, ...]] = {
    "npx": ("npm exec", "npx-cli", "/_npx/"),
    "pnpx": ("pnpm dlx", "/dlx-"),
    "bunx": ("bun x", "/bunx-"),
    "uvx": ("uv tool run", "/uv/tools/", "/uv/archive-"),
    "pipx": ("pipx run", "/pipx/"),
    "yarn": ("yarn dlx",),
}

# Arguments longer than this are distinctive enough to identify a process.
DEFAULT_MIN_TOKEN_LENGTH = 10


class ProcessInspector(Protocol):
    """OS access the tracker needs; swap it out to test or harden discovery."""

    def descendants(self, pid: int) -> Set[int]:
        ...

    def command_line(self, pid: int) -> Optional[str]:
        ...

    def kill(self, pid: int) -> None:
        ...


class PsutilProcessInspector:
    """Process inspection backed by psutil."""

    def descendants(self, pid: int) -> Set[int]:
        try:
            return {child.pid for child in psutil.Process(pid).children(recursive=True)}
        except psutil.NoSuchProcess:
            return set()

    def command_line(self, pid: int) -> Optional[str]:
        try:
            return " ".join(psutil.Process(pid).cmdline())
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

    def kill(self, pid: int) -> None:
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            raise KillFailedError(pid, "process no longer exists")
        except psutil.AccessDenied:
            raise KillFailedError(pid, "access denied")


def _base_name(command: str) -> str:
    name = os.path.basename(command)
    for suffix in (".exe", ".cmd", ".bat"):
        if name.lower().endswith(suffix):
            return name[: -len(suffix)]
    return name


def _package_argument(args: Sequence[str]) -> Optional[str]:
    """First positional argument with any ``@version`` suffix dropped."""
    for arg in args:
        if arg.startswith("-"):
            continue
        # keep the scope of "@scope/pkg@1.2"
        at = arg.rfind("@")
        return arg[:at] if at > 0 else arg
    return None


class CommandLineMatcher:
    """Decides whether a candidate process belongs to a descriptor.

    A candidate matches when its command line contains the configured
    executable's base name, a signature of the wrapper that executable is
    known to be, the package a wrapper was asked to run, or any configured
    argument longer than ``min_token_length``. It is a heuristic: two
    sessions spawning similarly named processes at once can claim each
    other's processes. Concurrent connects can also leave a worker
    unclaimed; see ``ProcessTracker.discover``.
    """

    def __init__(
        self,
        min_token_length: int = DEFAULT_MIN_TOKEN_LENGTH,
        wrapper_signatures: Optional[Dict[str, Tuple[str, ...]]] = None,
    ):
        self.min_token_length = min_token_length
        self.wrapper_signatures = (
            WRAPPER_SIGNATURES if wrapper_signatures is None else wrapper_signatures
        )

    def matches(self, command_line: Optional[str], descriptor: ServerDescriptor) -> bool:
        if not command_line or not descriptor.command:
            return False

        executable = _base_name(descriptor.command)
        if executable and executable in command_line:
            return True

        signatures = self.wrapper_signatures.get(executable)
        if signatures is not None:
            if any(signature in command_line for signature in signatures):
                return True
            package = _package_argument(descriptor.args)
            if package and package in command_line:
                return True

        return any(
            len(arg) > self.min_token_length and arg in command_line
            for arg in descriptor.args
        )


class ProcessTracker:
    """Snapshot-diff discovery of processes owned by process-backed sessions."""

    def __init__(
        self,
        inspector: Optional[ProcessInspector] = None,
        matcher: Optional[CommandLineMatcher] = None,
        root_pid: Optional[int] = None,
        settle_delay: float = 0.5,
    ):
        self.inspector = inspector or PsutilProcessInspector()
        self.matcher = matcher or CommandLineMatcher()
        self.root_pid = root_pid if root_pid is not None else os.getpid()
        self.settle_delay = settle_delay
        self._known: Optional[Set[int]] = None

    @property
    def known_pids(self) -> Set[int]:
        """The running global snapshot new connects are diffed against."""
        return set(self._known or ())

    def snapshot(self) -> Set[int]:
        """All current descendants of the daemon, never the daemon itself."""
        pids = self.inspector.descendants(self.root_pid)
        pids.discard(self.root_pid)
        return pids

    def ensure_baseline(self) -> None:
        """Take the first global snapshot if none exists yet."""
        if self._known is None:
            self._known = self.snapshot()

    async def discover(self, descriptor: ServerDescriptor) -> Set[int]:
        """Claim processes that appeared since the last snapshot.

        Call after the protocol client has connected. The global snapshot is
        advanced to the current one whether or not anything matched, so a
        new process that did not match is never offered again. When two
        process backends connect at the same time, the worker of the one
        discovered second may already be in the snapshot and go unclaimed;
        it is then left running when that session closes.
        """
        self.ensure_baseline()
        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)

        current = self.snapshot()
        candidates = current - (self._known or set())
        candidates.discard(self.root_pid)

        owned = set()
        for pid in sorted(candidates):
            command_line = self.inspector.command_line(pid)
            if self.matcher.matches(command_line, descriptor):
                owned.add(pid)
            else:
                logger.debug(
                    "Ignoring unrelated new process",
                    server=descriptor.name,
                    pid=pid,
                    cmdline=command_line,
                )

        self._known = current
        if owned:
            logger.info(
                "Tracking processes for server",
                server=descriptor.name,
                pids=sorted(owned),
            )
        return owned

    def kill(self, pids: Iterable[int]) -> None:
        """Force-terminate every pid; failures are logged, never raised."""
        for pid in list(pids):
            if pid == self.root_pid:
                continue
            try:
                self.inspector.kill(pid)
                logger.debug("Killed tracked process", pid=pid)
            except KillFailedError as e:
                logger.debug("Kill skipped", pid=pid, error=e.message)
            except OSError as e:
                logger.warning("Failed to kill tracked process", pid=pid, error=str(e))
            if self._known is not None:
                self._known.discard(pid)

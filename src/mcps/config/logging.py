"""structlog setup shared by the CLI and the daemon.

A detached daemon writes to stderr, which the launcher redirects into
``<log_dir>/daemon.err``. An optional rotating log file receives the same
events. The helpers below keep event names and fields uniform across
modules.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import structlog
from structlog.types import FilteringBoundLogger

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3

REDACTED = "[REDACTED]"

# Matched against lowercased keys with "_" and "-" removed.
_SECRET_MARKERS = (
    "token",
    "secret",
    "password",
    "passwd",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "jwt",
)

# Handlers added by configure_logging, replaced on the next call.
_installed_handlers: List[logging.Handler] = []


class _StderrHandler(logging.StreamHandler):
    """Writes to whatever ``sys.stderr`` is when a record is emitted."""

    def __init__(self, level: int = logging.NOTSET):
        logging.Handler.__init__(self, level)

    @property
    def stream(self):
        return sys.stderr


def configure_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_logs: bool = False,
) -> FilteringBoundLogger:
    """Route structlog events through stdlib logging at ``level``.

    Calling it again swaps out the handlers from the previous call, so the
    CLI can set a quiet level and the ``daemon`` command can replace it.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    root = logging.getLogger()
    while _installed_handlers:
        handler = _installed_handlers.pop()
        root.removeHandler(handler)
        handler.close()

    handlers: List[logging.Handler] = [_StderrHandler()]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=LOG_FILE_MAX_BYTES,
                backupCount=LOG_FILE_BACKUPS,
                encoding="utf-8",
            )
        )
    for handler in handlers:
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
        _installed_handlers.append(handler)
    root.setLevel(numeric_level)

    if json_logs:
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        # no colour codes once a file shares the output
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty() and not log_file)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("mcps")


def log_performance(
    logger: FilteringBoundLogger,
    operation: str,
    duration_ms: float,
    **context: Any
) -> None:
    """Emit a ``Performance metric`` event for a timed operation."""
    logger.info(
        "Performance metric",
        operation=operation,
        duration_ms=round(duration_ms, 1),
        metric_type="performance",
        **context
    )


def log_api_request(
    logger: FilteringBoundLogger,
    method: str,
    endpoint: str,
    response_time_ms: float,
    status_code: int,
    **context: Any
) -> None:
    """Log one control protocol request.

    Successful requests are debug noise; server-side failures are warnings
    so they show up in the daemon log at the default level.
    """
    log = logger.warning if status_code >= 500 else logger.debug
    log(
        "API request",
        http_method=method,
        endpoint=endpoint,
        response_time_ms=round(response_time_ms, 1),
        status_code=status_code,
        metric_type="api_request",
        **context
    )


def is_secret_key(key: str) -> bool:
    """Whether a config or argument key names a credential.

    ``GITHUB_TOKEN``, ``apiKey`` and ``OPENAI_API_KEY`` all match; so does
    any key ending in ``key``.
    """
    normalized = key.lower().replace("_", "").replace("-", "")
    return normalized.endswith("key") or any(m in normalized for m in _SECRET_MARKERS)


def sanitize_log_data(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy a server env map or tool arguments with credentials masked.

    Nested mappings are walked; other values are kept as they are.
    """
    sanitized: Dict[str, Any] = {}
    for key, value in data.items():
        if is_secret_key(str(key)):
            sanitized[key] = REDACTED
        elif isinstance(value, Mapping):
            sanitized[key] = sanitize_log_data(value)
        else:
            sanitized[key] = value
    return sanitized

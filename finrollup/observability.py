"""
Observability for reconciliation passes: structured logging, request IDs, timing.

Usage:
    from finrollup.observability import setup_logging, get_logger, request_context

    # At application startup:
    setup_logging()

    # In modules:
    logger = get_logger(__name__)

    # Around one reconciliation pass:
    with request_context() as request_id:
        logger.info("Reconciling", extra={"organization_id": org_id})
"""
import asyncio
import functools
import json
import logging
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

# Context variable for the reconciliation request ID
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes every LogRecord has; anything else came in through `extra=`
_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName",
}


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return _request_id.get()


def generate_request_id() -> str:
    """Generate a new short request ID."""
    return uuid.uuid4().hex[:8]


class request_context:
    """Context manager binding a request ID to the current task."""

    def __init__(self, request_id: Optional[str] = None):
        self.request_id = request_id or generate_request_id()
        self.token = None

    def __enter__(self) -> str:
        self.token = _request_id.set(self.request_id)
        return self.request_id

    def __exit__(self, *args):
        _request_id.reset(self.token)


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """
    JSON log formatter.

    Outputs timestamp, level, logger, message, request_id (if set),
    extra fields and exception info.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = get_request_id()
        if request_id:
            log_entry["request_id"] = request_id

        log_entry.update(_extras(record))

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable log formatter with request ID.

    Format: TIMESTAMP - LEVEL - LOGGER [REQUEST_ID] - MESSAGE | extras
    """

    def format(self, record: logging.LogRecord) -> str:
        request_id = get_request_id()
        request_str = f" [{request_id}]" if request_id else ""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        base_msg = f"{timestamp} - {record.levelname:8} - {record.name}{request_str} - {record.getMessage()}"

        extras = _extras(record)
        if extras:
            base_msg += f" | {extras}"

        if record.exc_info:
            base_msg += f"\n{self.formatException(record.exc_info)}"

        return base_msg


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """
    Configure logging for the engine.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, output JSON logs; otherwise human-readable
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


# ═══════════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Context manager for timing operations.

    Usage:
        with Timer("fetch_daily_rollup", logger) as t:
            rows = await gateway.fetch_daily_rollup(...)
        print(f"Fetch took {t.elapsed_ms}ms")
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None, warn_ms: float = 1000):
        self.name = name
        self.logger = logger
        self.warn_ms = warn_ms
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000

        if self.logger:
            level = logging.WARNING if self.elapsed_ms > self.warn_ms else logging.DEBUG
            self.logger.log(
                level,
                f"{self.name} completed",
                extra={"duration_ms": round(self.elapsed_ms, 2)}
            )


def timed(name: Optional[str] = None, warn_threshold_ms: float = 1000):
    """
    Decorator for timing async function execution.

    Args:
        name: Operation name (defaults to function name)
        warn_threshold_ms: Log at WARNING level if exceeds this threshold
    """
    def decorator(func: Callable) -> Callable:
        operation_name = name or func.__name__
        func_logger = get_logger(func.__module__)

        if not asyncio.iscoroutinefunction(func):
            raise TypeError("timed() only wraps coroutine functions")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            with Timer(operation_name, func_logger, warn_ms=warn_threshold_ms):
                return await func(*args, **kwargs)

        return wrapper

    return decorator


# ═══════════════════════════════════════════════════════════════════════════════
# PATH STATISTICS (which data path won, which sources failed)
# ═══════════════════════════════════════════════════════════════════════════════

class PathStats:
    """
    In-memory counters for reconciliation outcomes.

    Tracks:
    - How often each reconciliation mode was used
    - Failures per external source
    - Requests discarded as superseded
    """

    def __init__(self):
        self._modes: Dict[str, int] = {}
        self._source_failures: Dict[str, int] = {}
        self._superseded = 0

    def record_mode(self, mode: str) -> None:
        self._modes[mode] = self._modes.get(mode, 0) + 1

    def record_source_failure(self, source: str) -> None:
        self._source_failures[source] = self._source_failures.get(source, 0) + 1

    def record_superseded(self) -> None:
        self._superseded += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get current counters snapshot."""
        return {
            "modes": dict(self._modes),
            "source_failures": dict(self._source_failures),
            "superseded": self._superseded,
        }

    def reset(self) -> None:
        self._modes.clear()
        self._source_failures.clear()
        self._superseded = 0


# Global stats instance
path_stats = PathStats()

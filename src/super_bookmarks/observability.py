"""Observability utilities for Super Bookmarks.

Provides persistent disk logging with rotation, per-operation timing
metrics, and tracing helpers for both plain and coroutine functions.
"""
import functools
import inspect
import json
import logging
import time
import uuid
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Deque, Dict, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "super_bookmarks"
DEFAULT_LOG_DIR = Path.home() / ".super_bookmarks" / "logs"
DEFAULT_METRICS_FILE = Path.home() / ".super_bookmarks" / "metrics.json"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Durations kept per operation for percentile estimates
LATENCY_WINDOW = 256

F = TypeVar("F", bound=Callable[..., Any])

# File handler installed by configure_logging, replaced on reconfigure
_file_handler: Optional[RotatingFileHandler] = None


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the ``super_bookmarks`` logger hierarchy to a rotating log file.

    Every module logger created with ``getLogger(__name__)`` inherits the
    handler. Calling this again swaps the file handler rather than adding
    a second one.

    Args:
        log_dir: Directory for log files. Defaults to ~/.super_bookmarks/logs/
        level: Logging level for the package logger.
        max_bytes: Size at which the log file rotates (10 MB).
        backup_count: Rotated files kept.
        console: Also log to stderr.

    Returns:
        The log directory.
    """
    global _file_handler

    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / f"{PACKAGE_LOGGER}.log"

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if _file_handler is not None and _file_handler in package_logger.handlers:
        package_logger.removeHandler(_file_handler)
        _file_handler.close()

    _file_handler = RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    _file_handler.setFormatter(formatter)
    package_logger.addHandler(_file_handler)

    has_console = any(
        type(handler) is logging.StreamHandler for handler in package_logger.handlers
    )
    if console and not has_console:
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        package_logger.addHandler(stream)

    package_logger.info(f"Logging to {log_file} (rotate at {max_bytes} bytes, keep {backup_count})")
    return log_path


class _OperationStats:
    """Running totals for one operation name, plus a latency window."""

    __slots__ = (
        "count",
        "errors",
        "total_ms",
        "min_ms",
        "max_ms",
        "recent_ms",
        "results",
        "result_samples",
        "last_error",
        "last_error_at",
    )

    def __init__(self) -> None:
        self.count = 0
        self.errors = 0
        self.total_ms = 0.0
        self.min_ms: Optional[float] = None
        self.max_ms = 0.0
        self.recent_ms: Deque[float] = deque(maxlen=LATENCY_WINDOW)
        self.results = 0
        self.result_samples = 0
        self.last_error: Optional[str] = None
        self.last_error_at: Optional[datetime] = None

    def add(
        self,
        duration_ms: float,
        success: bool,
        error: Optional[str],
        result_count: Optional[int],
    ) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        self.recent_ms.append(duration_ms)
        if result_count is not None:
            self.results += result_count
            self.result_samples += 1
        if not success:
            self.errors += 1
            self.last_error = error
            self.last_error_at = datetime.now(timezone.utc)

    def snapshot(self) -> Dict[str, Any]:
        ok = self.count - self.errors
        window = sorted(self.recent_ms)
        p95 = window[min(len(window) - 1, int(len(window) * 0.95))] if window else 0.0
        return {
            "count": self.count,
            "success_count": ok,
            "error_count": self.errors,
            "success_rate": ok / self.count if self.count else 0,
            "avg_duration_ms": round(self.total_ms / self.count, 2) if self.count else 0,
            "min_duration_ms": round(self.min_ms or 0.0, 2),
            "max_duration_ms": round(self.max_ms, 2),
            "p95_duration_ms": round(p95, 2),
            "avg_results": (
                round(self.results / self.result_samples, 2) if self.result_samples else None
            ),
            "last_error": self.last_error,
            "last_error_time": self.last_error_at.isoformat() if self.last_error_at else None,
        }


class MetricsCollector:
    """Thread-safe timing and outcome counters per operation.

    Operations are the traced search and write-path calls (``search``,
    ``hybrid_search``, ``save_note``, ``reindex``...). Besides duration and
    error counts, searches report how many results they returned, so
    ``avg_results`` shows whether thresholds are too strict. Everything
    lives in memory; ``save_metrics`` writes a JSON snapshot.
    """

    def __init__(self, metrics_file: Optional[Union[str, Path]] = None):
        self._ops: Dict[str, _OperationStats] = {}
        self._lock = Lock()
        self._started = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
        result_count: Optional[int] = None,
    ) -> None:
        with self._lock:
            stats = self._ops.setdefault(operation, _OperationStats())
            stats.add(duration_ms, success, error, result_count)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every operation seen so far, keyed by name."""
        with self._lock:
            return {name: stats.snapshot() for name, stats in self._ops.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across all operations. An idle collector reports 100% success."""
        with self._lock:
            total = sum(s.count for s in self._ops.values())
            errors = sum(s.errors for s in self._ops.values())
            uptime = (datetime.now(timezone.utc) - self._started).total_seconds()
            return {
                "uptime_seconds": uptime,
                "total_operations": total,
                "total_success": total - errors,
                "total_errors": errors,
                "overall_success_rate": (total - errors) / total if total else 1.0,
                "operations_tracked": sorted(self._ops),
            }

    def reset(self) -> None:
        with self._lock:
            self._ops.clear()
            self._started = datetime.now(timezone.utc)

    def save_metrics(self) -> bool:
        """Write a JSON snapshot next to a temp file, then swap it in.

        Returns:
            False if the file could not be written (the error is logged).
        """
        payload = {
            "start_time": self._started.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "summary": self.get_summary(),
            "operations": self.get_metrics(),
        }
        target = self._metrics_file
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            staging = target.with_suffix(".tmp")
            staging.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            staging.replace(target)
        except (OSError, TypeError) as e:
            logger.error(f"Could not write metrics to {target}: {e}")
            return False
        return True

    def get_metrics_file(self) -> Path:
        return self._metrics_file


metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Time a block, log start and end under a short correlation id.

    The yielded dict collects result details for the END log line. A
    ``result_count`` entry is also fed to the metrics. Works inside
    coroutines as long as the awaits happen within the ``with`` block.

    Example:
        with timed_operation('search', limit=20) as op:
            results = await engine.search(vector)
            op['result_count'] = len(results)
    """
    correlation_id = uuid.uuid4().hex[:8]
    info: Dict[str, Any] = {"correlation_id": correlation_id}
    details = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({details})")

    started = time.perf_counter()
    error: Optional[str] = None
    try:
        yield info
    except Exception as e:
        error = str(e)
        raise
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(
            operation,
            elapsed_ms,
            error is None,
            error,
            result_count=info.get("result_count"),
        )
        outcome = "OK" if error is None else f"ERROR: {error}"
        extras = ", ".join(f"{k}={v}" for k, v in info.items() if k != "correlation_id")
        logger.debug(
            f"[{correlation_id}] END {operation} ({elapsed_ms:.2f}ms) [{outcome}] {extras}"
        )


def _trace_context(kwargs: Dict[str, Any]) -> Dict[str, Any]:
    return {key: kwargs[key] for key in ("note_id", "limit") if key in kwargs}


def _record_result(op: Dict[str, Any], result: Any) -> None:
    # Only result lists count; summary dicts such as reindex counts do not
    if isinstance(result, list):
        op["result_count"] = len(result)
    elif result is not None:
        op["has_result"] = True


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Decorator for automatic operation tracing.

    Times the function, records metrics, and logs start/end with a
    correlation ID. Coroutine functions stay coroutine functions.

    Args:
        operation_name: Name to use for the operation. If None, uses function name.

    Example:
        @traced('keyword_search')
        async def keyword_search(self, terms, limit=20):
            ...
    """

    def decorator(func: F) -> F:
        op_name = operation_name or func.__name__

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                with timed_operation(op_name, **_trace_context(kwargs)) as op:
                    result = await func(*args, **kwargs)
                    _record_result(op, result)
                    return result

            return async_wrapper  # type: ignore

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with timed_operation(op_name, **_trace_context(kwargs)) as op:
                result = func(*args, **kwargs)
                _record_result(op, result)
                return result

        return wrapper  # type: ignore

    return decorator

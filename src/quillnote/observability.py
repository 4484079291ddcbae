"""Observability utilities for the Quillnote server.

Provides persistent rotating log files, per-operation timing metrics and
a tracing decorator used by the service layer.
"""
import functools
import json
import logging
import re
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

# Root of every module logger in the package
ROOT_LOGGER_NAME = "quillnote"

DEFAULT_LOG_DIR = Path.home() / ".quillnote" / "logs"
DEFAULT_METRICS_FILE = Path.home() / ".quillnote" / "metrics.json"

# Logging format with ISO 8601 timestamps
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

MAX_ERROR_MESSAGE_LENGTH = 300

F = TypeVar('F', bound=Callable[..., Any])

_logging_configured = False


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB per file
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Configure persistent file logging with rotation.

    Attaches a rotating file handler (and optionally a console handler) to
    the ``quillnote`` logger, so every ``logging.getLogger(__name__)`` in
    the package writes to ``<log_dir>/quillnote.log``.

    Args:
        log_dir: Directory for log files. Defaults to ~/.quillnote/logs/
        level: Logging level (default: INFO)
        max_bytes: Maximum size per log file before rotation (default: 10 MB)
        backup_count: Number of rotated files to keep (default: 5)
        console: Also log to console (default: True)

    Returns:
        Path to the log directory
    """
    global _logging_configured

    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    log_file = log_path / "quillnote.log"
    # Re-configuring (tests, repeated main() calls) must not stack handlers
    for handler in list(root_logger.handlers):
        if isinstance(handler, RotatingFileHandler):
            root_logger.removeHandler(handler)
            handler.close()

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    if console and not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
        for h in root_logger.handlers
    ):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    _logging_configured = True
    root_logger.info(f"Logging configured: {log_file} (max {max_bytes} bytes, {backup_count} backups)")

    return log_path


def is_logging_configured() -> bool:
    """Check if file logging has been configured."""
    return _logging_configured


_HOME_PATTERN = re.compile(re.escape(str(Path.home())))


def sanitize_error_message(message: str) -> str:
    """Make an exception message safe to record in metrics and logs.

    Collapses newlines, replaces the home directory with ``~`` and
    truncates overly long messages.
    """
    if not message:
        return ""
    cleaned = " ".join(str(message).split())
    cleaned = _HOME_PATTERN.sub("~", cleaned)
    if len(cleaned) > MAX_ERROR_MESSAGE_LENGTH:
        cleaned = cleaned[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return cleaned


@dataclass
class OperationMetrics:
    """Metrics for a single operation type."""
    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: Optional[float] = None
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[str] = None

    def record(self, duration_ms: float, success: bool, error: Optional[str]) -> None:
        self.count += 1
        self.total_duration_ms += duration_ms
        if self.min_duration_ms is None or duration_ms < self.min_duration_ms:
            self.min_duration_ms = duration_ms
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            self.last_error = error
            self.last_error_time = datetime.now(timezone.utc).isoformat()


class MetricsCollector:
    """Thread-safe metrics collection for server operations.

    Tracks call counts, durations and the last error for each named
    operation (``create_note``, ``resolve_share`` ...). Metrics can be
    persisted to a JSON file and are reloaded on construction.
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 100,
    ):
        """Initialize the metrics collector.

        Args:
            metrics_file: Path to persist metrics. Defaults to ~/.quillnote/metrics.json
            auto_save_interval: Save to disk every N operations (0 to disable)
        """
        self._metrics: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE
        self._auto_save_interval = auto_save_interval
        self._since_save = 0

        self._load_metrics()

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None
    ) -> None:
        """Record metrics for one completed operation."""
        with self._lock:
            self._metrics[operation].record(
                duration_ms, success, sanitize_error_message(error) if error else None
            )
            self._since_save += 1
            if 0 < self._auto_save_interval <= self._since_save:
                self._save_metrics_unlocked()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Get a snapshot of all metrics, keyed by operation name."""
        with self._lock:
            result = {}
            for op, m in self._metrics.items():
                result[op] = {
                    'count': m.count,
                    'success_count': m.success_count,
                    'error_count': m.error_count,
                    'success_rate': m.success_count / m.count if m.count else 0,
                    'avg_duration_ms': round(m.total_duration_ms / m.count, 2) if m.count else 0,
                    'min_duration_ms': round(m.min_duration_ms or 0.0, 2),
                    'max_duration_ms': round(m.max_duration_ms, 2),
                    'last_error': m.last_error,
                    'last_error_time': m.last_error_time,
                }
            return result

    def get_summary(self) -> Dict[str, Any]:
        """Get aggregate statistics across all operations."""
        with self._lock:
            total_ops = sum(m.count for m in self._metrics.values())
            total_errors = sum(m.error_count for m in self._metrics.values())
            return {
                'uptime_seconds': (datetime.now(timezone.utc) - self._start_time).total_seconds(),
                'total_operations': total_ops,
                'total_errors': total_errors,
                'overall_success_rate': (total_ops - total_errors) / total_ops if total_ops else 1.0,
                'operations_tracked': sorted(self._metrics.keys()),
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._metrics.clear()
            self._start_time = datetime.now(timezone.utc)
            self._since_save = 0

    def _load_metrics(self) -> bool:
        if not self._metrics_file.exists():
            return False
        try:
            with open(self._metrics_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            if "start_time" in data:
                self._start_time = datetime.fromisoformat(data["start_time"])
            for op_name, op_data in data.get("operations", {}).items():
                self._metrics[op_name] = OperationMetrics(**op_data)
            logger.debug(f"Loaded metrics from {self._metrics_file}")
            return True
        except (OSError, json.JSONDecodeError, TypeError, ValueError) as e:
            logger.warning(f"Failed to load metrics from {self._metrics_file}: {e}")
            return False

    def _save_metrics_unlocked(self) -> bool:
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            data = {
                "start_time": self._start_time.isoformat(),
                "saved_at": datetime.now(timezone.utc).isoformat(),
                "operations": {
                    name: vars(m).copy() for name, m in self._metrics.items()
                },
            }
            # Atomic write via temp file
            temp_file = self._metrics_file.with_suffix(".tmp")
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            temp_file.replace(self._metrics_file)
            self._since_save = 0
            return True
        except (OSError, TypeError) as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False

    def save_metrics(self) -> bool:
        """Explicitly save metrics to disk (e.g. on shutdown)."""
        with self._lock:
            return self._save_metrics_unlocked()


# Global metrics collector instance
metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Context manager for timing and logging operations.

    Yields a dict the caller can fill with result info; it is logged
    alongside the duration when the block exits.

    Example:
        with timed_operation('qn_list_notes', owner=caller.user_id) as op:
            notes = service.list_notes(caller)
            op['result_count'] = len(notes)
    """
    correlation_id = str(uuid.uuid4())[:8]
    start_time = time.perf_counter()
    result_info: Dict[str, Any] = {'correlation_id': correlation_id}

    context_str = ', '.join(f'{k}={v}' for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({context_str})")

    error_msg = None
    success = True

    try:
        yield result_info
    except Exception as e:
        success = False
        error_msg = str(e)
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        metrics.record_operation(operation, duration_ms, success, error_msg)

        result_str = ', '.join(f'{k}={v}' for k, v in result_info.items() if k != 'correlation_id')
        status = 'OK' if success else f'ERROR: {sanitize_error_message(error_msg)}'
        logger.debug(
            f"[{correlation_id}] END {operation} "
            f"({duration_ms:.2f}ms) [{status}] {result_str}"
        )


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Decorator that wraps a call in ``timed_operation``.

    Picks ``note_id`` or ``link_id`` out of the keyword arguments for the
    log context and records ``result_count`` for sized results.
    """
    def decorator(func: F) -> F:
        op_name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            context = {
                key: kwargs[key] for key in ('note_id', 'link_id') if key in kwargs
            }
            with timed_operation(op_name, **context) as op:
                result = func(*args, **kwargs)
                if isinstance(result, (list, tuple, dict)):
                    op['result_count'] = len(result)
                elif result is not None:
                    op['has_result'] = True
                return result

        return wrapper  # type: ignore
    return decorator

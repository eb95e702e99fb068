"""Structured logging configuration for feedsync."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}

# SDK and HTTP client loggers that flood DEBUG/INFO with per-request noise.
_THIRD_PARTY_LOGGERS = ("boto3", "botocore", "urllib3", "httpx", "httpcore")


class StructuredFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects.

    Every ``extra`` attribute becomes a top-level key, so structured fields
    such as ``new_entries`` or ``reasons`` reach the log sink unchanged. The
    fixed keys below always win over an ``extra`` of the same name.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                log_entry.setdefault(key, value)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ExecutionLogger:
    """Logger carrying an execution id, a component name and bound context."""

    def __init__(
        self,
        execution_id: str,
        component: str = "main",
        context: dict[str, Any] | None = None,
    ):
        """Initialize execution logger.

        Args:
            execution_id: Unique identifier for this execution
            component: Component name (e.g., 'fetcher', 'updater')
            context: Fields added to every record this logger emits
        """
        self.execution_id = execution_id
        self.component = component
        self.context = dict(context or {})
        self.logger = logging.getLogger(f"feedsync.{component}")
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None

    def bind(self, **context) -> "ExecutionLogger":
        """Return a logger that adds ``context`` to every record.

        The original logger is left untouched, so concurrent tasks can each
        bind their own feed without interfering.
        """
        bound = ExecutionLogger(
            self.execution_id, self.component, {**self.context, **context}
        )
        bound.start_time = self.start_time
        return bound

    def _log_with_context(self, level: int, message: str, **kwargs) -> None:
        extra = {
            "execution_id": self.execution_id,
            "component": self.component,
            **self.context,
            **kwargs,
        }
        self.logger.log(level, message, extra=extra)

    def info(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.DEBUG, message, **kwargs)

    def log_execution_start(self, **kwargs) -> None:
        self.start_time = datetime.now(UTC)
        self.info(
            f"Starting {self.component} execution",
            execution_start=self.start_time.isoformat(),
            **kwargs,
        )

    def log_execution_end(self, success: bool = True, **kwargs) -> None:
        self.end_time = datetime.now(UTC)

        duration_seconds = None
        if self.start_time:
            duration_seconds = (self.end_time - self.start_time).total_seconds()

        self.info(
            f"Completed {self.component} execution",
            execution_end=self.end_time.isoformat(),
            execution_duration_seconds=duration_seconds,
            execution_success=success,
            **kwargs,
        )

    def log_sync_result(
        self, feed_id: str, new_entries: int, error_kind: str | None = None
    ) -> None:
        """Log the outcome of one feed synchronization.

        Failures are warnings: one broken feed never fails the batch.
        """
        if error_kind is None:
            self.info(
                f"Feed synchronized: {new_entries} new entries",
                feed_id=feed_id,
                new_entries=new_entries,
            )
        else:
            self.warning(
                f"Feed synchronization failed: {error_kind}",
                feed_id=feed_id,
                error_kind=error_kind,
            )

    def log_metrics(self, metrics: dict[str, Any]) -> None:
        self.info("Execution metrics", metrics=metrics)


def setup_structured_logging(log_level: str = "INFO") -> None:
    """Send JSON lines to stdout and set the feedsync log level.

    Third-party SDK loggers are held at WARNING whatever ``log_level`` is,
    so DEBUG output stays about feeds rather than HTTP connection pools.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    level = getattr(logging, log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(console_handler)

    # Component loggers ("feedsync.fetcher", ...) inherit from this one
    logging.getLogger("feedsync").setLevel(level)

    for logger_name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(logger_name).setLevel(max(level, logging.WARNING))


def create_execution_logger(
    component: str, execution_id: str | None = None
) -> ExecutionLogger:
    """Create an execution logger for a component.

    A missing ``execution_id`` is generated from the current UTC time.
    """
    if not execution_id:
        execution_id = f"exec_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"

    return ExecutionLogger(execution_id, component)

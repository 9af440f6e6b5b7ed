"""
Structured Logging for genbroker.

This module provides:
- Structured JSON logging with consistent fields
- Generation and settlement logging with trace correlation
- Admission and ledger event records
- Timing helpers
"""

from __future__ import annotations

import json
import logging
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import BrokerError

# =============================================================================
# Log Record Types
# =============================================================================


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LogContext:
    """Context information attached to log records."""

    trace_id: str | None = None
    job_id: str | None = None
    owner_key: str | None = None
    provider: str | None = None
    operation: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in asdict(self).items() if v is not None and k != "extra"}
        d.update(self.extra)
        return d

    def with_update(self, **kwargs) -> LogContext:
        """Create a new context with updated values."""
        return LogContext(
            trace_id=kwargs.get("trace_id", self.trace_id),
            job_id=kwargs.get("job_id", self.job_id),
            owner_key=kwargs.get("owner_key", self.owner_key),
            provider=kwargs.get("provider", self.provider),
            operation=kwargs.get("operation", self.operation),
            extra={**self.extra, **kwargs.get("extra", {})},
        )


@dataclass
class GenerationLog:
    """Log record for one provider attempt."""

    job_id: str
    provider: str
    kind: str
    attempt: int = 1

    timestamp: str = field(default_factory=_utcnow_iso)
    duration_ms: float | None = None

    success: bool = True
    failure_kind: str | None = None
    error: str | None = None
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class SettlementLog:
    """Log record for bringing a job to its terminal state."""

    job_id: str
    owner_key: str
    status: str

    timestamp: str = field(default_factory=_utcnow_iso)
    refunded: bool = False
    balance: int | None = None
    attempts: int = 1
    needs_reconciliation: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class LedgerLog:
    """Log record for a ledger mutation."""

    owner_key: str
    reason: str
    amount: int
    balance: int

    timestamp: str = field(default_factory=_utcnow_iso)
    job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


# =============================================================================
# Structured Logger
# =============================================================================

_log_context: ContextVar[LogContext] = ContextVar("genbroker_log_context", default=LogContext())

# Field names whose values are credentials
_SECRET_SUFFIXES = ("api_key", "api_token", "secret", "password")


class StructuredLogger:
    """
    Logger with structured JSON output and context tracking.

    Example:
        ```python
        logger = StructuredLogger("genbroker")

        with logger.trace_context(operation="generate_image"):
            logger.log_generation(GenerationLog(...))
            logger.log_settlement(SettlementLog(...))
        ```
    """

    def __init__(
        self,
        name: str = "genbroker",
        level: str = "INFO",
        json_output: bool = True,
        redact_keys: bool = True,
        admission_events: bool = True,
        ledger_events: bool = True,
    ):
        self.name = name
        self.json_output = json_output
        self.redact_keys = redact_keys
        self.admission_events = admission_events
        self.ledger_events = ledger_events

        self._logger = logging.getLogger(name)
        self._logger.setLevel(getattr(logging, level.upper()))

        if not self._logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            if json_output:
                handler.setFormatter(JSONFormatter())
            else:
                handler.setFormatter(TextFormatter())
            self._logger.addHandler(handler)

    @property
    def context(self) -> LogContext:
        """Context of the current task; concurrent jobs never see each other's."""
        return _log_context.get()

    def set_context(self, **kwargs) -> None:
        """Update the current log context."""
        _log_context.set(self.context.with_update(**kwargs))

    @contextmanager
    def trace_context(
        self,
        trace_id: str | None = None,
        **kwargs,
    ) -> Iterator[str]:
        """
        Context manager for trace correlation.

        Args:
            trace_id: Trace ID (auto-generated if not provided)
            **kwargs: Additional context fields

        Yields:
            The trace ID
        """
        trace_id = trace_id or generate_trace_id()
        token = _log_context.set(self.context.with_update(trace_id=trace_id, **kwargs))
        try:
            yield trace_id
        finally:
            _log_context.reset(token)

    @contextmanager
    def job_context(self, job_id: str, owner_key: str | None = None, **kwargs) -> Iterator[str]:
        """Scope log records to one generation job."""
        current = self.context
        token = _log_context.set(
            current.with_update(job_id=job_id, owner_key=owner_key or current.owner_key, **kwargs)
        )
        try:
            yield job_id
        finally:
            _log_context.reset(token)

    def _log(
        self,
        level: int,
        message: str,
        event_type: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        record_data = {
            "message": message,
            **self.context.to_dict(),
        }

        if event_type:
            record_data["event_type"] = event_type

        if data:
            record_data.update(data)

        if self.redact_keys:
            for key, value in record_data.items():
                if value is not None and key.endswith(_SECRET_SUFFIXES):
                    record_data[key] = redact_api_key(str(value))

        if self.json_output:
            self._logger.log(level, json.dumps(record_data, default=str))
        else:
            extras = " ".join(f"{k}={v}" for k, v in record_data.items() if k != "message")
            self._logger.log(level, f"{message} {extras}")

    def debug(self, message: str, **kwargs) -> None:
        self._log(logging.DEBUG, message, data=kwargs)

    def info(self, message: str, **kwargs) -> None:
        self._log(logging.INFO, message, data=kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._log(logging.WARNING, message, data=kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._log(logging.ERROR, message, data=kwargs)

    # Typed logging methods

    def log_generation(self, record: GenerationLog) -> None:
        """Log a provider attempt."""
        level = logging.INFO if record.success else logging.WARNING
        message = f"Generation attempt on {record.provider}"
        if record.duration_ms:
            message += f" ({record.duration_ms:.0f}ms)"
        self._log(level, message, event_type="generation", data=record.to_dict())

    def log_settlement(self, record: SettlementLog) -> None:
        """Log a job reaching its terminal state."""
        level = logging.WARNING if record.needs_reconciliation else logging.INFO
        self._log(
            level,
            f"Job {record.job_id} settled as {record.status}",
            event_type="settlement",
            data=record.to_dict(),
        )

    def log_ledger(self, record: LedgerLog) -> None:
        """Log a credit mutation."""
        if not self.ledger_events:
            return
        self._log(
            logging.INFO,
            f"Ledger {record.reason} {record.amount:+d} for {record.owner_key}",
            event_type="ledger",
            data=record.to_dict(),
        )

    def log_admission(self, owner_key: str, allowed: bool, reason: str | None = None, **kwargs) -> None:
        """Log an admission decision."""
        if not self.admission_events:
            return
        level = logging.DEBUG if allowed else logging.INFO
        self._log(
            level,
            f"Admission {'granted' if allowed else 'rejected'} for {owner_key}",
            event_type="admission",
            data={"owner_key": owner_key, "allowed": allowed, "reason": reason, **kwargs},
        )

    def log_error(
        self,
        error: BaseException,
        message: str | None = None,
        **kwargs,
    ) -> None:
        """Log an error with context."""
        error_data = {
            "error_type": type(error).__name__,
            "error_message": str(error),
            **kwargs,
        }

        if isinstance(error, BrokerError):
            error_data["error_code"] = error.code.value
            error_data["retryable"] = error.retryable
            error_data["error_context"] = error.context.to_dict()

        self._log(
            logging.ERROR,
            message or f"Error: {error}",
            event_type="error",
            data=error_data,
        )


# =============================================================================
# Formatters
# =============================================================================


class JSONFormatter(logging.Formatter):
    """JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": _utcnow_iso(),
            "level": record.levelname,
            "logger": record.name,
        }

        try:
            message_data = json.loads(record.getMessage())
            log_data.update(message_data)
        except (json.JSONDecodeError, TypeError):
            log_data["message"] = record.getMessage()

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        color = self.LEVEL_COLORS.get(record.levelname, "")
        reset = self.RESET if color else ""

        return f"{timestamp} {color}{record.levelname:8}{reset} {record.getMessage()}"


# =============================================================================
# Utilities
# =============================================================================


def generate_trace_id() -> str:
    """Generate a unique trace ID."""
    return f"trace_{uuid.uuid4().hex[:16]}"


def redact_api_key(key: str | None) -> str:
    """Redact an API key for safe logging."""
    if not key:
        return "<not set>"
    if len(key) <= 8:
        return "***"
    return f"{key[:4]}...{key[-4:]}"


def truncate_for_log(text: str, max_length: int = 200) -> str:
    """Truncate text for logging."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"... ({len(text)} chars total)"


@dataclass
class Timer:
    """Simple timer for measuring durations."""

    start_time: float = field(default_factory=time.perf_counter)
    end_time: float | None = None

    def stop(self) -> float:
        """Stop the timer and return duration in milliseconds."""
        self.end_time = time.perf_counter()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> float:
        end = self.end_time or time.perf_counter()
        return (end - self.start_time) * 1000


@contextmanager
def timed() -> Iterator[Timer]:
    """Context manager for timing operations."""
    timer = Timer()
    try:
        yield timer
    finally:
        timer.stop()


# =============================================================================
# Global Logger
# =============================================================================

_default_logger: StructuredLogger | None = None


def get_logger(name: str = "genbroker") -> StructuredLogger:
    """Get or create a structured logger."""
    global _default_logger
    if _default_logger is None or _default_logger.name != name:
        _default_logger = StructuredLogger(name)
    return _default_logger


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    **kwargs: Any,
) -> StructuredLogger:
    """Configure the default logger."""
    global _default_logger
    _default_logger = StructuredLogger(
        level=level,
        json_output=json_output,
        **kwargs,
    )
    return _default_logger


__all__ = [
    "LogContext",
    "GenerationLog",
    "SettlementLog",
    "LedgerLog",
    "StructuredLogger",
    "JSONFormatter",
    "TextFormatter",
    "Timer",
    "timed",
    "generate_trace_id",
    "redact_api_key",
    "truncate_for_log",
    "get_logger",
    "configure_logging",
]

"""
Error Handling
==============

Exception hierarchy and central handler for the journal ingestion engine:
- Configuration errors (journal directory missing) are critical and reported once
- Transient read errors are attributed to a single file
- Worker-fatal errors abort a batch without committing checkpoints
"""

# ============================================================================
# IMPORTS
# ============================================================================

import functools
import logging
import time
from typing import Optional, Callable, TypeVar
from enum import Enum


# ============================================================================
# SEVERITY
# ============================================================================

class ErrorSeverity(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class ExplorerError(Exception):
    """
    Base exception for the journal engine.

    Subclasses set `severity` and `default_user_message`; callers may still
    override either per instance.
    """
    severity = ErrorSeverity.ERROR
    default_user_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        severity: Optional[ErrorSeverity] = None,
        user_message: Optional[str] = None,
        context: Optional[dict] = None
    ):
        """
        Args:
            message: Technical message for the log
            severity: Overrides the class severity
            user_message: Text for a notification (defaults per class)
            context: Extra key/values for the log line
        """
        super().__init__(message)
        self.message = message
        if severity is not None:
            self.severity = severity
        self.user_message = user_message or self.default_user_message or message
        self.context = dict(context or {})
        self.timestamp = time.time()

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "context": self.context,
            "timestamp": self.timestamp,
        }


class ConfigurationError(ExplorerError):
    severity = ErrorSeverity.CRITICAL
    default_user_message = "Configuration error. Please check your settings."


class JournalDirectoryMissingError(ConfigurationError):
    """The configured journal directory does not exist or cannot be listed"""

    def __init__(self, journal_dir, reason: str = "not found"):
        self.journal_dir = journal_dir
        super().__init__(
            f"Journal directory {reason}: {journal_dir}",
            user_message=f"Journal folder not found: {journal_dir}. Set the correct path in your config.",
            context={"journal_dir": str(journal_dir), "reason": reason}
        )


class DatabaseError(ExplorerError):
    default_user_message = "Database error. Your data may not be saved."


class FileSystemError(ExplorerError):
    default_user_message = "File system error. Check file permissions."


class JournalReadError(FileSystemError):
    """A single journal or snapshot file could not be read on this pass"""
    severity = ErrorSeverity.WARNING

    def __init__(self, filename: str, message: str):
        self.filename = filename
        super().__init__(f"{filename}: {message}", context={"file": filename})


class WorkerError(ExplorerError):
    """The background batch worker crashed; the batch is not committed"""
    default_user_message = "Journal scan failed. Progress was not saved."


# ============================================================================
# ERROR HANDLER
# ============================================================================

_LOG_METHOD = {
    ErrorSeverity.CRITICAL: "error",
    ErrorSeverity.ERROR: "error",
    ErrorSeverity.WARNING: "warning",
}


class ErrorHandler:
    """
    Records, logs and routes errors.

    on_critical_error is the persistent configuration-error channel: CRITICAL
    errors always go there. Everything else reaches on_error only when the
    caller asks for the user to be notified.
    """

    def __init__(self, logger=None, max_history: int = 100):
        """
        Args:
            logger: Anything with info/warning/error (defaults to a module logger)
        """
        self.logger = logger or logging.getLogger("explorer.errors")
        self.max_history = max_history
        self.error_history: list[ExplorerError] = []

        self.on_error: Optional[Callable[[ExplorerError], None]] = None
        self.on_critical_error: Optional[Callable[[ExplorerError], None]] = None

    def handle_error(self, error: Exception, notify_user: bool = True) -> ExplorerError:
        if not isinstance(error, ExplorerError):
            error = ExplorerError(f"{type(error).__name__}: {error}")

        self.error_history.append(error)
        del self.error_history[:-self.max_history]

        line = f"{error.severity.value}: {error.message}"
        if error.context:
            line += f" [Context: {error.context}]"
        getattr(self.logger, _LOG_METHOD.get(error.severity, "info"))(line)

        if error.severity is ErrorSeverity.CRITICAL:
            channel = self.on_critical_error
        else:
            channel = self.on_error if notify_user else None

        if channel is not None:
            try:
                channel(error)
            except Exception as e:
                self.logger.error(f"Error notification callback failed: {e}")

        return error

    def get_recent_errors(self, count: int = 10) -> list[ExplorerError]:
        return self.error_history[-count:]

    def clear_history(self):
        self.error_history.clear()


# ============================================================================
# DECORATORS
# ============================================================================

T = TypeVar('T')


def retry_on_error(
    max_attempts: int = 3,
    delay_seconds: float = 0.1,
    exponential_backoff: bool = True,
    exceptions: tuple = (Exception,)
):
    """
    Retry a call that fails with one of `exceptions`; the last failure propagates.

    Usage:
        @retry_on_error(max_attempts=3, delay_seconds=0.05, exceptions=(OSError,))
        def _write(self, data):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        log = logging.getLogger("explorer.retry")

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        raise
                    wait = delay_seconds * (2 ** (attempt - 1) if exponential_backoff else 1)
                    log.info(f"Retry {attempt}/{max_attempts} for {func.__name__} in {wait:.2f}s: {e}")
                    time.sleep(wait)

        return wrapper
    return decorator

"""
Centralized error handling module for agent-rewind.

This module defines the exception hierarchy raised by the context-window
manager and the checkpoint subsystem, together with error categorization and
logging helpers shared by both.
"""

import logging
import sys
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Enumeration of error categories for consistent classification."""

    # Context window errors
    INDEX = "index_error"
    CONTEXT = "context_error"

    # Checkpoint errors
    CHECKPOINT = "checkpoint_error"
    VERIFICATION = "verification_error"
    REPOSITORY = "repository_error"

    # Runtime and system errors
    PERSISTENCE = "persistence_error"
    PERMISSION = "permission_error"
    CANCELLED = "cancelled"
    VALUE = "value_error"
    RUNTIME = "runtime_error"

    # Default
    UNKNOWN = "unknown_error"


@dataclass
class ErrorContext:
    """
    Structured context for error information to facilitate debugging.

    Captures where and when an error occurred and which component and
    operation were involved.
    """

    error_type: str
    error_message: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    timestamp: datetime = field(default_factory=datetime.now)

    file_path: Optional[str] = None
    function_name: Optional[str] = None
    line_number: Optional[int] = None
    stacktrace: str = ""

    component: Optional[str] = None
    operation: Optional[str] = None
    task_id: Optional[str] = None

    variables: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error context to a dictionary for serialization."""
        result = {
            "error_type": self.error_type,
            "error_message": self.error_message,
            "category": self.category.value,
            "timestamp": self.timestamp.isoformat(),
        }

        for field_name in ["file_path", "function_name", "line_number", "stacktrace",
                           "component", "operation", "task_id"]:
            value = getattr(self, field_name)
            if value:
                result[field_name] = value

        if self.variables:
            result["variables"] = self.variables

        return result


def _current_frame():
    tb = traceback.extract_tb(sys.exc_info()[2])
    return tb[-1] if tb else None


class AgentError(Exception):
    """Base exception for all agent-rewind errors."""

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        **kwargs
    ):
        super().__init__(message)

        if context is None:
            frame = _current_frame()
            self.context = ErrorContext(
                error_type=self.__class__.__name__,
                error_message=message,
                category=self._get_default_category(),
                file_path=frame.filename if frame else None,
                line_number=frame.lineno if frame else None,
                function_name=frame.name if frame else None,
                **kwargs
            )
        else:
            self.context = context
            if not self.context.error_type:
                self.context.error_type = self.__class__.__name__
            if not self.context.error_message:
                self.context.error_message = message
            if self.context.category == ErrorCategory.UNKNOWN:
                self.context.category = self._get_default_category()

    def _get_default_category(self) -> ErrorCategory:
        """Return the default error category for this exception type."""
        return ErrorCategory.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        """Convert the exception to a dictionary for serialization."""
        return self.context.to_dict()


# Context window exceptions
class InvalidIndexError(AgentError, IndexError):
    """Overlay addressed outside the known message or block bounds."""

    def _get_default_category(self) -> ErrorCategory:
        return ErrorCategory.INDEX


class ContextExhaustedError(AgentError):
    """No further truncation is possible and the history is still over budget."""

    def _get_default_category(self) -> ErrorCategory:
        return ErrorCategory.CONTEXT


class PersistenceWriteError(AgentError):
    """Flushing persisted task state failed."""

    def _get_default_category(self) -> ErrorCategory:
        return ErrorCategory.PERSISTENCE


# Checkpoint exceptions
class CheckpointNotFoundError(AgentError):
    """The requested checkpoint does not exist in the shadow repository."""

    def __init__(self, commit_hash: str, message: Optional[str] = None, **kwargs):
        self.commit_hash = commit_hash
        super().__init__(message or f"Checkpoint not found: {commit_hash}", **kwargs)

    def _get_default_category(self) -> ErrorCategory:
        return ErrorCategory.CHECKPOINT


class RestoreVerificationError(AgentError):
    """A reset completed but HEAD does not point at the requested checkpoint."""

    def __init__(self, expected: str, actual: str, **kwargs):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Restore verification failed: expected HEAD {expected}, found {actual}",
            **kwargs
        )

    def _get_default_category(self) -> ErrorCategory:
        return ErrorCategory.VERIFICATION


class ShadowRepositoryError(AgentError):
    """Wraps failures of git subprocess calls against the shadow repository."""

    def __init__(self, message: str, returncode: Optional[int] = None,
                 output: str = "", git_category: Optional[str] = None, **kwargs):
        self.returncode = returncode
        self.output = output
        self.git_category = git_category
        super().__init__(message, **kwargs)

    def _get_default_category(self) -> ErrorCategory:
        return ErrorCategory.REPOSITORY


class ProtectedDirectoryError(ShadowRepositoryError):
    """Checkpointing was requested for a directory that must never be snapshotted."""

    def _get_default_category(self) -> ErrorCategory:
        return ErrorCategory.PERMISSION


class TaskAbortedError(AgentError):
    """The task's abort flag was set before the operation could start."""

    def _get_default_category(self) -> ErrorCategory:
        return ErrorCategory.CANCELLED


def categorize_exception(exc: Exception) -> ErrorCategory:
    """
    Categorize an exception into an ErrorCategory.

    Args:
        exc: The exception to categorize

    Returns:
        An ErrorCategory value
    """
    if isinstance(exc, AgentError):
        return exc.context.category

    category_mapping = {
        "IndexError": ErrorCategory.INDEX,
        "KeyError": ErrorCategory.INDEX,
        "ValueError": ErrorCategory.VALUE,
        "TypeError": ErrorCategory.VALUE,
        "RuntimeError": ErrorCategory.RUNTIME,
        "PermissionError": ErrorCategory.PERMISSION,
        "OSError": ErrorCategory.PERSISTENCE,
        "FileNotFoundError": ErrorCategory.PERSISTENCE,
        "CalledProcessError": ErrorCategory.REPOSITORY,
        "CancelledError": ErrorCategory.CANCELLED,
    }

    return category_mapping.get(type(exc).__name__, ErrorCategory.UNKNOWN)


def create_error_context(
    exc: Exception,
    component: Optional[str] = None,
    operation: Optional[str] = None,
    task_id: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
) -> ErrorContext:
    """
    Create an ErrorContext object from an exception.

    Args:
        exc: The exception to create context from
        component: The component where the error occurred
        operation: The specific operation that was being performed
        task_id: The task the operation belonged to
        variables: Dictionary of variables relevant to the error

    Returns:
        An ErrorContext object with details about the error
    """
    tb = traceback.extract_tb(exc.__traceback__) if exc.__traceback__ else []
    frame = tb[-1] if tb else None

    return ErrorContext(
        error_type=type(exc).__name__,
        error_message=str(exc),
        category=categorize_exception(exc),
        file_path=frame.filename if frame else None,
        line_number=frame.lineno if frame else None,
        function_name=frame.name if frame else None,
        stacktrace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        component=component,
        operation=operation,
        task_id=task_id,
        variables=variables or {},
    )


def log_exception(
    exc: Exception,
    log: logging.Logger,
    component: Optional[str] = None,
    operation: Optional[str] = None,
    task_id: Optional[str] = None,
    level: int = logging.ERROR,
) -> ErrorContext:
    """
    Log an exception with consistent formatting and create an ErrorContext.

    Args:
        exc: The exception to log
        log: The logger to use
        component: The component where the error occurred
        operation: The specific operation that was being performed
        task_id: The task the operation belonged to
        level: The logging level to use

    Returns:
        An ErrorContext object with details about the error
    """
    error_context = create_error_context(
        exc=exc,
        component=component,
        operation=operation,
        task_id=task_id,
    )

    log_message = f"{error_context.category.value.upper()}: {error_context.error_message}"
    if component:
        log_message = f"[{component}] {log_message}"
    if operation:
        log_message = f"[{operation}] {log_message}"
    if task_id:
        log_message = f"[task {task_id}] {log_message}"

    log.log(level, log_message, exc_info=exc)

    return error_context

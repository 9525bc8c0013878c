"""
Exceptions raised by the documentation sync package, and the per-batch error
tracker the sync engine uses to summarize which sources failed and why.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class SyncError:
    message: str
    source_id: Optional[str] = None
    severity: ErrorSeverity = ErrorSeverity.ERROR
    details: Dict[str, Any] = field(default_factory=dict)
    recovery_suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "source_id": self.source_id,
            "severity": self.severity.value,
            "details": self.details,
            "recovery_suggestion": self.recovery_suggestion,
        }


class SyncException(Exception):
    """Base class for docsync failures; carries the source id and a hint for the operator."""

    def __init__(self, message: str, source_id: Optional[str] = None, recovery_suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source_id = source_id
        self.recovery_suggestion = recovery_suggestion


class ConfigurationError(SyncException):
    """Invalid configuration, or a source id the registry does not know."""


class SourceFetchError(SyncException):
    """Fetching a source's content failed; the engine retries these."""


class SourceNotFoundError(SourceFetchError):
    """The source no longer exists upstream. Never retried."""


class StorageError(SyncException):
    """Reading or writing the blob storage failed."""


class SchemaVersionError(StorageError):

    def __init__(self, expected: int, actual: Any):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version mismatch: expected {expected}, got {actual}",
            recovery_suggestion="Export the state with a matching version or start from a fresh state",
        )


class SearchBackendError(SyncException):
    """A search backend failed; `status` is the HTTP status when there was one."""

    def __init__(self, message: str, status: Optional[int] = None, recovery_suggestion: Optional[str] = None):
        super().__init__(message, recovery_suggestion=recovery_suggestion)
        self.status = status


class ErrorTracker:
    """
    Collects the errors of one batch sync. A fresh tracker is created per batch,
    so nothing here is shared between runs.
    """

    def __init__(self):
        self.errors: List[SyncError] = []

    def report(self, message: str, source_id: Optional[str] = None,
               severity: ErrorSeverity = ErrorSeverity.ERROR,
               details: Optional[Dict[str, Any]] = None,
               recovery_suggestion: Optional[str] = None) -> SyncError:
        error = SyncError(message, source_id, severity, details or {}, recovery_suggestion)
        self.errors.append(error)
        return error

    def report_exception(self, exc: Exception, source_id: Optional[str] = None,
                         severity: ErrorSeverity = ErrorSeverity.ERROR) -> SyncError:
        details = {"exception": type(exc).__name__}
        if isinstance(exc, SyncException):
            return self.report(exc.message, exc.source_id or source_id, severity, details, exc.recovery_suggestion)
        return self.report(str(exc) or type(exc).__name__, source_id, severity, details)

    def errors_by_source(self) -> Dict[str, str]:
        """Latest message per failing source."""
        return {e.source_id: e.message for e in self.errors if e.source_id is not None}

    def has_critical_errors(self) -> bool:
        return any(e.severity is ErrorSeverity.CRITICAL for e in self.errors)

    def generate_report(self) -> Dict[str, Any]:
        counts = Counter(e.severity for e in self.errors)
        return {
            "total_errors": len(self.errors),
            "critical_count": counts[ErrorSeverity.CRITICAL],
            "error_count": counts[ErrorSeverity.ERROR],
            "warning_count": counts[ErrorSeverity.WARNING],
            "errors": [e.to_dict() for e in self.errors],
        }

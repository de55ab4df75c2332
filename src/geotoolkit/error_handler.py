"""Error Handling System for geotoolkit.

This module defines the exception hierarchy shared by every engine.

Key Features:
- Structured exceptions carrying category, severity, metadata and recovery hints
- Fatal construction errors (GeometryError) kept apart from advisory validation
  issues, which are returned rather than raised
- Uniform dictionary serialization for logging
"""

import time
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .logging_manager import get_logging_manager


class ErrorCategory(Enum):
    """Categories of errors for classification and handling."""
    GEOMETRY = "geometry"
    TOPOLOGY = "topology"
    PROJECTION = "projection"
    VALIDATION = "validation"
    QUERY = "query"
    CANCELLATION = "cancellation"
    CONFIGURATION = "configuration"
    ANALYSIS = "analysis"


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class GeoToolkitError(Exception):
    """Base exception for all geotoolkit errors.

    Provides structured error information with metadata, context, and recovery suggestions.
    """

    def __init__(self,
                 message: str,
                 category: ErrorCategory,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                 error_code: Optional[str] = None,
                 location: Optional[Sequence[float]] = None,
                 metadata: Optional[Dict[str, Any]] = None,
                 cause: Optional[Exception] = None,
                 recovery_suggestions: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.error_code = error_code or f"{category.value}_{int(time.time())}"
        self.metadata = metadata or {}
        if location is not None:
            self.metadata['location'] = list(location)
        self.cause = cause
        self.recovery_suggestions = recovery_suggestions or []
        self.timestamp = time.time()

    @property
    def location(self) -> Optional[List[float]]:
        """Position the error refers to, if any."""
        return self.metadata.get('location')

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging and serialization."""
        return {
            'error_code': self.error_code,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'metadata': self.metadata,
            'cause': str(self.cause) if self.cause else None,
            'recovery_suggestions': self.recovery_suggestions,
            'timestamp': self.timestamp
        }

    def __str__(self) -> str:
        return f"[{self.category.value.upper()}] {self.message}"


class GeometryError(GeoToolkitError):
    """Structural malformation detected while constructing a geometry."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('recovery_suggestions', [
            "Check the number of positions for the geometry type",
            "Close polygon rings so the first and last positions match",
            "Run ValidationEngine.fix() on repairable input"
        ])
        super().__init__(
            message=message,
            category=ErrorCategory.GEOMETRY,
            severity=ErrorSeverity.HIGH,
            **kwargs
        )


class TopologyError(GeoToolkitError):
    """Unknown relationship, unsupported pairing, or negative cycle."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('recovery_suggestions', [
            "Use one of the supported relationship names",
            "Remove negative-cost cycles before routing"
        ])
        super().__init__(
            message=message,
            category=ErrorCategory.TOPOLOGY,
            severity=ErrorSeverity.HIGH,
            **kwargs
        )


class ProjectionError(GeoToolkitError):
    """Unregistered CRS code or malformed projection definition."""

    def __init__(self, message: str, code: Optional[str] = None, **kwargs):
        metadata = kwargs.pop('metadata', {}) or {}
        if code is not None:
            metadata['code'] = code
        kwargs.setdefault('recovery_suggestions', [
            "Use an EPSG:<n> code registered in the ProjectionRegistry",
            "Register a custom projection before transforming"
        ])
        super().__init__(
            message=message,
            category=ErrorCategory.PROJECTION,
            severity=ErrorSeverity.HIGH,
            metadata=metadata,
            **kwargs
        )


class QueryParseError(GeoToolkitError):
    """Malformed WHERE clause or spatial query."""

    def __init__(self, message: str, expression: Optional[str] = None,
                 position: Optional[int] = None, **kwargs):
        metadata = kwargs.pop('metadata', {}) or {}
        if expression is not None:
            metadata['expression'] = expression[:200]
        if position is not None:
            metadata['position'] = position
        kwargs.setdefault('recovery_suggestions', [
            "Check operator spelling and quoting of string literals",
            "Balance parentheses in the expression"
        ])
        super().__init__(
            message=message,
            category=ErrorCategory.QUERY,
            metadata=metadata,
            **kwargs
        )


class AnalysisError(GeoToolkitError):
    """Invalid parameters passed to an analysis algorithm."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('recovery_suggestions', [
            "Check the parameter ranges documented for the operation"
        ])
        super().__init__(
            message=message,
            category=ErrorCategory.ANALYSIS,
            **kwargs
        )


class OperationCancelledError(GeoToolkitError):
    """Raised when a cancellation token fires during a long-running loop."""

    def __init__(self, message: str, reason: str = "manual_cancel", **kwargs):
        metadata = kwargs.pop('metadata', {}) or {}
        metadata['reason'] = reason
        super().__init__(
            message=message,
            category=ErrorCategory.CANCELLATION,
            severity=ErrorSeverity.LOW,
            metadata=metadata,
            **kwargs
        )
        self.reason = reason


def report_error(error: GeoToolkitError, component: str) -> GeoToolkitError:
    """Log and count an error, returning it so callers can ``raise report_error(...)``."""
    get_logging_manager().log_error(error, component, error_code=error.error_code)
    return error

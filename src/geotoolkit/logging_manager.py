"""Structured logging and monitoring system for geotoolkit.

Provides JSON-based structured logging with per-operation timing, error and
cancellation accounting, using structlog and prometheus_client.
"""

import sys
import time
import uuid
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Dict, Optional
from contextlib import contextmanager
from dataclasses import dataclass, field

import structlog
from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, REGISTRY
from prometheus_client import generate_latest

from .config_manager import LoggingConfig, LogLevel, get_config_manager


@dataclass
class LogContext:
    """Context information for structured logging."""
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    operation: Optional[str] = None
    component: Optional[str] = None
    geometry_type: Optional[str] = None
    crs: Optional[str] = None
    start_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary for logging."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


class MetricsCollector:
    """Prometheus metrics collector for geotoolkit engines."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics collector.

        Args:
            registry: Prometheus registry to use. Defaults to global registry.
        """
        self.registry = registry or REGISTRY

        self.operation_counter = Counter(
            'geotoolkit_operations_total',
            'Total number of geometry and analysis operations',
            ['component', 'operation', 'status'],
            registry=self.registry
        )

        self.operation_duration = Histogram(
            'geotoolkit_operation_duration_seconds',
            'Operation execution time in seconds',
            ['component', 'operation'],
            buckets=[0.001, 0.01, 0.1, 0.5, 1.0, 5.0, 30.0],
            registry=self.registry
        )

        self.error_counter = Counter(
            'geotoolkit_errors_total',
            'Total number of errors',
            ['error_type', 'component'],
            registry=self.registry
        )

        self.cancellation_counter = Counter(
            'geotoolkit_cancellations_total',
            'Total number of cooperatively cancelled operations',
            ['component', 'reason'],
            registry=self.registry
        )

        self.index_size = Gauge(
            'geotoolkit_index_size',
            'Number of features held by a spatial index',
            ['index'],
            registry=self.registry
        )

    def record_operation(self, component: str, operation: str,
                         duration: float, status: str):
        """Record operation execution metrics."""
        self.operation_counter.labels(
            component=component,
            operation=operation,
            status=status
        ).inc()

        self.operation_duration.labels(
            component=component,
            operation=operation
        ).observe(duration)

    def record_error(self, error_type: str, component: str):
        """Record error metrics."""
        self.error_counter.labels(
            error_type=error_type,
            component=component
        ).inc()

    def record_cancellation(self, component: str, reason: str):
        """Record cancellation metrics."""
        self.cancellation_counter.labels(component=component, reason=reason).inc()

    def update_index_size(self, index: str, size: int):
        """Update spatial index size gauge."""
        self.index_size.labels(index=index).set(size)

    def get_metrics(self) -> bytes:
        """Get metrics in Prometheus exposition format."""
        return generate_latest(self.registry)


class LoggingManager:
    """Centralized structured logging manager."""

    _instance: Optional['LoggingManager'] = None
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        """Singleton implementation."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
            return cls._instance

    def __init__(self, config: Optional[LoggingConfig] = None,
                 registry: Optional[CollectorRegistry] = None):
        """Initialize logging manager.

        Args:
            config: Logging configuration. Uses default if None.
            registry: Prometheus registry for metrics. Uses the global one if None.
        """
        # Prevent re-initialization in singleton
        if hasattr(self, '_initialized'):
            return

        self.config = config or LoggingConfig()
        self.metrics = MetricsCollector(registry)
        self._context = threading.local()
        self._initialized = True

        self._configure_structlog()
        self._configure_stdlib_logging()

        self.logger = structlog.get_logger("geotoolkit")
        self.logger.debug("Structured logging system initialized",
                          level=self.config.level.value)

    def _configure_structlog(self):
        """Configure structlog with processors and renderers."""
        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            self._add_context,
            self._add_correlation_id,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
        ]

        if self.config.level != LogLevel.DEBUG:
            processors.append(structlog.processors.JSONRenderer())
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=True))

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.stdlib.BoundLogger,
            logger_factory=structlog.stdlib.LoggerFactory(),
            context_class=dict,
            cache_logger_on_first_use=True,
        )

    def _configure_stdlib_logging(self):
        """Route the package logger to stderr and the optional rotating log file."""
        level = getattr(logging, self.config.level.value.upper())
        package_logger = logging.getLogger("geotoolkit")
        package_logger.handlers.clear()
        package_logger.propagate = False
        package_logger.setLevel(level)

        handlers = []
        if self.config.console_output:
            handlers.append(logging.StreamHandler(sys.stderr))
        if self.config.file_path:
            log_file = Path(self.config.file_path)
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=self.config.max_file_size,
                backupCount=self.config.backup_count
            ))

        for handler in handlers:
            handler.setLevel(level)
            handler.setFormatter(logging.Formatter('%(message)s'))
            package_logger.addHandler(handler)

    def _add_context(self, logger, method_name, event_dict):
        """Add context information to log entries."""
        context = getattr(self._context, 'context', None)
        if context:
            event_dict.update(context.to_dict())
        return event_dict

    def _add_correlation_id(self, logger, method_name, event_dict):
        """Add correlation ID to log entries."""
        if 'request_id' not in event_dict:
            event_dict['request_id'] = str(uuid.uuid4())
        return event_dict

    @contextmanager
    def context(self, **kwargs):
        """Context manager for structured logging context.

        Args:
            **kwargs: Context key-value pairs

        Example:
            with logging_manager.context(operation="buffer", component="transforms"):
                logger.info("Buffering geometry")
        """
        old_context = getattr(self._context, 'context', None)

        if old_context:
            new_context = LogContext(**{**old_context.__dict__, **kwargs})
        else:
            new_context = LogContext(**kwargs)

        self._context.context = new_context

        try:
            yield new_context
        finally:
            self._context.context = old_context

    @contextmanager
    def operation(self, component: str, operation: str, **context):
        """Time an engine operation, logging completion and recording metrics.

        Args:
            component: Engine name (e.g. ``"density"``)
            operation: Operation name (e.g. ``"kernel_density"``)
            **context: Additional fields logged with the completion event
        """
        start = time.perf_counter()
        status = "success"
        with self.context(component=component, operation=operation, start_time=time.time()):
            try:
                yield
            except Exception:
                status = "error"
                raise
            finally:
                duration = time.perf_counter() - start
                self.logger.debug("Operation completed", duration=duration,
                                  status=status, **context)
                if self.config.enable_metrics:
                    self.metrics.record_operation(component, operation, duration, status)

    def log_error(self, error: Exception, component: str, **context):
        """Log error with structured information.

        Args:
            error: Exception instance
            component: Component where error occurred
            **context: Additional context
        """
        error_type = type(error).__name__

        with self.context(operation="error", component=component):
            self.logger.error(
                f"Error in {component}: {str(error)}",
                error_type=error_type,
                **context
            )

        if self.config.enable_metrics:
            self.metrics.record_error(error_type, component)

    def log_cancellation(self, component: str, reason: str, **context):
        """Log a cooperative cancellation event."""
        with self.context(operation="cancellation", component=component):
            self.logger.warning("Operation cancelled", reason=reason, **context)

        if self.config.enable_metrics:
            self.metrics.record_cancellation(component, reason)

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics."""
        return self.metrics.get_metrics()

    def get_logger(self, name: Optional[str] = None):
        """Get structured logger instance.

        Args:
            name: Logger name. Uses caller's module name if None.

        Returns:
            Structured logger instance
        """
        return structlog.get_logger(name)


# Global logging manager instance
_logging_manager: Optional[LoggingManager] = None


def get_logging_manager(config: Optional[LoggingConfig] = None) -> LoggingManager:
    """Get global logging manager instance.

    Args:
        config: Logging configuration for initialization. Read from the
            global ConfigManager if None

    Returns:
        Global LoggingManager instance
    """
    global _logging_manager

    if _logging_manager is None:
        _logging_manager = LoggingManager(config or get_config_manager().get_logging_config())

    return _logging_manager


def get_logger(name: Optional[str] = None):
    """Get structured logger instance.

    Args:
        name: Logger name

    Returns:
        Structured logger instance
    """
    return get_logging_manager().get_logger(name)

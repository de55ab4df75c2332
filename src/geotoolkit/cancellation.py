"""Cooperative cancellation for long-running grid and pairwise algorithms.

Grid algorithms (kernel density, viewshed, interpolation, terrain) and O(n^2)
loops (clustering, distance matrices, self-intersection checks) accept an
optional ``CancellationToken`` and call ``check()`` once per outer iteration.
Cancellation is explicit (``cancel()``) or deadline based (``timeout``).
"""

import threading
import time
from enum import Enum
from typing import Optional

from .error_handler import OperationCancelledError
from .logging_manager import get_logging_manager


class CancelReason(Enum):
    """Reasons for operation cancellation."""
    MANUAL_CANCEL = "manual_cancel"    # cancel() called by the owner
    TIMEOUT = "timeout"                # Deadline passed


class CancellationToken:
    """Thread-safe cancellation flag with an optional deadline."""

    def __init__(self, timeout: Optional[float] = None):
        """
        Parameters
        ----------
        timeout : float, optional
            Seconds from creation after which the token reports cancellation.
        """
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self._event = threading.Event()
        self._reason: Optional[CancelReason] = None
        self._lock = threading.Lock()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self, reason: CancelReason = CancelReason.MANUAL_CANCEL) -> None:
        """Request cancellation. The first reason recorded wins."""
        with self._lock:
            if self._reason is None:
                self._reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel(CancelReason.TIMEOUT)
            return True
        return False

    @property
    def reason(self) -> Optional[CancelReason]:
        return self._reason

    def check(self, component: str = "unknown") -> None:
        """Raise ``OperationCancelledError`` if cancellation was requested."""
        if not self.is_cancelled:
            return
        reason = self._reason.value if self._reason else CancelReason.MANUAL_CANCEL.value
        get_logging_manager().log_cancellation(component, reason)
        raise OperationCancelledError(f"{component} cancelled ({reason})", reason=reason)


def check_cancelled(token: Optional[CancellationToken], component: str) -> None:
    """No-op when ``token`` is None, otherwise ``token.check(component)``."""
    if token is not None:
        token.check(component)

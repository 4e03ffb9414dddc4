"""
Cooperative cancellation for long-running stack operations.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from .models import CancelledError, RunState

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe flag checked by the engine at safe points only.

    A request made while a branch is being moved or pushed takes effect at
    the next check, after that branch's step has completed.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("Cancellation requested")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(
        self,
        stage: RunState,
        completed: Optional[List[str]] = None,
        pending: Optional[List[str]] = None,
    ) -> None:
        """Raise ``CancelledError`` if cancellation was requested."""
        if self._event.is_set():
            raise CancelledError(stage, completed, pending)

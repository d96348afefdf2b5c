"""Cooperative cancellation for a run."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class AbortSignal:
    """Read side of an ``AbortController``, handed to step bodies."""

    def __init__(self) -> None:
        self.aborted = False
        self.reason: Any = None
        self._event = asyncio.Event()
        self._listeners: list[Callable[[Any], None]] = []

    def add_listener(self, callback: Callable[[Any], None]) -> None:
        """Call ``callback(reason)`` when the signal fires (immediately if it already has)."""
        if self.aborted:
            callback(self.reason)
            return
        self._listeners.append(callback)

    async def wait(self) -> Any:
        """Block until the signal fires; returns the abort reason."""
        await self._event.wait()
        return self.reason

    def _fire(self, reason: Any) -> None:
        self.aborted = True
        self.reason = reason
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for callback in listeners:
            try:
                callback(reason)
            except Exception as e:
                logger.error(f"Abort listener error: {e}")


class AbortController:
    """
    Fires a run's abort signal.

    Aborting never interrupts a step body that is already running. The
    engine checks the signal after each entry and reports the entry as
    canceled, and step bodies can poll ``signal.aborted`` themselves.
    """

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: Any = None) -> None:
        if self.signal.aborted:
            return
        logger.info(f"Run aborted{f': {reason}' if reason else ''}")
        self.signal._fire(reason)

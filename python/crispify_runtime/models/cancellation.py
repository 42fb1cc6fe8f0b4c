"""Cooperative cancellation for a single generation call."""

import threading
from typing import Optional


class CancellationToken:
    """
    Shared flag settable from any thread, polled by the generation loop

    Cancellation is non-preemptive: an in-flight decode call always runs to
    completion and the flag is observed at the next token iteration.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout; returns the cancelled flag"""
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"

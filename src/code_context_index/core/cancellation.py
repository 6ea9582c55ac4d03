"""
Cooperative cancellation.

A CancellationToken is a flag that work checks at chunk and embedding-task
boundaries. Tokens can be linked: a child token is cancelled whenever its
parent is, which lets one caller-supplied token abort several phases.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, List, Optional

from .errors import OperationCancelledError


class CancellationToken:
    """Thread-safe cancellation flag with async waiting support."""

    def __init__(self, parent: Optional["CancellationToken"] = None) -> None:
        self._cancelled = False
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._parent = parent
        self._unlink: Optional[Callable[[], None]] = None

        if parent is not None:
            self._unlink = parent.on_cancel(self.cancel)

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback fired once on cancellation.

        Runs immediately if the token is already cancelled. Returns a function
        that unregisters the callback.
        """
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return lambda: self._remove(callback)

        callback()
        return lambda: None

    def _remove(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def link(self) -> "CancellationToken":
        """Return a child token cancelled together with this one."""
        return CancellationToken(parent=self)

    def detach(self) -> None:
        """Stop following the parent token."""
        if self._unlink is not None:
            self._unlink()
            self._unlink = None

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelledError()

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        if self._cancelled:
            return

        loop = asyncio.get_running_loop()
        event = asyncio.Event()
        unregister = self.on_cancel(lambda: loop.call_soon_threadsafe(event.set))
        try:
            await event.wait()
        finally:
            unregister()

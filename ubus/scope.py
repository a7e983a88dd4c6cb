"""Cancellable handles for live resources and the scope that owns them.

Every subscription, timer and view hands back a ``Subscription``-like handle.
A ``ResourceScope`` collects those handles for the lifetime of their owner
(a session, a view) and releases all of them when the owner goes away,
whatever the exit path.
"""

import logging
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Subscription:
    """Handle returned by every subscribe-style call. ``cancel`` is idempotent."""

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None, name: str = ""):
        self._on_cancel = on_cancel
        self.name = name
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        on_cancel, self._on_cancel = self._on_cancel, None
        if on_cancel is not None:
            on_cancel()

    def __repr__(self):
        state = "active" if self.active else "cancelled"
        return f"<Subscription {self.name or id(self)} {state}>"


class ResourceScope:
    def __init__(self, name: str = ""):
        self.name = name
        self._handles: List[Cancellable] = []
        self.closed = False

    def add(self, handle: Cancellable) -> Cancellable:
        # A handle acquired after teardown is released straight away
        if self.closed:
            handle.cancel()
            return handle
        self._handles.append(handle)
        return handle

    def discard(self, handle: Cancellable) -> None:
        if handle in self._handles:
            self._handles.remove(handle)

    def __len__(self):
        return len(self._handles)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        handles, self._handles = self._handles, []
        for handle in reversed(handles):
            try:
                handle.cancel()
            except Exception:
                logger.exception("Failed to release %r in scope %s", handle, self.name)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

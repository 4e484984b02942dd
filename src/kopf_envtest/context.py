"""Cancellation context shared by the orchestrator and the manager."""

from __future__ import annotations

import threading
import weakref
from typing import Self

__all__ = ["Context"]


class Context:
    """A cancellation scope that can be observed from any thread.

    Cancelling a context cancels every context derived from it with `child`,
    but not its parent. Cancellation is one-way and idempotent. A parent
    only holds weak references to its children and forgets them once they
    are cancelled, so a long-lived parent can be reused for any number of
    runs.

    The orchestrator derives one child context per run. Cancelling that
    context is the only way the manager is told to stop, and cancelling the
    parent passed in by the caller is the hook for wrapping a run in an
    external timeout.

    Parameters
    ----------
    parent
        Context from which this one is derived, if any. If the parent is
        already cancelled, the new context starts out cancelled.
    """

    def __init__(self, parent: Context | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: weakref.WeakSet[Context] = weakref.WeakSet()
        self._parent = parent
        if parent is not None:
            parent._adopt(self)

    @classmethod
    def background(cls) -> Self:
        """Create a root context that is only cancelled explicitly."""
        return cls()

    @property
    def cancelled(self) -> bool:
        """Whether this context has been cancelled."""
        return self._event.is_set()

    @property
    def stop_flag(self) -> threading.Event:
        """Event set on cancellation, suitable as a Kopf ``stop_flag``."""
        return self._event

    def cancel(self) -> None:
        """Cancel this context and all contexts derived from it."""
        with self._lock:
            self._event.set()
            children = list(self._children)
            self._children.clear()
        for child in children:
            child.cancel()
        parent, self._parent = self._parent, None
        if parent is not None:
            parent._release(self)

    def child(self) -> Context:
        """Derive a new context that is cancelled along with this one."""
        return Context(self)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the context is cancelled.

        Parameters
        ----------
        timeout
            Maximum time to wait in seconds, or `None` to wait forever.

        Returns
        -------
        bool
            Whether the context was cancelled.
        """
        return self._event.wait(timeout)

    def _adopt(self, child: Context) -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.add(child)
                return
        child.cancel()

    def _release(self, child: Context) -> None:
        with self._lock:
            self._children.discard(child)

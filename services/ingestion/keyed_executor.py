"""Per-key serialisation primitives.

``KeyedLocks``          — one ``threading.Lock`` per key, created lazily.
``KeyedSerialExecutor`` — a shared thread pool where work submitted under
                          the same key runs strictly one-at-a-time in
                          submission order, while different keys run in
                          parallel.

The executor keeps a pending deque per key and at most one drain task
per key on the pool; the drain task runs queued callables until the
deque is empty. Exceptions from a callable are logged and never stop
the drain, so one failing unit of work cannot wedge a device.
"""

from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Deque, Dict, Tuple

import structlog

logger = structlog.get_logger(__name__)


class KeyedLocks:
    """Lazily created lock per key. The registry lock only guards creation."""

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, key: str) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is not None:
            return lock
        with self._registry_lock:
            return self._locks.setdefault(key, threading.Lock())

    def __len__(self) -> int:
        return len(self._locks)


class KeyedSerialExecutor:
    """Single-writer-per-key work queue on top of ``ThreadPoolExecutor``.

    Usage::

        executor = KeyedSerialExecutor(max_workers=8)
        fut = executor.submit("DEV-001", process_window, readings)
        executor.shutdown()
    """

    def __init__(self, max_workers: int = 8, name: str = "ingest") -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._lock = threading.Lock()
        self._pending: Dict[str, Deque[Tuple[Future, Callable, tuple, dict]]] = {}
        self._active: set = set()
        self._idle = threading.Condition(self._lock)

    def submit(self, key: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Queue *fn* behind earlier work for *key*. Returns its future."""
        fut: Future = Future()
        with self._lock:
            self._pending.setdefault(key, deque()).append((fut, fn, args, kwargs))
            if key in self._active:
                return fut
            self._active.add(key)
        self._pool.submit(self._drain, key)
        return fut

    def _drain(self, key: str) -> None:
        while True:
            with self._lock:
                queue = self._pending.get(key)
                if not queue:
                    self._pending.pop(key, None)
                    self._active.discard(key)
                    if not self._active:
                        self._idle.notify_all()
                    return
                fut, fn, args, kwargs = queue.popleft()

            if not fut.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:
                logger.exception("keyed_task_failed", key=key, task=getattr(fn, "__name__", repr(fn)))
                fut.set_exception(exc)
            else:
                fut.set_result(result)

    def pending(self, key: str) -> int:
        with self._lock:
            return len(self._pending.get(key, ()))

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every key's queue is drained. Returns False on timeout."""
        with self._lock:
            return self._idle.wait_for(lambda: not self._active, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        if wait:
            self.wait_idle()
        self._pool.shutdown(wait=wait)

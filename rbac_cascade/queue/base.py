from __future__ import annotations

import threading
from typing import Dict, List, Protocol

from rbac_cascade.core.models import BindingKey


class BindingScheduler(Protocol):
    """
    Re-enqueue sink for the binding reconciler.

    Fire-and-forget: implementations may coalesce duplicates. Raising signals that the
    signal could not be handed off at all.
    """

    def enqueue(self, namespace: str, name: str) -> None: ...


class InMemoryBindingQueue:
    """
    In-process scheduler that coalesces pending duplicates (like a controller workqueue).

    Used for one-shot CLI runs and tests; the worker publishes to JetStream instead.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # dicts keep insertion order, so drain() is FIFO.
        self._pending: Dict[BindingKey, None] = {}
        self.total_signals = 0

    def enqueue(self, namespace: str, name: str) -> None:
        with self._lock:
            self.total_signals += 1
            self._pending.setdefault(BindingKey(namespace, name), None)

    def drain(self) -> List[BindingKey]:
        with self._lock:
            out = list(self._pending.keys())
            self._pending.clear()
            return out

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any, List

import pytest

from rbac_cascade.core.models import BindingKey
from rbac_cascade.queue.base import InMemoryBindingQueue
from rbac_cascade.queue.nats_jetstream import JetStreamBindingScheduler


def test_in_memory_queue_coalesces_pending_duplicates() -> None:
    q = InMemoryBindingQueue()
    q.enqueue("p-1", "b1")
    q.enqueue("p-1", "b2")
    q.enqueue("p-1", "b1")

    assert len(q) == 2
    assert q.total_signals == 3
    assert q.drain() == [BindingKey("p-1", "b1"), BindingKey("p-1", "b2")]
    assert q.drain() == []


class _FakeJs:
    def __init__(self) -> None:
        self.published: List[tuple] = []

    async def publish(self, subject: str, data: bytes) -> Any:
        self.published.append((subject, json.loads(data.decode("utf-8"))))
        return SimpleNamespace(seq=len(self.published))


def _scheduler() -> JetStreamBindingScheduler:
    s = JetStreamBindingScheduler(nats_url="nats://x:4222", stream="RT", subject="rt.bindings")
    s._nc = object()
    s._js = _FakeJs()
    return s


def test_enqueue_requires_a_bound_loop() -> None:
    with pytest.raises(RuntimeError):
        _scheduler().enqueue("p-1", "b1")


def test_enqueue_from_worker_thread_publishes_job() -> None:
    s = _scheduler()

    async def _main() -> None:
        s.bind_loop()
        await asyncio.to_thread(s.enqueue, "p-1", "b1")
        # Calling from the loop thread itself would deadlock.
        with pytest.raises(RuntimeError):
            s.enqueue("p-1", "b2")

    asyncio.run(_main())

    subject, payload = s._js.published[0]
    assert subject == "rt.bindings"
    assert (payload["namespace"], payload["name"]) == ("p-1", "b1")
    assert set(payload) == {"namespace", "name", "enqueued_at"}
    assert len(s._js.published) == 1

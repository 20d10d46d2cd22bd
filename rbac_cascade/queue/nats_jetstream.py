from __future__ import annotations

import asyncio
import json
import threading
from typing import Any, Optional, Tuple

from rbac_cascade.config import CascadeConfig, load_config
from rbac_cascade.core.models import BindingEnqueueJob


class JetStreamBindingScheduler:
    """
    Publishes binding re-enqueue signals to NATS JetStream.

    Notes:
    - The lifecycle handlers are synchronous and run in worker threads, so `enqueue` hands the
      publish over to the event loop the scheduler is bound to and waits for the ack.
    - Stream creation is best-effort for dev; production can pre-provision streams.
    """

    def __init__(self, *, nats_url: str, stream: str, subject: str) -> None:
        self.nats_url = (nats_url or "").strip()
        self.stream = (stream or "").strip()
        self.subject = (subject or "").strip()
        self._nc: Any = None
        self._js: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None

    async def _ensure_connected(self) -> None:
        if self._nc is not None and self._js is not None:
            return

        try:
            import nats  # type: ignore[import-not-found]
            from nats.js.errors import NotFoundError  # type: ignore[import-not-found]
        except Exception as e:
            raise RuntimeError("Missing NATS client dependency. Install `nats-py` to use JetStream.") from e

        nc = await nats.connect(servers=[self.nats_url])
        js = nc.jetstream()

        # Best-effort stream provisioning (idempotent).
        try:
            await js.stream_info(self.stream)
        except NotFoundError:
            await js.add_stream(name=self.stream, subjects=[self.subject])

        self._nc = nc
        self._js = js

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Bind to the running loop; must be called from inside it."""
        self._loop = loop or asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()

    async def warmup(self) -> None:
        """Eagerly connect so the worker fails fast if JetStream is unreachable."""
        if self._loop is None:
            self.bind_loop()
        await self._ensure_connected()

    async def publish(self, job: BindingEnqueueJob) -> str:
        await self._ensure_connected()
        assert self._js is not None

        payload = job.model_dump(mode="json")
        data = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        pa = await self._js.publish(self.subject, data)
        # `pa.seq` is the stream sequence number.
        return str(getattr(pa, "seq", "") or "")

    def enqueue(self, namespace: str, name: str) -> None:
        if self._loop is None:
            raise RuntimeError("JetStreamBindingScheduler is not bound to an event loop")
        if threading.get_ident() == self._loop_thread:
            raise RuntimeError("enqueue() would block the event loop; call it from a worker thread")
        job = BindingEnqueueJob(namespace=namespace, name=name)
        fut = asyncio.run_coroutine_threadsafe(self.publish(job), self._loop)
        fut.result()

    async def close(self) -> None:
        nc, self._nc, self._js = self._nc, None, None
        if nc is not None:
            await nc.drain()


_cached: Optional[JetStreamBindingScheduler] = None
_cached_key: Optional[Tuple[str, str, str]] = None


def get_scheduler_from_config(cfg: Optional[CascadeConfig] = None) -> JetStreamBindingScheduler:
    """Cached scheduler keyed by (NATS_URL, JETSTREAM_STREAM, JETSTREAM_BINDINGS_SUBJECT)."""
    global _cached, _cached_key

    cfg = cfg or load_config()
    key = (cfg.nats_url, cfg.stream, cfg.bindings_subject)
    if _cached is not None and _cached_key == key:
        return _cached
    _cached = JetStreamBindingScheduler(nats_url=cfg.nats_url, stream=cfg.stream, subject=cfg.bindings_subject)
    _cached_key = key
    return _cached

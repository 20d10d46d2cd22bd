from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
from typing import Any, AsyncIterator, Dict, Optional

from rbac_cascade.api.worker import build_lifecycle, handle_event
from rbac_cascade.config import CascadeConfig, load_config
from rbac_cascade.controllers.role_template_lifecycle import RoleTemplateLifecycle
from rbac_cascade.core.errors import AggregateError
from rbac_cascade.core.models import LifecycleEvent
from rbac_cascade.index.reverse_index import ReverseIndex

logger = logging.getLogger(__name__)

IN_PROGRESS_SECONDS = 30


def _ns_from_seconds(seconds: int) -> int:
    return max(0, int(seconds)) * 1_000_000_000


def decide_disposition(*, failed: bool, delivery_count: int, max_deliver: int) -> str:
    """
    Return one of: "ack", "nak", "dlq".
    """
    max_deliver_i = max(1, int(max_deliver or 1))
    delivered_i = max(1, int(delivery_count or 1))
    if not failed:
        return "ack"
    if delivered_i >= max_deliver_i:
        return "dlq"
    return "nak"


class TemplateLocks:
    """
    Serializes handling per RoleTemplate name; different templates run concurrently.

    A name's lock is dropped once nobody holds or waits on it, so the map only covers
    templates with events in flight.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(name, asyncio.Lock())
        self._users[name] = self._users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[name] -= 1
            if self._users[name] <= 0:
                del self._users[name]
                self._locks.pop(name, None)

    def __len__(self) -> int:
        return len(self._locks)


async def _msg_delivery_count(msg: Any) -> int:
    """
    Best-effort delivery count from JetStream message metadata.
    """
    md = getattr(msg, "metadata", None)
    n = getattr(md, "num_delivered", None) if md is not None else None
    try:
        return int(n or 1)
    except Exception:
        return 1


async def _safe_in_progress(msg: Any) -> None:
    try:
        await msg.in_progress()
    except Exception:
        return


async def _dlq_publish(js: Any, *, dlq_subject: str, payload: dict) -> None:
    try:
        data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True).encode("utf-8")
    except Exception:
        data = b"{}"
    try:
        await js.publish(dlq_subject, data)
    except Exception:
        # Never crash the worker loop due to DLQ publishing.
        logger.warning(f"DLQ publish to {dlq_subject} failed", exc_info=True)


async def _handle_msg(
    *,
    js: Any,
    msg: Any,
    lifecycle: RoleTemplateLifecycle,
    locks: TemplateLocks,
    max_deliver: int,
    dlq_subject: str,
) -> str:
    """
    Handle one lifecycle event message. Returns the disposition applied.
    """
    delivery_count = await _msg_delivery_count(msg)

    try:
        data = getattr(msg, "data", b"") or b""
        event = LifecycleEvent.model_validate(json.loads(data.decode("utf-8")))
    except Exception as e:
        logger.error(f"Dropping unparseable lifecycle event: {e}")
        await _dlq_publish(
            js,
            dlq_subject=dlq_subject,
            payload={
                "kind": "poison_message",
                "reason": "json_or_schema_error",
                "delivery_count": delivery_count,
                "raw": (getattr(msg, "data", b"") or b"")[:4096].decode("utf-8", errors="replace"),
            },
        )
        await msg.ack()
        return "dlq"

    # Heartbeat: keep the ack timer extended while a remove fans out.
    stop = asyncio.Event()

    async def _heartbeat() -> None:
        while not stop.is_set():
            await asyncio.sleep(IN_PROGRESS_SECONDS)
            if stop.is_set():
                break
            await _safe_in_progress(msg)

    hb_task = asyncio.create_task(_heartbeat())
    error: Optional[Exception] = None
    try:
        async with locks.hold(event.template.name):
            await asyncio.to_thread(handle_event, event, lifecycle)
    except AggregateError as e:
        error = e
        logger.error(f"RoleTemplate {event.template.name} {event.kind} failed on {len(e.failures)} cluster(s): {e}")
    except Exception as e:
        error = e
        logger.error(f"RoleTemplate {event.template.name} {event.kind} failed: {e}", exc_info=True)
    finally:
        stop.set()
        hb_task.cancel()

    disposition = decide_disposition(failed=error is not None, delivery_count=delivery_count, max_deliver=max_deliver)
    if disposition == "ack":
        await msg.ack()
        return disposition
    if disposition == "nak":
        await msg.nak()
        logger.warning(f"RoleTemplate {event.template.name} {event.kind} NAKed (delivery #{delivery_count})")
        return disposition
    # DLQ on final attempt
    await _dlq_publish(
        js,
        dlq_subject=dlq_subject,
        payload={
            "kind": "event_failed",
            "delivery_count": delivery_count,
            "max_deliver": max_deliver,
            "error": str(error),
            "event": event.model_dump(mode="json"),
        },
    )
    await msg.ack()
    return disposition


async def _ensure_stream(js: Any, *, stream: str, subjects: list[str]) -> None:
    """Best-effort stream provisioning for dev (idempotent)."""
    from nats.js.errors import NotFoundError  # type: ignore[import-not-found]

    try:
        si = await js.stream_info(stream)
    except NotFoundError:
        logger.info(f"Stream '{stream}' not found, creating...")
        await js.add_stream(name=stream, subjects=subjects)
        return

    cfg = getattr(si, "config", None)
    current = list(getattr(cfg, "subjects", None) or [])
    missing = [s for s in subjects if s not in current]
    if cfg is not None and missing:
        cfg.subjects = current + missing
        try:
            await js.update_stream(config=cfg)
        except Exception:
            logger.warning(f"Could not add subjects {missing} to stream '{stream}'", exc_info=True)


async def run_worker_forever(cfg: Optional[CascadeConfig] = None) -> None:
    """
    JetStream worker loop for RoleTemplate lifecycle events.

    Starts the binding feed (list + watch into the reverse index), waits for the first
    replay, then consumes events from JETSTREAM_EVENTS_SUBJECT and publishes binding
    re-enqueue signals to JETSTREAM_BINDINGS_SUBJECT.
    """
    try:
        import nats  # type: ignore[import-not-found]
        from nats.errors import TimeoutError  # type: ignore[import-not-found]
    except Exception as e:
        raise RuntimeError("nats-py is required to run the JetStream worker") from e

    from rbac_cascade.feed.binding_watch import BindingFeed
    from rbac_cascade.providers.k8s_provider import get_management_api_client
    from rbac_cascade.queue.nats_jetstream import get_scheduler_from_config

    cfg = cfg or load_config()

    index = ReverseIndex()
    feed_stop = threading.Event()
    feed = BindingFeed.from_api_client(
        index, get_management_api_client(cfg.kubeconfig), resync_seconds=cfg.resync_seconds
    )
    feed.start(feed_stop)

    scheduler: Any = None
    nc: Any = None
    try:
        logger.info("Waiting for initial binding replay...")
        await asyncio.to_thread(feed.wait_synced)
        logger.info(f"✓ Reverse index ready ({len(index)} binding(s))")

        scheduler = get_scheduler_from_config(cfg)
        await scheduler.warmup()
        lifecycle = build_lifecycle(cfg, index=index, scheduler=scheduler)

        logger.info(f"Connecting to NATS at {cfg.nats_url}...")
        nc = await nats.connect(servers=[cfg.nats_url])
        js = nc.jetstream()
        await _ensure_stream(js, stream=cfg.stream, subjects=[cfg.events_subject, cfg.bindings_subject])
        try:
            await js.stream_info(f"{cfg.stream}_DLQ")
        except Exception:
            try:
                await js.add_stream(name=f"{cfg.stream}_DLQ", subjects=[cfg.dlq_subject])
            except Exception:
                logger.warning("DLQ stream provisioning failed", exc_info=True)

        try:
            from nats.js.api import AckPolicy, ConsumerConfig, DeliverPolicy  # type: ignore[import-not-found]

            consumer_cfg = ConsumerConfig(
                durable_name=cfg.durable,
                ack_policy=AckPolicy.EXPLICIT,
                ack_wait=_ns_from_seconds(cfg.ack_wait_seconds),
                max_deliver=cfg.max_deliver,
                deliver_policy=DeliverPolicy.ALL,
                filter_subject=cfg.events_subject,
            )
            await js.add_consumer(cfg.stream, config=consumer_cfg)
        except Exception:
            # Already exists or can't be created; pull_subscribe may still bind.
            logger.info(f"Using existing consumer '{cfg.durable}'")

        sub = await js.pull_subscribe(cfg.events_subject, durable=cfg.durable, stream=cfg.stream)
        sem = asyncio.Semaphore(cfg.worker_concurrency)
        locks = TemplateLocks()

        async def _guarded(msg: Any) -> None:
            async with sem:
                try:
                    await _handle_msg(
                        js=js,
                        msg=msg,
                        lifecycle=lifecycle,
                        locks=locks,
                        max_deliver=cfg.max_deliver,
                        dlq_subject=cfg.dlq_subject,
                    )
                except Exception:
                    logger.error("Message handling failed", exc_info=True)
                    try:
                        await msg.nak()
                    except Exception:
                        pass

        logger.info(f"✓ Worker started (concurrency={cfg.worker_concurrency}, subject='{cfg.events_subject}')")
        while True:
            try:
                msgs = await sub.fetch(cfg.fetch_batch, timeout=cfg.fetch_timeout_seconds)
            except (TimeoutError, asyncio.TimeoutError):
                continue
            tasks = [asyncio.create_task(_guarded(m)) for m in (msgs or [])]
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        feed_stop.set()
        if scheduler is not None:
            await scheduler.close()
        if nc is not None:
            await nc.drain()

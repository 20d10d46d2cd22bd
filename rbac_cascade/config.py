from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

CLUSTER_SOURCES = ("kubeconfig", "management", "static")


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _split_csv(raw: str) -> List[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


@dataclass(frozen=True)
class CascadeConfig:
    # Kubernetes access
    kubeconfig: Optional[str] = None
    cluster_source: str = "kubeconfig"
    static_clusters: List[str] = field(default_factory=list)

    # Remove fan-out
    fanout_workers: int = 4
    probe_timeout_seconds: int = 5

    # Binding feed
    resync_seconds: int = 600

    # JetStream
    nats_url: str = "nats://127.0.0.1:4222"
    stream: str = "RBAC_CASCADE"
    events_subject: str = "rbac_cascade.roletemplates"
    bindings_subject: str = "rbac_cascade.bindings"
    durable: str = "ROLETEMPLATE_WORKERS"
    max_deliver: int = 5
    ack_wait_seconds: int = 300
    dlq_subject: str = "rbac_cascade.dlq"

    # Worker loop
    worker_concurrency: int = 4
    fetch_batch: int = 10
    fetch_timeout_seconds: int = 1


@lru_cache(maxsize=1)
def load_config() -> CascadeConfig:
    """
    Load configuration from environment variables.

    Integers that fail to parse fall back to their defaults; an unknown
    CASCADE_CLUSTER_SOURCE is rejected since it would silently skip cleanup.
    """
    source = _env("CASCADE_CLUSTER_SOURCE", "kubeconfig").lower()
    if source not in CLUSTER_SOURCES:
        raise ValueError(f"CASCADE_CLUSTER_SOURCE must be one of {', '.join(CLUSTER_SOURCES)} (got {source!r})")

    stream = _env("JETSTREAM_STREAM", "RBAC_CASCADE")
    prefix = stream.lower()

    return CascadeConfig(
        kubeconfig=_env("KUBECONFIG") or None,
        cluster_source=source,
        static_clusters=_split_csv(os.getenv("CASCADE_CLUSTERS", "")),
        fanout_workers=max(1, _env_int("CASCADE_FANOUT_WORKERS", 4)),
        probe_timeout_seconds=max(1, _env_int("CASCADE_PROBE_TIMEOUT_SECONDS", 5)),
        resync_seconds=max(30, _env_int("CASCADE_RESYNC_SECONDS", 600)),
        nats_url=_env("NATS_URL", "nats://127.0.0.1:4222"),
        stream=stream,
        events_subject=_env("JETSTREAM_EVENTS_SUBJECT", f"{prefix}.roletemplates"),
        bindings_subject=_env("JETSTREAM_BINDINGS_SUBJECT", f"{prefix}.bindings"),
        durable=_env("JETSTREAM_DURABLE", "ROLETEMPLATE_WORKERS"),
        max_deliver=max(1, _env_int("JETSTREAM_MAX_DELIVER", 5)),
        ack_wait_seconds=max(10, _env_int("JETSTREAM_ACK_WAIT_SECONDS", 300)),
        dlq_subject=_env("JETSTREAM_DLQ_SUBJECT", f"{prefix}.dlq"),
        worker_concurrency=max(1, _env_int("WORKER_CONCURRENCY", 4)),
        fetch_batch=max(1, _env_int("WORKER_FETCH_BATCH", 10)),
        fetch_timeout_seconds=max(1, _env_int("WORKER_FETCH_TIMEOUT_SECONDS", 1)),
    )

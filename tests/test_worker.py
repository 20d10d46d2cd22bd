from __future__ import annotations

import json
from typing import List

import pytest
from pydantic import ValidationError

import rbac_cascade.api.worker as worker
from rbac_cascade.config import CascadeConfig
from rbac_cascade.core.models import RoleTemplate
from rbac_cascade.index.reverse_index import ReverseIndex
from rbac_cascade.providers.cluster_registry import StaticClusterRegistry
from rbac_cascade.queue.base import InMemoryBindingQueue


class _SpyLifecycle:
    def __init__(self) -> None:
        self.calls: List[str] = []

    def create(self, t: RoleTemplate) -> RoleTemplate:
        self.calls.append(f"create:{t.name}")
        return t

    def updated(self, t: RoleTemplate) -> RoleTemplate:
        self.calls.append(f"updated:{t.name}")
        return t

    def remove(self, t: RoleTemplate) -> RoleTemplate:
        self.calls.append(f"remove:{t.name}")
        return t


def test_load_event_accepts_dict_str_and_bytes() -> None:
    raw = {"kind": "remove", "template": {"name": "project-member"}}
    for payload in (raw, json.dumps(raw), json.dumps(raw).encode("utf-8")):
        ev = worker.load_event(payload)
        assert ev.kind == "remove"
        assert ev.template.name == "project-member"


def test_load_event_rejects_empty_payload() -> None:
    with pytest.raises(ValidationError):
        worker.load_event("")


@pytest.mark.parametrize("kind", ["create", "updated", "remove"])
def test_handle_event_dispatches_by_kind(kind: str) -> None:
    spy = _SpyLifecycle()
    out = worker.handle_event(worker.load_event({"kind": kind, "template": {"name": "T"}}), spy)  # type: ignore[arg-type]
    assert spy.calls == [f"{kind}:T"]
    assert out.name == "T"


def test_build_lifecycle_wires_config() -> None:
    cfg = CascadeConfig(cluster_source="static", static_clusters=["a", "b"], fanout_workers=3)
    contexts = object()
    lc = worker.build_lifecycle(cfg, index=ReverseIndex(), scheduler=InMemoryBindingQueue(), contexts=contexts)  # type: ignore[arg-type]

    assert isinstance(lc.clusters, StaticClusterRegistry)
    assert [c.name for c in lc.clusters.list_clusters()] == ["a", "b"]
    assert lc.contexts is contexts
    assert lc.fanout_workers == 3

from __future__ import annotations

import threading
from typing import Any, Dict, List

import pytest
from kubernetes.client.rest import ApiException

from rbac_cascade.core.models import BindingKey
from rbac_cascade.feed.binding_watch import PRTB_PLURAL, BindingFeed, ResourceVersionExpired
from rbac_cascade.index.reverse_index import ReverseIndex


def _prtb(name: str, rt: str, ns: str = "p-1", rv: str = "1") -> Dict[str, Any]:
    return {
        "kind": "ProjectRoleTemplateBinding",
        "metadata": {"name": name, "namespace": ns, "resourceVersion": rv},
        "roleTemplateName": rt,
    }


class _FakeCustomApi:
    def __init__(self, items: List[Dict[str, Any]], rv: str = "100") -> None:
        self.items = items
        self.rv = rv
        self.list_calls: List[tuple] = []

    def list_cluster_custom_object(self, group: str, version: str, plural: str, **kwargs: Any) -> Dict[str, Any]:
        self.list_calls.append((group, version, plural, kwargs))
        return {"items": list(self.items), "metadata": {"resourceVersion": self.rv}}


class _FakeWatch:
    def __init__(self, events: List[Dict[str, Any]], *, error: Exception | None = None) -> None:
        self.events = events
        self.error = error
        self.stream_kwargs: Dict[str, Any] = {}
        self.stopped = False

    def stream(self, func, *args: Any, **kwargs: Any):
        self.stream_kwargs = dict(kwargs, args=args)
        for e in self.events:
            yield e
        if self.error is not None:
            raise self.error

    def stop(self) -> None:
        self.stopped = True


def test_replay_fills_index_and_returns_list_resource_version() -> None:
    idx = ReverseIndex()
    api = _FakeCustomApi([_prtb("b1", "T1"), _prtb("b2", "T1"), {"kind": "Other", "metadata": {"name": "x"}}])
    feed = BindingFeed(idx, api)

    assert feed.replay() == "100"
    assert [b.name for b in idx.lookup("T1")] == ["b1", "b2"]
    assert api.list_calls[0][2] == PRTB_PLURAL
    assert feed.wait_synced(timeout=0)


def test_replay_drops_bindings_deleted_while_not_watching() -> None:
    idx = ReverseIndex()
    feed = BindingFeed(idx, _FakeCustomApi([_prtb("b1", "T1"), _prtb("b2", "T1")]))
    feed.replay()

    feed._custom = _FakeCustomApi([_prtb("b2", "T1")])
    feed.replay()

    assert [b.name for b in idx.lookup("T1")] == ["b2"]


def test_apply_event_added_modified_deleted() -> None:
    idx = ReverseIndex()
    feed = BindingFeed(idx, _FakeCustomApi([]))

    assert feed.apply_event({"type": "ADDED", "object": _prtb("b1", "T1", rv="5")}) == "5"
    feed.apply_event({"type": "MODIFIED", "object": _prtb("b1", "T2", rv="6")})
    assert idx.lookup("T1") == []
    assert [b.key for b in idx.lookup("T2")] == [BindingKey("p-1", "b1")]

    # Deletes only need the identity.
    feed.apply_event({"type": "DELETED", "object": {"metadata": {"name": "b1", "namespace": "p-1", "resourceVersion": "7"}}})
    assert idx.lookup("T2") == []


def test_apply_event_bookmark_and_errors() -> None:
    feed = BindingFeed(ReverseIndex(), _FakeCustomApi([]))
    assert feed.apply_event({"type": "BOOKMARK", "object": {"metadata": {"resourceVersion": "9"}}}) == "9"

    with pytest.raises(ResourceVersionExpired):
        feed.apply_event({"type": "ERROR", "object": {"kind": "Status", "code": 410, "message": "too old"}})
    with pytest.raises(RuntimeError):
        feed.apply_event({"type": "ERROR", "object": {"kind": "Status", "code": 500}})


def test_watch_once_streams_from_resource_version() -> None:
    idx = ReverseIndex()
    w = _FakeWatch([{"type": "ADDED", "object": _prtb("b1", "T1", rv="101")}])
    feed = BindingFeed(idx, _FakeCustomApi([]), watch_factory=lambda: w, resync_seconds=60)

    assert feed.watch_once("100") == "101"
    assert w.stream_kwargs["resource_version"] == "100"
    assert w.stream_kwargs["timeout_seconds"] == 60
    assert w.stopped
    assert [b.name for b in idx.lookup("T1")] == ["b1"]


def test_watch_once_translates_gone_into_expired() -> None:
    w = _FakeWatch([], error=ApiException(status=410, reason="Gone"))
    feed = BindingFeed(ReverseIndex(), _FakeCustomApi([]), watch_factory=lambda: w)
    with pytest.raises(ResourceVersionExpired):
        feed.watch_once("1")
    assert w.stopped


def test_run_forever_relists_after_expiry_and_stops() -> None:
    idx = ReverseIndex()
    api = _FakeCustomApi([_prtb("b1", "T1")])
    stop = threading.Event()
    watches: List[_FakeWatch] = []

    def _factory() -> _FakeWatch:
        if len(watches) >= 1:
            stop.set()
            w = _FakeWatch([])
        else:
            w = _FakeWatch([], error=ApiException(status=410, reason="Gone"))
        watches.append(w)
        return w

    feed = BindingFeed(idx, api, watch_factory=_factory, error_backoff_seconds=0)
    feed.run_forever(stop)

    assert len(api.list_calls) == 2
    assert [b.name for b in idx.lookup("T1")] == ["b1"]


def test_modified_into_unusable_object_drops_stale_entry() -> None:
    idx = ReverseIndex()
    feed = BindingFeed(idx, _FakeCustomApi([]))
    feed.apply_event({"type": "ADDED", "object": _prtb("b1", "T1")})

    feed.apply_event({"type": "MODIFIED", "object": _prtb("b1", "", rv="2")})

    assert idx.lookup("T1") == []
    assert len(idx) == 0

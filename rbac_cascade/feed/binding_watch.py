"""
Binding change feed: list + watch of ProjectRoleTemplateBindings on the management cluster.

The first list (and every re-list) is replayed into the index with `replace()`, so bindings
deleted while we were not watching drop out. After that each watch event updates the index
incrementally. An expired resourceVersion (410 Gone) forces a re-list.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

from rbac_cascade.core.models import BindingKey, binding_from_object
from rbac_cascade.index.reverse_index import ReverseIndex

logger = logging.getLogger(__name__)

PRTB_GROUP = "management.cattle.io"
PRTB_VERSION = "v3"
PRTB_PLURAL = "projectroletemplatebindings"


class ResourceVersionExpired(Exception):
    pass


def _resource_version(obj: Any) -> str:
    if not isinstance(obj, dict):
        return ""
    return str((obj.get("metadata") or {}).get("resourceVersion") or "")


class BindingFeed:
    def __init__(
        self,
        index: ReverseIndex,
        custom_api: Any,
        *,
        watch_factory: Optional[Callable[[], Any]] = None,
        resync_seconds: int = 600,
        error_backoff_seconds: float = 5.0,
    ) -> None:
        self.index = index
        self._custom = custom_api
        self._watch_factory = watch_factory
        self.resync_seconds = max(1, int(resync_seconds))
        self.error_backoff_seconds = max(0.0, float(error_backoff_seconds))
        self._synced = threading.Event()

    @classmethod
    def from_api_client(cls, index: ReverseIndex, api_client: Any, **kwargs: Any) -> "BindingFeed":
        from kubernetes import client

        return cls(index, client.CustomObjectsApi(api_client), **kwargs)

    def replay(self) -> str:
        """Full list into the index. Returns the list resourceVersion to watch from."""
        resp = self._custom.list_cluster_custom_object(PRTB_GROUP, PRTB_VERSION, PRTB_PLURAL) or {}
        items = resp.get("items") or []
        bindings = [b for b in (binding_from_object(i) for i in items) if b is not None]
        self.index.replace(bindings)
        self._synced.set()
        logger.info(f"Binding feed replayed {len(bindings)} binding(s)")
        return _resource_version(resp)

    def apply_event(self, event: Dict[str, Any]) -> str:
        """Apply one watch event to the index; returns its resourceVersion (or "")."""
        etype = str(event.get("type") or "")
        obj = event.get("object")

        if etype == "ERROR":
            code = (obj or {}).get("code") if isinstance(obj, dict) else None
            if code == 410:
                raise ResourceVersionExpired(str((obj or {}).get("message") or "resourceVersion expired"))
            raise RuntimeError(f"watch error: {obj}")
        if etype == "BOOKMARK":
            return _resource_version(obj)

        binding = None if etype == "DELETED" else binding_from_object(obj)
        if binding is not None:
            self.index.update(binding)
            return _resource_version(obj)

        # Deleted, or no longer a usable binding: drop whatever it was indexed under.
        meta = (obj.get("metadata") or {}) if isinstance(obj, dict) else {}
        name = (meta.get("name") or "").strip()
        if name:
            self.index.delete(BindingKey((meta.get("namespace") or "").strip(), name))
        return _resource_version(obj)

    def _new_watch(self) -> Any:
        if self._watch_factory is not None:
            return self._watch_factory()
        from kubernetes import watch

        return watch.Watch()

    def watch_once(self, resource_version: str) -> str:
        """Watch until the server closes the stream; returns the last seen resourceVersion."""
        from kubernetes.client.rest import ApiException

        rv = resource_version
        w = self._new_watch()
        try:
            for event in w.stream(
                self._custom.list_cluster_custom_object,
                PRTB_GROUP,
                PRTB_VERSION,
                PRTB_PLURAL,
                resource_version=rv,
                timeout_seconds=self.resync_seconds,
            ):
                rv = self.apply_event(event) or rv
        except ApiException as e:
            if e.status == 410:
                raise ResourceVersionExpired(str(e.reason)) from e
            raise
        finally:
            w.stop()
        return rv

    def run_forever(self, stop: threading.Event) -> None:
        rv = ""
        while not stop.is_set():
            try:
                if not rv:
                    rv = self.replay()
                rv = self.watch_once(rv)
            except ResourceVersionExpired as e:
                logger.info(f"Binding watch expired ({e}); re-listing")
                rv = ""
            except Exception as e:
                logger.warning(f"Binding feed error: {e}", exc_info=True)
                rv = ""
                stop.wait(self.error_backoff_seconds)

    def start(self, stop: threading.Event) -> threading.Thread:
        t = threading.Thread(target=self.run_forever, args=(stop,), name="binding-feed", daemon=True)
        t.start()
        return t

    def wait_synced(self, timeout: Optional[float] = None) -> bool:
        return self._synced.wait(timeout)

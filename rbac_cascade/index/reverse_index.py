"""
Reverse index: RoleTemplate name -> bindings that reference it.

The index is an incrementally maintained join over the binding collection. It is owned by
whoever builds it (the worker), filled by replaying the binding feed at startup and updated
per event after that.

Locking:
- updates for the same binding serialize on a stripe lock chosen by the binding key
- each template bucket has its own lock, so lookups never block on unrelated templates
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from rbac_cascade.core.models import BindingKey, RoleTemplateBinding

BINDING_INDEX_NAME = "management.cattle.io/prtb-by-role-template"

IndexFunc = Callable[[Any], List[str]]


def bindings_by_role_template(obj: Any) -> List[str]:
    if not isinstance(obj, RoleTemplateBinding):
        return []
    return [obj.role_template_name]


class ReverseIndex:
    def __init__(self, index_func: IndexFunc = bindings_by_role_template, *, stripes: int = 32) -> None:
        self.name = BINDING_INDEX_NAME
        self._index_func = index_func
        # Per-stripe map of binding key -> template names it is currently indexed under.
        self._stripes: List[Tuple[threading.Lock, Dict[BindingKey, Set[str]]]] = [
            (threading.Lock(), {}) for _ in range(max(1, int(stripes)))
        ]
        self._buckets: Dict[str, Dict[BindingKey, RoleTemplateBinding]] = {}
        self._bucket_locks: Dict[str, threading.Lock] = {}
        self._bucket_locks_guard = threading.Lock()

    def _stripe(self, key: BindingKey) -> Tuple[threading.Lock, Dict[BindingKey, Set[str]]]:
        return self._stripes[hash(key) % len(self._stripes)]

    def _bucket_lock(self, template_name: str, *, create: bool = True) -> Optional[threading.Lock]:
        lock = self._bucket_locks.get(template_name)
        if lock is not None or not create:
            return lock
        with self._bucket_locks_guard:
            return self._bucket_locks.setdefault(template_name, threading.Lock())

    def _bucket_put(self, template_name: str, binding: RoleTemplateBinding) -> None:
        while True:
            lock = self._bucket_lock(template_name)
            assert lock is not None
            with lock:
                # The lock may have been pruned while we waited on it; retry with the live one.
                if self._bucket_locks.get(template_name) is not lock:
                    continue
                self._buckets.setdefault(template_name, {})[binding.key] = binding
                return

    def _bucket_discard(self, template_name: str, key: BindingKey) -> None:
        while True:
            lock = self._bucket_lock(template_name, create=False)
            if lock is None:
                return
            with lock:
                if self._bucket_locks.get(template_name) is not lock:
                    continue
                bucket = self._buckets.get(template_name)
                if bucket is not None:
                    bucket.pop(key, None)
                if not bucket:
                    # Empty buckets give their lock back, so the lock map tracks live templates only.
                    self._buckets.pop(template_name, None)
                    with self._bucket_locks_guard:
                        self._bucket_locks.pop(template_name, None)
                return

    def update(self, obj: Any) -> None:
        """
        Index (or re-index) one binding.

        Objects that are not bindings are ignored. A binding moving to a different template is
        removed from its old bucket in the same step. Repeated calls are idempotent.
        """
        if not isinstance(obj, RoleTemplateBinding):
            return
        new_names = {n for n in (self._index_func(obj) or []) if n}
        lock, owned = self._stripe(obj.key)
        with lock:
            old_names = owned.get(obj.key, set())
            for name in old_names - new_names:
                self._bucket_discard(name, obj.key)
            for name in new_names:
                self._bucket_put(name, obj)
            if new_names:
                owned[obj.key] = new_names
            else:
                owned.pop(obj.key, None)

    def delete(self, obj: Union[RoleTemplateBinding, BindingKey]) -> None:
        key = obj.key if isinstance(obj, RoleTemplateBinding) else BindingKey(*obj)
        lock, owned = self._stripe(key)
        with lock:
            for name in owned.pop(key, set()):
                self._bucket_discard(name, key)

    def replace(self, objs: Iterable[Any]) -> None:
        """Resync from a full listing: index everything given, drop whatever is absent."""
        seen: Set[BindingKey] = set()
        for obj in objs:
            if isinstance(obj, RoleTemplateBinding):
                seen.add(obj.key)
                self.update(obj)
        for key in self.keys():
            if key not in seen:
                self.delete(key)

    def lookup(self, template_name: str) -> List[RoleTemplateBinding]:
        """Bindings currently indexed under `template_name`, ordered by namespace/name."""
        while True:
            lock = self._bucket_lock(template_name, create=False)
            if lock is None:
                return []
            with lock:
                if self._bucket_locks.get(template_name) is not lock:
                    continue
                found = list((self._buckets.get(template_name) or {}).values())
                break
        return sorted(found, key=lambda b: b.key)

    def keys(self) -> List[BindingKey]:
        out: List[BindingKey] = []
        for lock, owned in self._stripes:
            with lock:
                out.extend(owned.keys())
        return out

    def template_names(self) -> List[str]:
        with self._bucket_locks_guard:
            names = list(self._bucket_locks.keys())
        return sorted(n for n in names if self.lookup(n))

    def __len__(self) -> int:
        return len(self.keys())

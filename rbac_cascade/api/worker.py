from __future__ import annotations

import json
from typing import Any, Dict, Optional

from rbac_cascade.config import CascadeConfig
from rbac_cascade.controllers.role_template_lifecycle import RoleTemplateLifecycle
from rbac_cascade.core.models import LifecycleEvent, RoleTemplate
from rbac_cascade.index.reverse_index import ReverseIndex
from rbac_cascade.providers.cluster_registry import get_cluster_registry
from rbac_cascade.providers.k8s_provider import KubeconfigContextProvider
from rbac_cascade.queue.base import BindingScheduler


def load_event(payload: str | bytes | Dict[str, Any]) -> LifecycleEvent:
    """
    Parse a lifecycle event payload.

    Payload is expected to be JSON:
      { "kind": "create" | "updated" | "remove", "template": { "name": "..." } }
    """
    if isinstance(payload, dict):
        return LifecycleEvent.model_validate(payload)
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    s = str(payload or "").strip()
    data = json.loads(s) if s else {}
    return LifecycleEvent.model_validate(data)


def handle_event(event: LifecycleEvent, lifecycle: RoleTemplateLifecycle) -> RoleTemplate:
    """Dispatch one event to its handler. Handler errors propagate to the caller."""
    if event.kind == "create":
        return lifecycle.create(event.template)
    if event.kind == "updated":
        return lifecycle.updated(event.template)
    return lifecycle.remove(event.template)


def build_lifecycle(
    cfg: CascadeConfig,
    *,
    index: ReverseIndex,
    scheduler: BindingScheduler,
    contexts: Optional[KubeconfigContextProvider] = None,
) -> RoleTemplateLifecycle:
    """Wire the lifecycle handlers to the configured cluster registry and kubeconfig contexts."""
    return RoleTemplateLifecycle(
        index=index,
        scheduler=scheduler,
        clusters=get_cluster_registry(cfg),
        contexts=contexts
        or KubeconfigContextProvider(config_file=cfg.kubeconfig, probe_timeout_seconds=cfg.probe_timeout_seconds),
        fanout_workers=cfg.fanout_workers,
    )

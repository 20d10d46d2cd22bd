"""Domain models shared by the index, the lifecycle handlers and the worker.

Upstream objects (RoleTemplates, bindings) come from the management API as raw dicts; these
models keep only the fields the cascade logic reads.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Literal, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field


class BindingKey(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class BaseModelStrict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RoleTemplate(BaseModelStrict):
    name: str
    display_name: Optional[str] = None


class RoleTemplateBinding(BaseModelStrict):
    # Frozen so bindings are hashable and safe to hand out from the index.
    model_config = ConfigDict(extra="forbid", frozen=True)

    namespace: str
    name: str
    role_template_name: str
    project_name: Optional[str] = None
    resource_version: Optional[str] = None

    @property
    def key(self) -> BindingKey:
        return BindingKey(self.namespace, self.name)


class ClusterRef(BaseModelStrict):
    name: str
    display_name: Optional[str] = None


LifecycleKind = Literal["create", "updated", "remove"]


class LifecycleEvent(BaseModelStrict):
    """
    A single RoleTemplate lifecycle callback, as delivered to the worker.

    Payload shape:
      { "kind": "remove", "template": { "name": "project-member" } }
    """

    kind: LifecycleKind
    template: RoleTemplate
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BindingEnqueueJob(BaseModelStrict):
    """Re-enqueue signal for a binding, published to the binding reconciler."""

    namespace: str
    name: str
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def binding_from_object(obj: Any) -> Optional[RoleTemplateBinding]:
    """
    Build a RoleTemplateBinding from a raw management API object.

    Returns None for anything that is not a usable binding (wrong kind, missing name or
    roleTemplateName).
    """
    if isinstance(obj, RoleTemplateBinding):
        return obj
    if not isinstance(obj, dict):
        return None
    kind = obj.get("kind")
    if kind and kind != "ProjectRoleTemplateBinding":
        return None
    metadata: Dict[str, Any] = obj.get("metadata") or {}
    name = (metadata.get("name") or "").strip()
    rt_name = (obj.get("roleTemplateName") or "").strip()
    if not name or not rt_name:
        return None
    return RoleTemplateBinding(
        namespace=(metadata.get("namespace") or "").strip(),
        name=name,
        role_template_name=rt_name,
        project_name=obj.get("projectName") or None,
        resource_version=metadata.get("resourceVersion") or None,
    )

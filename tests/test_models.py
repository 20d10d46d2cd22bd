from __future__ import annotations

import pytest
from pydantic import ValidationError

from rbac_cascade.core.models import BindingKey, LifecycleEvent, RoleTemplateBinding, binding_from_object


def _prtb(**overrides):
    obj = {
        "apiVersion": "management.cattle.io/v3",
        "kind": "ProjectRoleTemplateBinding",
        "metadata": {"name": "prtb-abc", "namespace": "p-xyz", "resourceVersion": "42"},
        "roleTemplateName": "project-member",
        "projectName": "c-1:p-xyz",
    }
    obj.update(overrides)
    return obj


def test_binding_from_object_reads_management_fields() -> None:
    b = binding_from_object(_prtb())
    assert b is not None
    assert b.key == BindingKey("p-xyz", "prtb-abc")
    assert b.role_template_name == "project-member"
    assert b.project_name == "c-1:p-xyz"
    assert b.resource_version == "42"


def test_binding_from_object_rejects_other_kinds_and_incomplete_objects() -> None:
    assert binding_from_object(_prtb(kind="ClusterRoleTemplateBinding")) is None
    assert binding_from_object(_prtb(roleTemplateName="")) is None
    assert binding_from_object({"metadata": {}}) is None
    assert binding_from_object(["nope"]) is None


def test_binding_is_hashable_and_frozen() -> None:
    b = RoleTemplateBinding(namespace="p", name="b", role_template_name="T")
    assert {b, b} == {b}
    with pytest.raises(ValidationError):
        b.name = "other"  # type: ignore[misc]


def test_lifecycle_event_rejects_unknown_kind() -> None:
    with pytest.raises(ValidationError):
        LifecycleEvent.model_validate({"kind": "delete", "template": {"name": "T"}})

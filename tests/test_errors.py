from __future__ import annotations

from rbac_cascade.core.errors import (
    AggregateError,
    ClusterFailure,
    ClusterUnavailableError,
    NotFoundError,
    is_cluster_unavailable,
    is_not_found,
)


def test_classifiers_use_types_not_messages() -> None:
    assert is_not_found(NotFoundError("ClusterRole", "x"))
    assert not is_not_found(RuntimeError("ClusterRole x not found"))
    assert is_cluster_unavailable(ClusterUnavailableError("c-1"))
    assert not is_cluster_unavailable(RuntimeError("cluster c-1 is unavailable"))


def test_aggregate_error_enumerates_each_cluster_and_cause() -> None:
    err = AggregateError(
        [
            ClusterFailure("c-1", "delete", RuntimeError("forbidden")),
            ClusterFailure("c-2", "context", ValueError("bad kubeconfig")),
        ]
    )
    msg = str(err)
    assert msg.startswith("errors deleting downstream clusterRole: [")
    assert "c-1 (delete): forbidden" in msg
    assert "c-2 (context): bad kubeconfig" in msg
    assert err.cluster_names == ["c-1", "c-2"]


def test_unavailable_message_includes_reason() -> None:
    assert str(ClusterUnavailableError("c-1", "timed out")) == "cluster c-1 is unavailable: timed out"
    assert str(ClusterUnavailableError("c-1")) == "cluster c-1 is unavailable"

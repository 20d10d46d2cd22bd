"""Cluster registries: where the remove handler gets its fleet snapshot."""

from __future__ import annotations

from typing import Any, List, Optional, Protocol, runtime_checkable

from rbac_cascade.config import CascadeConfig
from rbac_cascade.core.models import ClusterRef

CLUSTER_GROUP = "management.cattle.io"
CLUSTER_VERSION = "v3"
CLUSTER_PLURAL = "clusters"


@runtime_checkable
class ClusterRegistry(Protocol):
    def list_clusters(self) -> List[ClusterRef]: ...


class StaticClusterRegistry:
    def __init__(self, names: List[str]) -> None:
        self._names = [n for n in (x.strip() for x in names) if n]

    def list_clusters(self) -> List[ClusterRef]:
        return [ClusterRef(name=n) for n in self._names]


class KubeconfigClusterRegistry:
    """Every context in the kubeconfig is a downstream cluster."""

    def __init__(self, *, config_file: Optional[str] = None) -> None:
        self.config_file = config_file

    def list_clusters(self) -> List[ClusterRef]:
        from kubernetes import config

        contexts, _active = config.list_kube_config_contexts(config_file=self.config_file)
        return [ClusterRef(name=c["name"]) for c in (contexts or []) if c.get("name")]


class ManagementClusterRegistry:
    """
    Lists `clusters.management.cattle.io` objects from the management cluster.

    Context names in the kubeconfig used by the context provider must match the cluster
    object names (e.g. `c-m-abc123`).
    """

    def __init__(self, api_client: Any) -> None:
        self._api_client = api_client

    def list_clusters(self) -> List[ClusterRef]:
        from kubernetes import client

        custom = client.CustomObjectsApi(self._api_client)
        resp = custom.list_cluster_custom_object(CLUSTER_GROUP, CLUSTER_VERSION, CLUSTER_PLURAL)
        out: List[ClusterRef] = []
        for item in (resp or {}).get("items") or []:
            name = ((item.get("metadata") or {}).get("name") or "").strip()
            if not name:
                continue
            display = (item.get("spec") or {}).get("displayName") or None
            out.append(ClusterRef(name=name, display_name=display))
        return out


def get_cluster_registry(cfg: CascadeConfig) -> ClusterRegistry:
    if cfg.cluster_source == "static":
        return StaticClusterRegistry(cfg.static_clusters)
    if cfg.cluster_source == "management":
        from rbac_cascade.providers.k8s_provider import get_management_api_client

        return ManagementClusterRegistry(get_management_api_client(cfg.kubeconfig))
    return KubeconfigClusterRegistry(config_file=cfg.kubeconfig)

"""Kubernetes access: the management API client and per-cluster RBAC contexts."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from rbac_cascade.core.errors import ClusterUnavailableError, NotFoundError

logger = logging.getLogger(__name__)

# Statuses a downstream API server (or the proxy in front of it) returns when the control
# plane can't be reached.
UNAVAILABLE_STATUSES = (502, 503, 504)

_management_api_client = None
_init_lock = threading.Lock()


def is_connection_failure(err: BaseException) -> bool:
    """
    True when `err` means the API server could not be contacted at all.

    TLS and certificate failures are excluded: the server answered, and a broken CA must be
    reported rather than skipped.
    """
    import urllib3

    if isinstance(err, urllib3.exceptions.MaxRetryError):
        return err.reason is not None and is_connection_failure(err.reason)
    if isinstance(err, urllib3.exceptions.SSLError):
        return False
    return isinstance(
        err, (urllib3.exceptions.NewConnectionError, urllib3.exceptions.ConnectTimeoutError, ConnectionError)
    )


def get_management_api_client(config_file: Optional[str] = None) -> Any:
    """
    Return a cached ApiClient for the management cluster (thread-safe lazy init).

    In-cluster config is tried first, then kubeconfig.
    """
    global _management_api_client

    if _management_api_client is not None:
        return _management_api_client

    with _init_lock:
        if _management_api_client is not None:
            return _management_api_client

        from kubernetes import client, config

        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config(config_file=config_file)

        _management_api_client = client.ApiClient()
        return _management_api_client


@runtime_checkable
class ClusterContext(Protocol):
    cluster_name: str

    def get_cluster_role(self, name: str) -> Dict[str, Any]: ...

    def delete_cluster_role(self, name: str) -> None: ...


@runtime_checkable
class ClusterContextProvider(Protocol):
    def get(self, cluster_name: str) -> ClusterContext:
        """
        Return an execution context for `cluster_name`.

        Raises ClusterUnavailableError when the cluster can't be contacted right now; any
        other exception means the context could not be built for another reason.
        """


class KubeClusterContext:
    """RBAC operations against one downstream cluster."""

    def __init__(self, cluster_name: str, rbac_api: Any) -> None:
        self.cluster_name = cluster_name
        self._rbac = rbac_api

    def get_cluster_role(self, name: str) -> Dict[str, Any]:
        from kubernetes.client.rest import ApiException

        try:
            role = self._rbac.read_cluster_role(name=name)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError("ClusterRole", name) from e
            raise

        metadata = getattr(role, "metadata", None)
        return {
            "name": getattr(metadata, "name", None) or name,
            "uid": getattr(metadata, "uid", None),
            "resource_version": getattr(metadata, "resource_version", None),
            "labels": dict(getattr(metadata, "labels", None) or {}),
        }

    def delete_cluster_role(self, name: str) -> None:
        from kubernetes.client.rest import ApiException

        try:
            self._rbac.delete_cluster_role(name=name)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError("ClusterRole", name) from e
            raise


class KubeconfigContextProvider:
    """
    Builds downstream contexts from kubeconfig contexts named after the clusters.

    API clients are cached per cluster; reachability is probed on every `get` so a cluster
    that went away is reported as unavailable instead of failing later mid-delete.
    """

    def __init__(self, *, config_file: Optional[str] = None, probe_timeout_seconds: int = 5) -> None:
        self.config_file = config_file
        self.probe_timeout_seconds = max(1, int(probe_timeout_seconds))
        self._clients: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def _api_client(self, cluster_name: str) -> Any:
        with self._lock:
            cached = self._clients.get(cluster_name)
            if cached is not None:
                return cached

        from kubernetes import config

        api_client = config.new_client_from_config(config_file=self.config_file, context=cluster_name)
        with self._lock:
            return self._clients.setdefault(cluster_name, api_client)

    def _probe(self, cluster_name: str, api_client: Any) -> None:
        from kubernetes import client
        from kubernetes.client.rest import ApiException

        try:
            client.VersionApi(api_client).get_code(_request_timeout=self.probe_timeout_seconds)
        except ApiException as e:
            if e.status in UNAVAILABLE_STATUSES:
                raise ClusterUnavailableError(cluster_name, f"{e.status} {e.reason}") from e
            raise
        except Exception as e:
            if is_connection_failure(e):
                raise ClusterUnavailableError(cluster_name, str(e)) from e
            raise

    def get(self, cluster_name: str) -> KubeClusterContext:
        from kubernetes import client

        api_client = self._api_client(cluster_name)
        self._probe(cluster_name, api_client)
        return KubeClusterContext(cluster_name, client.RbacAuthorizationV1Api(api_client))

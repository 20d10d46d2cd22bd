"""
RoleTemplate lifecycle handlers.

create/updated: re-enqueue every binding that references the template so the binding
reconciler picks up the new rules.

remove: delete the mirrored ClusterRole from every downstream cluster. A cluster that
can't be reached is skipped; a role that is already gone counts as cleaned up. Any other
failure is recorded and the remaining clusters are still visited; the collected failures
are raised together at the end so the caller retries the whole remove.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from rbac_cascade.core.errors import AggregateError, ClusterFailure, Stage, is_cluster_unavailable, is_not_found
from rbac_cascade.core.models import ClusterRef, RoleTemplate
from rbac_cascade.index.reverse_index import ReverseIndex
from rbac_cascade.providers.cluster_registry import ClusterRegistry
from rbac_cascade.providers.k8s_provider import ClusterContextProvider
from rbac_cascade.queue.base import BindingScheduler

logger = logging.getLogger(__name__)

LIFECYCLE_NAME = "mgmt-auth-roletemplate-lifecycle"


class RoleTemplateLifecycle:
    def __init__(
        self,
        *,
        index: ReverseIndex,
        scheduler: BindingScheduler,
        clusters: ClusterRegistry,
        contexts: ClusterContextProvider,
        fanout_workers: int = 1,
    ) -> None:
        self.name = LIFECYCLE_NAME
        self.index = index
        self.scheduler = scheduler
        self.clusters = clusters
        self.contexts = contexts
        self.fanout_workers = max(1, int(fanout_workers))

    def create(self, template: RoleTemplate) -> RoleTemplate:
        self._enqueue_bindings(template)
        return template

    def updated(self, template: RoleTemplate) -> RoleTemplate:
        self._enqueue_bindings(template)
        return template

    def remove(self, template: RoleTemplate) -> RoleTemplate:
        # Listing failures are fatal: nothing has been touched yet, so just propagate.
        clusters = self.clusters.list_clusters()

        if self.fanout_workers > 1 and len(clusters) > 1:
            workers = min(self.fanout_workers, len(clusters))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rt-cleanup") as pool:
                results = list(pool.map(lambda c: self._cleanup_cluster(c, template.name), clusters))
        else:
            results = [self._cleanup_cluster(c, template.name) for c in clusters]

        failures = [r for r in results if r is not None]
        if failures:
            raise AggregateError(failures)
        logger.info(f"RoleTemplate {template.name}: downstream cleanup done ({len(clusters)} cluster(s) visited)")
        return template

    def _cleanup_cluster(self, cluster: ClusterRef, role_name: str) -> Optional[ClusterFailure]:
        """Delete `role_name` from one cluster. Returns the failure to record, if any."""
        try:
            ctx = self.contexts.get(cluster.name)
        except Exception as e:
            if is_cluster_unavailable(e):
                logger.info(f"Skipping cluster {cluster.name}: {e}")
                return None
            return self._failure(cluster, "context", e)

        # Look before deleting so an absent role is classified as clean, not as an error.
        try:
            ctx.get_cluster_role(role_name)
        except Exception as e:
            if is_not_found(e):
                return None
            return self._failure(cluster, "get", e)

        try:
            ctx.delete_cluster_role(role_name)
        except Exception as e:
            if is_not_found(e):
                return None
            return self._failure(cluster, "delete", e)

        logger.info(f"Deleted ClusterRole {role_name} from cluster {cluster.name}")
        return None

    @staticmethod
    def _failure(cluster: ClusterRef, stage: Stage, err: Exception) -> ClusterFailure:
        logger.warning(f"Cluster {cluster.name}: {stage} failed: {err}")
        return ClusterFailure(cluster_name=cluster.name, stage=stage, error=err)

    def _enqueue_bindings(self, template: RoleTemplate) -> List[str]:
        """Re-enqueue every binding linked to this RoleTemplate so its rules get re-synced."""
        bindings = self.index.lookup(template.name)
        enqueued: List[str] = []
        for b in bindings:
            self.scheduler.enqueue(b.namespace, b.name)
            enqueued.append(str(b.key))
        if enqueued:
            logger.info(f"RoleTemplate {template.name}: enqueued {len(enqueued)} binding(s)")
        return enqueued

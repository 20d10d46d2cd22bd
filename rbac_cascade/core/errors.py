"""
Error taxonomy for the cascade.

Expected conditions are distinct exception types so callers branch on `isinstance`, never on
message text:
- ClusterUnavailableError: the downstream control plane can't be contacted right now.
- NotFoundError: the remote object is already gone.
Everything else a cluster raises is collected into an AggregateError by the remove handler.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Literal

Stage = Literal["context", "get", "delete"]


class CascadeError(Exception):
    """Base class for errors raised by this package."""


class ClusterUnavailableError(CascadeError):
    def __init__(self, cluster_name: str, reason: str = "") -> None:
        self.cluster_name = cluster_name
        self.reason = reason
        msg = f"cluster {cluster_name} is unavailable"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class NotFoundError(CascadeError):
    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} {name} not found")


@dataclass(frozen=True)
class ClusterFailure:
    cluster_name: str
    stage: Stage
    error: BaseException

    def __str__(self) -> str:
        return f"{self.cluster_name} ({self.stage}): {self.error}"


class AggregateError(CascadeError):
    """All non-ignorable per-cluster failures from one remove pass."""

    def __init__(self, failures: List[ClusterFailure], *, prefix: str = "errors deleting downstream clusterRole") -> None:
        self.failures = list(failures)
        joined = "; ".join(str(f) for f in self.failures)
        super().__init__(f"{prefix}: [{joined}]")

    @property
    def cluster_names(self) -> List[str]:
        return [f.cluster_name for f in self.failures]


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, NotFoundError)


def is_cluster_unavailable(err: BaseException) -> bool:
    return isinstance(err, ClusterUnavailableError)

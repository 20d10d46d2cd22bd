"""
Binding scheduling.

The cascade only signals that a binding needs another reconcile pass; the binding
reconciler owns coalescing and the actual work.
"""

from rbac_cascade.queue.base import BindingScheduler, InMemoryBindingQueue

__all__ = ["BindingScheduler", "InMemoryBindingQueue"]

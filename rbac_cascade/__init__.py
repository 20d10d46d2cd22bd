"""
Cascading RoleTemplate reconciler.

Keeps RoleTemplateBindings in step with the RoleTemplates they reference, and cleans up
mirrored ClusterRoles across the downstream cluster fleet when a RoleTemplate is removed.
"""

__version__ = "0.1.0"

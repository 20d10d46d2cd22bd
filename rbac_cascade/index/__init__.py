from rbac_cascade.index.reverse_index import BINDING_INDEX_NAME, ReverseIndex, bindings_by_role_template

__all__ = ["BINDING_INDEX_NAME", "ReverseIndex", "bindings_by_role_template"]

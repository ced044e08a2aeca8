"""
Plugin system for the Schema Registry Operator.

Reconciler plugins own the reconciliation logic for one or more resource
kinds and are looked up by kind through the PluginRegistry.
"""

from plugins.reconcilers.base import (
    ReconcilerPlugin,
    ReconcilerContext,
    ReconcileResult,
)
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "ReconcilerPlugin",
    "ReconcilerContext",
    "ReconcileResult",
    "PluginRegistry",
    "get_registry",
]

"""
Reconciler plugins package.

Built-in reconcilers handle SchemaRegistry and Schema resources. Others
are discovered via Python entry points (group: 'schema_operator.reconcilers').
"""

from plugins.reconcilers.base import (
    ReconcilerPlugin,
    ReconcilerContext,
    ReconcileResult,
)

__all__ = ["ReconcilerPlugin", "ReconcilerContext", "ReconcileResult"]

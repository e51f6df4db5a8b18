"""Persistence layer: database handle, registry, and versioned context store."""

from .context import ContextStore, meso_key, meta_key, micro_key
from .database import Database
from .registry import Registry

__all__ = [
    "ContextStore",
    "Database",
    "Registry",
    "meso_key",
    "meta_key",
    "micro_key",
]

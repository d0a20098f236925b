"""Live source feeds for the alerts engine."""

from daypulse.sources.base import SourceAdapter, Unsubscribe, UpdateCallback
from daypulse.sources.collections import CollectionSourceAdapter, default_adapters

__all__ = [
    "CollectionSourceAdapter",
    "SourceAdapter",
    "Unsubscribe",
    "UpdateCallback",
    "default_adapters",
]

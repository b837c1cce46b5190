"""
The store module provides the resource store used by every controller.

- Uses NamedResource as the key for all objects.
- Stores values as dataclass instances from manifest.py for type safety.
- Every object carries a monotonically increasing version token used for
  optimistic concurrency: writes carry the version read at the start of a
  reconciliation pass and fail with ConflictError if it moved.

This abstract interface allows for various implementations (in-memory, a
real cluster API client, etc.).
"""

from .store import Store, StoreEvent, WatchEvent, matches_selector
from .in_memory import InMemoryStore

__all__ = [
    "Store",
    "StoreEvent",
    "WatchEvent",
    "InMemoryStore",
    "matches_selector",
]

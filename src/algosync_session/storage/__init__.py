"""Durable key/value storage shared between execution contexts."""

from .base import ChangeListener, SharedStore, StorageChange
from .memory import MemoryBackend, MemoryStore
from .redis import RedisStore

__all__ = [
    "ChangeListener",
    "MemoryBackend",
    "MemoryStore",
    "RedisStore",
    "SharedStore",
    "StorageChange",
]

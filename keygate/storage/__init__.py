"""Persistence layer."""

from keygate.storage.store import JsonCollectionStore

__all__ = ["JsonCollectionStore"]

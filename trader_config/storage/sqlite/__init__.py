"""Embedded relational backend."""

from .migrations import SqliteSchemaManager
from .sequence import SqliteSequenceAllocator
from .store import SqliteRecordStore

__all__ = ["SqliteRecordStore", "SqliteSchemaManager", "SqliteSequenceAllocator"]

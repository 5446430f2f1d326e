"""Document-store backend."""

from .migrations import MongoSchemaManager
from .sequence import MongoSequenceAllocator
from .store import MongoRecordStore

__all__ = ["MongoRecordStore", "MongoSchemaManager", "MongoSequenceAllocator"]

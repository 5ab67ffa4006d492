"""devlog storage: the SQLite event queue and the file-backed memory store."""

from .events import EVENT_SCHEMAS, validate_event, validate_payload
from .memory_store import MemoryStore
from .queue import EventQueue

__all__ = [
    "EVENT_SCHEMAS",
    "EventQueue",
    "MemoryStore",
    "validate_event",
    "validate_payload",
]

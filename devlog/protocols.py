"""
devlog Protocol Definitions
===========================

Interface contracts between the devlog core and its collaborators.

Components and their roles:
- Queue:      Durable mailbox of hook events. Owns event records until drained.
- Watcher:    Drains the queue in batches and hands events to an extractor.
- Extractor:  External collaborator. Turns one event into memory drafts.
- Store:      Short-term log, long-term ledger, candidates, monthly archives.
- Engines:    Decay and promotion. The only mutators of stored memories.

Error handling philosophy:
- Queue and store operations return a value or raise a DevlogError subclass
- Storage failures (I/O, missing directory, corrupt record) raise StorageError
- Illegal state transitions raise QueueStateError
- Extractor failures raise ExtractionError and are isolated per event
- Bad configuration raises ConfigError, the only error fatal at daemon startup
"""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from devlog.types import MemoryDraft, QueuedEvent

# =============================================================================
# ENTRY POINT GROUPS
# =============================================================================

ENTRY_POINT_GROUP_EXTRACTORS = "devlog.extractors"


# =============================================================================
# ERRORS
# =============================================================================


class DevlogError(Exception):
    """Base for all devlog errors."""

    pass


class StorageError(DevlogError):
    """Raised on I/O failure, missing directory, or corrupt record."""

    pass


class EventValidationError(StorageError):
    """Raised when an event is rejected at the ingestion boundary.

    Unknown event_type, missing session_id, or a payload that does not
    match its event type's schema.
    """

    pass


class EventNotFoundError(StorageError):
    """Raised when an event id is not in the queue."""

    def __init__(self, event_id: str):
        super().__init__(f"Event not found: {event_id}")
        self.event_id = event_id


class QueueStateError(DevlogError):
    """Raised on an illegal state transition.

    E.g., completing an event that is not processing, or claiming an
    event another worker already claimed.
    """

    def __init__(self, event_id: str, expected: str, actual: str):
        super().__init__(
            f"Illegal transition for {event_id}: expected state {expected}, found {actual}"
        )
        self.event_id = event_id
        self.expected = expected
        self.actual = actual


class ExtractionError(DevlogError):
    """Raised by an extractor that cannot process an event."""

    pass


class ConfigError(DevlogError):
    """Raised for an invalid base directory or configuration value."""

    pass


# =============================================================================
# EXTRACTOR PROTOCOL
# =============================================================================


@runtime_checkable
class Extractor(Protocol):
    """Narrow interface the watcher calls for every claimed event.

    Implementations live outside the core (an LLM client, a heuristic
    summarizer). They are discovered through the ``devlog.extractors``
    entry point group.
    """

    def extract(self, event: QueuedEvent) -> Sequence[MemoryDraft]:
        """Convert one event into zero or more memory drafts.

        Raise ExtractionError when the event cannot be processed; the
        watcher marks that event failed and carries on with the batch.
        """
        ...

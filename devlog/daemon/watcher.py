"""Queue drain.

One drain cycle:

1. list pending ids and claim up to ``batch_size`` of them (mark_processing)
2. top the batch up with failed events that still have attempts left
3. run the extractor on each claimed event, appending its drafts to
   short-term memory
4. mark each event completed or failed, independently of its siblings

Drafts are durably appended before an event is marked completed. Entry ids
are fingerprints, so re-extracting an event after a crash appends nothing
new.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Sequence

from devlog.logging_config import log_batch
from devlog.protocols import (
    EventNotFoundError,
    ExtractionError,
    Extractor,
    QueueStateError,
    StorageError,
)
from devlog.storage.memory_store import MemoryStore
from devlog.storage.queue import EventQueue
from devlog.types import MemoryDraft, QueuedEvent

logger = logging.getLogger(__name__)


@dataclass
class EventOutcome:
    """Result of running the extractor on one claimed event."""

    event_id: str
    ok: bool
    entries: int = 0
    error: Optional[str] = None


@dataclass
class BatchResult:
    claimed: int = 0
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    aborted: Optional[str] = None


def _coerce_drafts(event_id: str, drafts: Any) -> List[MemoryDraft]:
    if drafts is None:
        return []
    result = []
    for draft in drafts:
        if isinstance(draft, MemoryDraft):
            result.append(draft)
        elif isinstance(draft, dict):
            result.append(MemoryDraft(**draft))
        else:
            raise ExtractionError(
                f"{event_id}: extractor returned {type(draft).__name__}, expected MemoryDraft"
            )
    return result


class Watcher:
    """Drains the event queue into short-term memory."""

    def __init__(
        self,
        queue: EventQueue,
        store: MemoryStore,
        extractor: Extractor,
        batch_size: int = 5,
        max_attempts: int = 3,
        watchdog_seconds: float = 600.0,
    ):
        self.queue = queue
        self.store = store
        self.extractor = extractor
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.watchdog_seconds = watchdog_seconds

    def recover(self, now: Optional[datetime] = None) -> List[str]:
        """Startup scan: requeue abandoned events, or fail those out of attempts."""
        return self.queue.recover_stuck_events(self.watchdog_seconds, now, self.max_attempts)

    def next_batch(self, now: Optional[datetime] = None) -> List[QueuedEvent]:
        """Claim up to batch_size events: pending first, then retryable failures.

        An event another claimant wins is skipped. StorageError from listing
        propagates to the caller.
        """
        batch: List[QueuedEvent] = []

        for event_id in self.queue.list_pending_events():
            if len(batch) >= self.batch_size:
                return batch
            try:
                batch.append(self.queue.mark_processing(event_id, now))
            except (QueueStateError, EventNotFoundError) as e:
                logger.debug(f"Skipping {event_id}: {e}")

        for event_id in self.queue.list_retryable_events(self.max_attempts):
            if len(batch) >= self.batch_size:
                break
            try:
                event = self.queue.claim_retry(event_id, self.max_attempts, now)
            except (QueueStateError, EventNotFoundError) as e:
                logger.debug(f"Skipping retry of {event_id}: {e}")
                continue
            logger.info(f"Retrying {event_id} (attempt {event.attempts + 1}/{self.max_attempts})")
            batch.append(event)

        return batch

    def process_event(self, event: QueuedEvent, now: Optional[datetime] = None) -> EventOutcome:
        """Extract one event and persist its drafts. Never raises."""
        try:
            drafts = _coerce_drafts(event.id, self.extractor.extract(event))
            if drafts:
                self.store.append_drafts(
                    drafts,
                    session_id=event.session_id,
                    event_id=event.id,
                    observed_at=event.enqueued_at,
                    now=now,
                )
        except ExtractionError as e:
            logger.warning(f"Extraction failed for {event.id}: {e}")
            return EventOutcome(event.id, ok=False, error=f"ExtractionError: {e}")
        except StorageError as e:
            logger.error(f"Could not store drafts for {event.id}: {e}")
            return EventOutcome(event.id, ok=False, error=f"StorageError: {e}")
        except Exception as e:
            logger.exception(f"Extractor crashed on {event.id}")
            return EventOutcome(event.id, ok=False, error=f"{type(e).__name__}: {e}")
        return EventOutcome(event.id, ok=True, entries=len(drafts))

    def process_batch(
        self, events: Sequence[QueuedEvent], now: Optional[datetime] = None
    ) -> List[EventOutcome]:
        return [self.process_event(event, now) for event in events]

    def complete_batch(
        self, outcomes: Sequence[EventOutcome], now: Optional[datetime] = None
    ) -> List[str]:
        """Mark successful outcomes completed. Returns the ids that were."""
        done = []
        for outcome in outcomes:
            if not outcome.ok:
                continue
            try:
                self.queue.mark_completed(outcome.event_id, now)
                done.append(outcome.event_id)
            except (QueueStateError, StorageError) as e:
                logger.error(f"Could not complete {outcome.event_id}: {e}")
        return done

    def fail_batch(
        self, outcomes: Sequence[EventOutcome], now: Optional[datetime] = None
    ) -> List[str]:
        """Mark failed outcomes failed with their reason. Returns the ids that were."""
        failed = []
        for outcome in outcomes:
            if outcome.ok:
                continue
            try:
                event = self.queue.mark_failed(outcome.event_id, outcome.error or "", now)
                failed.append(outcome.event_id)
            except (QueueStateError, StorageError) as e:
                logger.error(f"Could not mark {outcome.event_id} failed: {e}")
                continue
            if event.attempts >= self.max_attempts:
                logger.warning(
                    f"{event.id} permanently failed after {event.attempts} attempts: "
                    f"{event.last_error}"
                )
        return failed

    def drain_once(self, now: Optional[datetime] = None) -> BatchResult:
        """Run one claim-extract-settle cycle.

        A StorageError while claiming aborts this cycle only.
        """
        try:
            batch = self.next_batch(now)
        except StorageError as e:
            logger.error(f"Polling cycle aborted: {e}")
            return BatchResult(aborted=str(e))
        if not batch:
            return BatchResult()

        outcomes = self.process_batch(batch, now)
        result = BatchResult(
            claimed=len(batch),
            completed=self.complete_batch(outcomes, now),
            failed=self.fail_batch(outcomes, now),
        )
        log_batch(result.claimed, len(result.completed), len(result.failed))
        logger.info(
            f"Batch: {result.claimed} claimed, {len(result.completed)} completed, "
            f"{len(result.failed)} failed"
        )
        return result

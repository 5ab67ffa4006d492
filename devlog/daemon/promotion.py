"""Promotion engine.

Groups short-term entries that describe the same thing into promotion
candidates and graduates a candidate into long-term memory once it recurs
often enough.

Similarity rule: an explicit ``recurrence_key`` from the extractor wins.
Otherwise the key is ``short_hash(type, normalize_content(content))``, i.e.
exact equality after NFKC, lower-casing and collapsing every run of
non-alphanumerics to a single space.

Write order for a promotion, each step one file:

1. append to long-term (skipped if the key is already there)
2. rewrite short-term without the contributing entries
3. rewrite the candidate ledger without the candidate

A crash between steps is repaired by the next evaluation: a candidate whose
key is already in long-term is finalized without appending again.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Union

from devlog.logging_config import log_promotion
from devlog.storage.memory_store import MemoryStore
from devlog.types import (
    LongTermMemory,
    MemoryEntry,
    PromotionCandidate,
    normalize_content,
    parse_datetime,
    short_hash,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_OCCURRENCES = 3
DEFAULT_MIN_SCORE = 3.0


def similarity_key(entry: MemoryEntry) -> str:
    """Grouping key for recurring observations."""
    if entry.recurrence_key:
        return entry.recurrence_key
    return short_hash(entry.type, normalize_content(entry.content))


def _earlier(a: str, b: str) -> str:
    return a if parse_datetime(a) <= parse_datetime(b) else b


def _later(a: str, b: str) -> str:
    return a if parse_datetime(a) >= parse_datetime(b) else b


@dataclass
class PromotionReport:
    """Outcome of one evaluation pass."""

    evaluated: int = 0
    candidates: int = 0
    promoted: List[str] = field(default_factory=list)
    finalized: int = 0
    ignored: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PromotionEngine:
    """Tracks candidates and promotes them exactly once."""

    def __init__(
        self,
        store: MemoryStore,
        min_occurrences: int = DEFAULT_MIN_OCCURRENCES,
        min_score: float = DEFAULT_MIN_SCORE,
    ):
        self.store = store
        self.min_occurrences = max(1, int(min_occurrences))
        self.min_score = float(min_score)

    def meets_threshold(self, candidate: PromotionCandidate) -> bool:
        return (
            candidate.occurrences >= self.min_occurrences
            or candidate.accumulated_score >= self.min_score
        )

    @staticmethod
    def _observe(
        candidates: Dict[str, PromotionCandidate], key: str, entry: MemoryEntry
    ) -> None:
        candidate = candidates.get(key)
        if candidate is None:
            candidate = PromotionCandidate(
                key=key,
                type=entry.type,
                content=entry.content,
                first_seen_at=entry.created_at,
                last_seen_at=entry.created_at,
            )
            candidates[key] = candidate
        else:
            candidate.first_seen_at = _earlier(candidate.first_seen_at, entry.created_at)
            candidate.last_seen_at = _later(candidate.last_seen_at, entry.created_at)
        if entry.session_id not in candidate.session_ids:
            candidate.session_ids.append(entry.session_id)
        candidate.entry_scores[entry.id] = entry.score

    def evaluate_for_promotion(
        self,
        entries: Optional[Sequence[MemoryEntry]] = None,
        now: Optional[datetime] = None,
    ) -> PromotionReport:
        """Fold entries into candidates and promote those over threshold.

        Args:
            entries: Entries to evaluate. Defaults to all of short-term memory.
            now: Promotion timestamp.

        Re-evaluating the same entries is idempotent: occurrences count
        distinct sessions and the accumulated score keeps one (latest) score
        per entry.
        """
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        report = PromotionReport()

        promoted_keys = self.store.long_term_ids()
        stored = self.store.read_promotion_candidates()
        candidates = {c.key: c for c in stored.records}
        short = self.store.read_short_term_memory()
        dismissed = self.store.read_dismissed_entries()
        report.skipped = short.skipped + stored.skipped
        if entries is None:
            entries = short.records

        for entry in entries:
            if entry.id in dismissed:
                report.ignored += 1
                continue
            key = similarity_key(entry)
            if key in promoted_keys:
                report.ignored += 1
                continue
            self._observe(candidates, key, entry)
            report.evaluated += 1

        remove_entries: Set[str] = set()
        for key in sorted(candidates):
            candidate = candidates[key]
            if key in promoted_keys:
                # Promoted by a run that crashed before cleaning up
                remove_entries.update(candidate.entry_scores)
                del candidates[key]
                report.finalized += 1
                continue
            if not self.meets_threshold(candidate):
                continue

            memory = LongTermMemory(
                id=key,
                type=candidate.type,
                content=candidate.content,
                promoted_at=now.isoformat(),
                first_seen_at=candidate.first_seen_at,
                occurrences=candidate.occurrences,
                score=candidate.accumulated_score,
                session_ids=list(candidate.session_ids),
                source_entries=sorted(candidate.entry_scores),
            )
            if self.store.append_long_term_memory(memory):
                report.promoted.append(key)
                promoted_keys.add(key)
                log_promotion(key, candidate.occurrences, candidate.accumulated_score)
                logger.info(
                    f"Promoted {key} ({candidate.occurrences} sessions, "
                    f"score {candidate.accumulated_score:.3f}): {candidate.content[:80]}"
                )
            else:
                report.finalized += 1
            remove_entries.update(candidate.entry_scores)
            del candidates[key]

        recurring = {k for k, c in candidates.items() if c.occurrences > 1}
        kept: List[MemoryEntry] = []
        changed = False
        for entry in short.records:
            if entry.id in remove_entries:
                changed = True
                continue
            flag = similarity_key(entry) in recurring
            if flag != entry.promotion_candidate:
                entry.promotion_candidate = flag
                changed = True
            kept.append(entry)
        if changed or short.malformed:
            self.store.write_short_term_memory(kept, short.malformed, now)

        # forget dismissals for entries that have left short-term memory
        live_ids = {e.id for e in kept}
        self.store.write_promotion_candidates(
            candidates.values(), stored.malformed, now, dismissed=dismissed & live_ids
        )
        report.candidates = len(candidates)
        return report

    def cleanup_stale_candidates(
        self,
        max_age: Union[timedelta, float],
        now: Optional[datetime] = None,
    ) -> int:
        """Drop candidates not seen within ``max_age`` that never reached threshold.

        ``max_age`` is a timedelta or a number of days. Returns the number
        removed.

        The contributing entries are recorded as dismissed so later passes
        do not rebuild the candidate from them; new observations of the same
        key start a fresh candidate.
        """
        if not isinstance(max_age, timedelta):
            max_age = timedelta(days=float(max_age))
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        cutoff = now - max_age

        stored = self.store.read_promotion_candidates()
        dismissed = self.store.read_dismissed_entries()
        kept = []
        removed = 0
        for candidate in stored.records:
            if parse_datetime(candidate.last_seen_at) < cutoff and not self.meets_threshold(
                candidate
            ):
                logger.debug(f"Dropping stale candidate {candidate.key}")
                dismissed.update(candidate.entry_scores)
                removed += 1
                continue
            kept.append(candidate)

        if removed or stored.malformed:
            self.store.write_promotion_candidates(kept, stored.malformed, now, dismissed=dismissed)
        if removed:
            logger.info(f"Removed {removed} stale promotion candidate(s)")
        return removed

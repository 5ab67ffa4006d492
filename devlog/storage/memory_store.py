"""File-backed memory store.

Layout under ``<base>/memory/``::

    short-term.jsonl        decaying observations, one MemoryEntry per line
    long-term.jsonl         promoted knowledge, append-only, idempotent by id
    candidates.json         promotion candidate ledger (atomic rewrite)
    archive/YYYY-MM.jsonl   immutable snapshot of a closed month
    corrupt.jsonl           malformed lines quarantined by rewrites

Appends write a single line and fsync. Every other update is a
read-modify-atomic-rewrite of exactly one file, so a crash leaves each file
in its last consistent state.
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set, Union

from devlog.protocols import StorageError
from devlog.storage.flat_files import (
    append_jsonl,
    ensure_dir,
    read_json,
    read_jsonl,
    rewrite_jsonl,
    write_json,
)
from devlog.types import (
    MAX_SCORE,
    VALID_MEMORY_TYPE_VALUES,
    LongTermMemory,
    MemoryDraft,
    MemoryEntry,
    PromotionCandidate,
    ReadResult,
    entry_fingerprint,
    parse_datetime,
)

logger = logging.getLogger(__name__)

YEAR_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

CANDIDATES_VERSION = 1


def month_of(timestamp: str) -> str:
    """UTC calendar month ("YYYY-MM") of an ISO timestamp."""
    return parse_datetime(timestamp).strftime("%Y-%m")


class MemoryStore:
    """Short-term log, long-term ledger, candidate ledger, monthly archive."""

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir).expanduser()
        self.memory_dir = self.base_dir / "memory"
        self.short_term_path = self.memory_dir / "short-term.jsonl"
        self.long_term_path = self.memory_dir / "long-term.jsonl"
        self.candidates_path = self.memory_dir / "candidates.json"
        self.archive_dir = self.memory_dir / "archive"
        self.corrupt_path = self.memory_dir / "corrupt.jsonl"

    def init_store(self) -> None:
        ensure_dir(self.memory_dir)
        ensure_dir(self.archive_dir)

    # === Quarantine ===

    def quarantine(self, lines: Sequence[str], source: Path, now: Optional[datetime] = None) -> None:
        """Move malformed lines aside before a rewrite drops them."""
        if not lines:
            return
        at = (now or datetime.now(timezone.utc)).isoformat()
        append_jsonl(
            self.corrupt_path,
            ({"source": source.name, "quarantined_at": at, "line": line} for line in lines),
        )
        logger.warning(f"Quarantined {len(lines)} malformed line(s) from {source.name}")

    # === Short-term ===

    def read_short_term_memory(self) -> ReadResult:
        records, bad = read_jsonl(self.short_term_path, MemoryEntry.from_dict)
        return ReadResult(records=records, skipped=len(bad), malformed=bad)

    def append_to_short_term_memory(
        self,
        draft: MemoryDraft,
        session_id: str,
        event_id: Optional[str] = None,
        observed_at: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MemoryEntry:
        """Append one extracted observation. Returns the stored entry.

        If an entry with the same fingerprint already exists, nothing is
        written and the existing entry is returned.
        """
        return self.append_drafts([draft], session_id, event_id, observed_at, now)[0]

    def append_drafts(
        self,
        drafts: Sequence[MemoryDraft],
        session_id: str,
        event_id: Optional[str] = None,
        observed_at: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[MemoryEntry]:
        """Append several drafts from one event with a single read and fsync.

        ``observed_at`` (normally the event's enqueued_at) seeds the identity
        fingerprint of drafts that carry no timestamp of their own, so
        re-extracting a retried event yields the same ids.
        """
        current = (now or datetime.now(timezone.utc)).isoformat()
        existing = {e.id: e for e in self.read_short_term_memory().records}

        result: List[MemoryEntry] = []
        new_entries: List[MemoryEntry] = []
        for draft in drafts:
            if draft.type not in VALID_MEMORY_TYPE_VALUES:
                raise StorageError(f"Invalid memory type in draft: {draft.type!r}")
            if not isinstance(draft.content, str) or not draft.content.strip():
                raise StorageError("Memory draft has empty content")
            seen_at = draft.observed_at or observed_at or current
            entry_id = entry_fingerprint(session_id, draft.type, draft.content, seen_at)
            if entry_id in existing:
                logger.debug(f"Skipping duplicate memory entry {entry_id}")
                result.append(existing[entry_id])
                continue
            entry = MemoryEntry(
                id=entry_id,
                type=draft.type,
                content=draft.content.strip(),
                session_id=session_id,
                created_at=current,
                last_touched_at=current,
                score=MAX_SCORE,
                event_id=event_id,
                recurrence_key=draft.recurrence_key,
                files=list(draft.files),
                tags=list(draft.tags),
            )
            existing[entry_id] = entry
            new_entries.append(entry)
            result.append(entry)

        append_jsonl(self.short_term_path, (e.to_dict() for e in new_entries))
        return result

    def write_short_term_memory(
        self,
        entries: Iterable[MemoryEntry],
        malformed: Sequence[str] = (),
        now: Optional[datetime] = None,
    ) -> None:
        """Atomically replace the short-term log.

        ``malformed`` lines from the preceding read are quarantined first.
        """
        self.quarantine(malformed, self.short_term_path, now)
        rewrite_jsonl(self.short_term_path, (e.to_dict() for e in entries))

    # === Long-term ===

    def read_long_term_memory(self) -> ReadResult:
        records, bad = read_jsonl(self.long_term_path, LongTermMemory.from_dict)
        return ReadResult(records=records, skipped=len(bad), malformed=bad)

    def long_term_ids(self) -> Set[str]:
        return {m.id for m in self.read_long_term_memory().records}

    def append_long_term_memory(self, memory: LongTermMemory) -> bool:
        """Append to the long-term ledger. Returns False if the id is present."""
        if memory.id in self.long_term_ids():
            logger.debug(f"Long-term memory {memory.id} already present")
            return False
        append_jsonl(self.long_term_path, [memory.to_dict()])
        return True

    # === Candidates ===

    def _read_candidates_doc(self) -> dict:
        doc = read_json(self.candidates_path, default={})
        return doc if isinstance(doc, dict) else {}

    def read_promotion_candidates(self) -> ReadResult:
        try:
            doc = self._read_candidates_doc()
        except StorageError as e:
            logger.error(f"Candidate ledger unreadable, starting empty: {e}")
            try:
                text = self.candidates_path.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                raise StorageError(f"Failed to read {self.candidates_path}: {exc}") from exc
            return ReadResult(records=[], skipped=1, malformed=[text])

        raw = doc.get("candidates", [])
        records: List[PromotionCandidate] = []
        bad: List[str] = []
        for item in raw:
            try:
                records.append(PromotionCandidate.from_dict(item))
            except (ValueError, TypeError) as e:
                logger.debug(f"Skipping malformed candidate: {e}")
                bad.append(repr(item))
        if bad:
            logger.warning(f"Skipped {len(bad)} malformed candidate(s)")
        return ReadResult(records=records, skipped=len(bad), malformed=bad)

    def read_dismissed_entries(self) -> Set[str]:
        """Ids of short-term entries whose candidate was dropped as stale.

        An unreadable ledger yields an empty set; read_promotion_candidates
        reports and quarantines it.
        """
        try:
            doc = self._read_candidates_doc()
        except StorageError as e:
            logger.debug(f"No dismissed entries available: {e}")
            return set()
        raw = doc.get("dismissed_entries", [])
        if not isinstance(raw, list):
            return set()
        return {i for i in raw if isinstance(i, str)}

    def write_promotion_candidates(
        self,
        candidates: Iterable[PromotionCandidate],
        malformed: Sequence[str] = (),
        now: Optional[datetime] = None,
        dismissed: Optional[Iterable[str]] = None,
    ) -> None:
        """Rewrite the candidate ledger.

        ``dismissed`` replaces the dismissed entry ids; None keeps the
        stored ones.
        """
        if dismissed is None:
            dismissed = self.read_dismissed_entries()
        self.quarantine(malformed, self.candidates_path, now)
        write_json(
            self.candidates_path,
            {
                "version": CANDIDATES_VERSION,
                "updated_at": (now or datetime.now(timezone.utc)).isoformat(),
                "candidates": [c.to_dict() for c in sorted(candidates, key=lambda c: c.key)],
                "dismissed_entries": sorted(dismissed),
            },
        )

    # === Archive ===

    def archive_path(self, year_month: str) -> Path:
        return self.archive_dir / f"{year_month}.jsonl"

    def list_archives(self) -> List[str]:
        if not self.archive_dir.exists():
            return []
        return sorted(p.stem for p in self.archive_dir.glob("*.jsonl"))

    def read_archive(self, year_month: str) -> ReadResult:
        records, bad = read_jsonl(self.archive_path(year_month), MemoryEntry.from_dict)
        return ReadResult(records=records, skipped=len(bad), malformed=bad)

    def archive_month(self, year_month: str, now: Optional[datetime] = None) -> int:
        """Snapshot a closed month's short-term entries and drop them from the log.

        Returns how many entries were archived. The archive file is created
        once and never rewritten; calling again for an archived month only
        finishes removing entries a crashed run left behind, and returns 0.

        Raises ValueError for a malformed or not yet closed month.
        """
        if not YEAR_MONTH_RE.match(year_month or ""):
            raise ValueError(f"Expected YYYY-MM, got {year_month!r}")
        current_month = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).strftime("%Y-%m")
        if year_month >= current_month:
            raise ValueError(f"Month {year_month} is not closed yet")

        path = self.archive_path(year_month)
        short = self.read_short_term_memory()
        in_month = [e for e in short.records if month_of(e.created_at) == year_month]

        if path.exists():
            archived_ids = {e.id for e in self.read_archive(year_month).records}
            leftover = {e.id for e in in_month if e.id in archived_ids}
            if leftover:
                logger.info(f"Removing {len(leftover)} already-archived entries for {year_month}")
                self.write_short_term_memory(
                    [e for e in short.records if e.id not in leftover], short.malformed, now
                )
            return 0

        ensure_dir(self.archive_dir)
        rewrite_jsonl(path, (e.to_dict() for e in in_month))
        moved = {e.id for e in in_month}
        if moved or short.malformed:
            self.write_short_term_memory(
                [e for e in short.records if e.id not in moved], short.malformed, now
            )
        logger.info(f"Archived {len(in_month)} short-term entries for {year_month}")
        return len(in_month)

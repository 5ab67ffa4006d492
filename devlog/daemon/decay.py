"""Decay engine.

Reduces short-term entry scores on daily, weekly and monthly cadences and
prunes entries that fall below a floor.

Each granularity applies its factor once per elapsed calendar bucket (UTC
day, ISO week, calendar month)::

    score_new = score_old * factor ** elapsed_buckets

Elapsed buckets are counted from the later of the entry's last_touched_at
bucket and the bucket that granularity last decayed it in (its
``decay_marks`` entry). Running a pass twice inside one bucket therefore
changes nothing the second time.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from devlog.logging_config import log_decay
from devlog.storage.memory_store import MemoryStore, month_of
from devlog.types import Granularity, MemoryEntry, parse_datetime

logger = logging.getLogger(__name__)

DEFAULT_DECAY_FACTORS: Dict[Granularity, float] = {
    Granularity.DAILY: 0.9,
    Granularity.WEEKLY: 0.75,
    Granularity.MONTHLY: 0.5,
}

# Entries whose score drops below this are pruned
DEFAULT_PRUNE_FLOOR = 0.05

# Scores are stored with this many decimals
SCORE_PRECISION = 6


def _as_utc(now: Optional[datetime]) -> datetime:
    return (now or datetime.now(timezone.utc)).astimezone(timezone.utc)


def bucket_for(granularity: Granularity, when: datetime) -> str:
    """Label of the calendar bucket containing ``when``.

    daily "2026-03-14", weekly "2026-W11", monthly "2026-03".
    """
    when = when.astimezone(timezone.utc)
    if granularity == Granularity.DAILY:
        return when.date().isoformat()
    if granularity == Granularity.WEEKLY:
        iso = when.isocalendar()
        return f"{iso[0]}-W{iso[1]:02d}"
    return when.strftime("%Y-%m")


def _bucket_index_of_date(granularity: Granularity, day: date) -> int:
    if granularity == Granularity.DAILY:
        return day.toordinal()
    if granularity == Granularity.WEEKLY:
        monday = day - timedelta(days=day.weekday())
        return monday.toordinal() // 7
    return day.year * 12 + day.month - 1


def bucket_index(granularity: Granularity, when: datetime) -> int:
    """Monotonic integer for a bucket; consecutive buckets differ by one."""
    return _bucket_index_of_date(granularity, when.astimezone(timezone.utc).date())


def parse_bucket(granularity: Granularity, label: str) -> int:
    """Bucket index of a label produced by bucket_for. Raises ValueError."""
    if granularity == Granularity.DAILY:
        day = date.fromisoformat(label)
    elif granularity == Granularity.WEEKLY:
        year, week = label.split("-W")
        day = date.fromisocalendar(int(year), int(week), 1)
    else:
        year, month = label.split("-")
        day = date(int(year), int(month), 1)
    return _bucket_index_of_date(granularity, day)


def previous_month(when: datetime) -> str:
    first = when.astimezone(timezone.utc).date().replace(day=1)
    return (first - timedelta(days=1)).strftime("%Y-%m")


@dataclass
class DecayReport:
    """Outcome of one decay pass."""

    granularity: str
    bucket: str
    decayed: int = 0
    pruned: int = 0
    unchanged: int = 0
    skipped: int = 0
    archived: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DecayEngine:
    """Applies per-bucket score decay to short-term memory."""

    def __init__(
        self,
        store: MemoryStore,
        factors: Optional[Mapping[Granularity, float]] = None,
        prune_floor: float = DEFAULT_PRUNE_FLOOR,
    ):
        self.store = store
        self.factors = dict(DEFAULT_DECAY_FACTORS)
        if factors:
            self.factors.update({Granularity(k): float(v) for k, v in factors.items()})
        self.prune_floor = prune_floor

    def _elapsed_buckets(self, entry: MemoryEntry, granularity: Granularity, now: datetime) -> int:
        current = bucket_index(granularity, now)
        reference = bucket_index(granularity, parse_datetime(entry.last_touched_at))
        mark = entry.decay_marks.get(granularity.value)
        if mark:
            try:
                reference = max(reference, parse_bucket(granularity, mark))
            except ValueError:
                logger.debug(f"Ignoring unreadable {granularity.value} mark {mark!r} on {entry.id}")
        return max(0, current - reference)

    def run_decay(self, granularity: Granularity, now: Optional[datetime] = None) -> DecayReport:
        """Decay every short-term entry for one granularity.

        The monthly pass also archives the previous calendar month.
        """
        granularity = Granularity(granularity)
        now = _as_utc(now)
        factor = self.factors[granularity]
        bucket = bucket_for(granularity, now)
        report = DecayReport(granularity=granularity.value, bucket=bucket)

        short = self.store.read_short_term_memory()
        report.skipped = short.skipped

        kept = []
        for entry in short.records:
            elapsed = self._elapsed_buckets(entry, granularity, now)
            if elapsed == 0:
                report.unchanged += 1
                kept.append(entry)
                continue

            entry.score = round(entry.score * factor**elapsed, SCORE_PRECISION)
            entry.decay_marks[granularity.value] = bucket
            if entry.score < self.prune_floor:
                logger.debug(f"Pruning {entry.id} (score {entry.score:.4f})")
                report.pruned += 1
                continue
            report.decayed += 1
            kept.append(entry)

        if report.decayed or report.pruned or short.malformed:
            self.store.write_short_term_memory(kept, short.malformed, now)

        if granularity == Granularity.MONTHLY:
            report.archived = self._archive_closed_months(kept, now)

        log_decay(report.to_dict())
        logger.info(
            f"{granularity.value} decay ({bucket}): {report.decayed} decayed, "
            f"{report.pruned} pruned, {report.unchanged} unchanged, {report.skipped} skipped"
        )
        return report

    def _archive_closed_months(self, entries, now: datetime) -> int:
        """Archive the previous month and any older month still in short-term.

        Older months linger when the daemon was down across a month boundary.
        """
        current = now.strftime("%Y-%m")
        months = {month_of(e.created_at) for e in entries}
        months.add(previous_month(now))
        return sum(self.store.archive_month(ym, now) for ym in sorted(months) if ym < current)

    def run_daily_decay(self, now: Optional[datetime] = None) -> DecayReport:
        return self.run_decay(Granularity.DAILY, now)

    def run_weekly_decay(self, now: Optional[datetime] = None) -> DecayReport:
        return self.run_decay(Granularity.WEEKLY, now)

    def run_monthly_decay(self, now: Optional[datetime] = None) -> DecayReport:
        return self.run_decay(Granularity.MONTHLY, now)

"""Shared builders for devlog tests."""

from datetime import datetime, timezone

from devlog.types import MemoryEntry


def at(year, month, day, hour=12, minute=0):
    """Aware UTC datetime shorthand."""
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def make_entry(
    entry_id="mem_1",
    content="uses Edit tool for refactors",
    session_id="s1",
    created=None,
    score=1.0,
    memory_type="pattern",
    **kwargs,
) -> MemoryEntry:
    created_at = (created or at(2026, 3, 10)).isoformat()
    return MemoryEntry(
        id=entry_id,
        type=memory_type,
        content=content,
        session_id=session_id,
        created_at=created_at,
        last_touched_at=kwargs.pop("last_touched_at", created_at),
        score=score,
        **kwargs,
    )

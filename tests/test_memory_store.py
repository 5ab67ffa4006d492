"""Tests for the file-backed memory store."""

import json

import pytest
from helpers import at, make_entry

from devlog.protocols import StorageError
from devlog.storage.memory_store import MemoryStore
from devlog.types import LongTermMemory, MemoryDraft, PromotionCandidate


def _lines(path):
    return [line for line in path.read_text().splitlines() if line.strip()]


class TestShortTermAppend:
    def test_append_assigns_score_and_times(self, store):
        entry = store.append_to_short_term_memory(
            MemoryDraft(type="pattern", content="uses Edit tool for refactors"),
            session_id="s1",
            event_id="evt_1",
            observed_at="2026-03-10T12:00:00+00:00",
            now=at(2026, 3, 10),
        )
        assert entry.score == 1.0
        assert entry.created_at == entry.last_touched_at == at(2026, 3, 10).isoformat()
        assert entry.event_id == "evt_1"
        assert store.read_short_term_memory().records == [entry]

    def test_duplicate_fingerprint_is_noop(self, store):
        draft = MemoryDraft(type="pattern", content="uses Edit tool")
        first = store.append_to_short_term_memory(draft, "s1", observed_at="t1", now=at(2026, 3, 10))
        again = store.append_to_short_term_memory(draft, "s1", observed_at="t1", now=at(2026, 3, 11))
        assert again == first
        assert len(_lines(store.short_term_path)) == 1

    def test_same_content_other_session_is_new(self, store):
        draft = MemoryDraft(type="pattern", content="uses Edit tool")
        store.append_to_short_term_memory(draft, "s1", observed_at="t1")
        store.append_to_short_term_memory(draft, "s2", observed_at="t1")
        assert len(store.read_short_term_memory().records) == 2

    def test_invalid_type_rejected(self, store):
        with pytest.raises(StorageError):
            store.append_to_short_term_memory(MemoryDraft(type="gossip", content="x"), "s1")

    def test_empty_content_rejected(self, store):
        with pytest.raises(StorageError):
            store.append_to_short_term_memory(MemoryDraft(type="fact", content="   "), "s1")

    def test_append_never_rewrites(self, store):
        store.append_to_short_term_memory(MemoryDraft(type="fact", content="a"), "s1", observed_at="t")
        before = store.short_term_path.read_text()
        store.append_to_short_term_memory(MemoryDraft(type="fact", content="b"), "s1", observed_at="t")
        assert store.short_term_path.read_text().startswith(before)

    def test_torn_trailing_line_repaired(self, store):
        store.append_to_short_term_memory(MemoryDraft(type="fact", content="a"), "s1", observed_at="t")
        with open(store.short_term_path, "a") as f:
            f.write('{"id": "mem_torn", "ty')
        store.append_to_short_term_memory(MemoryDraft(type="fact", content="b"), "s1", observed_at="t")
        result = store.read_short_term_memory()
        assert [e.content for e in result.records] == ["a", "b"]
        assert result.skipped == 1


class TestTolerantReads:
    def test_skips_and_counts_malformed(self, store):
        good = make_entry()
        store.short_term_path.write_text(
            "\n".join(
                [
                    json.dumps(good.to_dict()),
                    "not json at all",
                    json.dumps({"id": "mem_2", "type": "pattern"}),
                    json.dumps({**good.to_dict(), "id": "mem_3", "score": 7}),
                ]
            )
            + "\n"
        )
        result = store.read_short_term_memory()
        assert [e.id for e in result.records] == ["mem_1"]
        assert result.skipped == 3

    def test_missing_files_read_empty(self, base_dir):
        store = MemoryStore(base_dir)
        assert store.read_short_term_memory().records == []
        assert store.read_long_term_memory().records == []
        assert store.read_promotion_candidates().records == []

    def test_rewrite_quarantines_malformed(self, store):
        store.short_term_path.write_text(json.dumps(make_entry().to_dict()) + "\ngarbage\n")
        result = store.read_short_term_memory()
        store.write_short_term_memory(result.records, result.malformed)
        assert store.read_short_term_memory().skipped == 0
        quarantined = [json.loads(line) for line in _lines(store.corrupt_path)]
        assert quarantined[0]["line"] == "garbage"
        assert quarantined[0]["source"] == "short-term.jsonl"


class TestLongTerm:
    def _memory(self, memory_id="tool:edit"):
        return LongTermMemory(
            id=memory_id,
            type="pattern",
            content="uses Edit tool",
            promoted_at=at(2026, 3, 12).isoformat(),
            first_seen_at=at(2026, 3, 10).isoformat(),
            occurrences=3,
            score=2.8,
            session_ids=["s1", "s2", "s3"],
        )

    def test_append_idempotent_by_id(self, store):
        assert store.append_long_term_memory(self._memory()) is True
        assert store.append_long_term_memory(self._memory()) is False
        assert len(store.read_long_term_memory().records) == 1

    def test_long_term_ids(self, store):
        store.append_long_term_memory(self._memory("a"))
        store.append_long_term_memory(self._memory("b"))
        assert store.long_term_ids() == {"a", "b"}


class TestCandidates:
    def test_write_then_read(self, store):
        candidate = PromotionCandidate(
            key="k1",
            type="pattern",
            content="c",
            first_seen_at=at(2026, 3, 10).isoformat(),
            last_seen_at=at(2026, 3, 11).isoformat(),
            session_ids=["s1"],
            entry_scores={"mem_1": 1.0},
        )
        store.write_promotion_candidates([candidate])
        assert store.read_promotion_candidates().records == [candidate]
        assert not list(store.memory_dir.glob(".candidates.json.*.tmp"))

    def test_corrupt_ledger_reads_empty(self, store):
        store.candidates_path.write_text("{ not json")
        result = store.read_promotion_candidates()
        assert result.records == []
        assert result.skipped == 1

    def test_unreadable_corrupt_ledger_is_storage_error(self, store, monkeypatch):
        store.candidates_path.write_text("{ not json")

        def denied(self, *args, **kwargs):
            raise PermissionError("denied")

        monkeypatch.setattr(type(store.candidates_path), "read_text", denied)
        with pytest.raises(StorageError, match="Failed to read"):
            store.read_promotion_candidates()

    def test_dismissed_entries_kept_across_rewrites(self, store):
        store.write_promotion_candidates([], dismissed=["mem_2", "mem_1"])
        store.write_promotion_candidates([])
        assert store.read_dismissed_entries() == {"mem_1", "mem_2"}
        doc = json.loads(store.candidates_path.read_text())
        assert doc["dismissed_entries"] == ["mem_1", "mem_2"]

    def test_dismissed_entries_empty_for_corrupt_ledger(self, store):
        store.candidates_path.write_text("{ not json")
        assert store.read_dismissed_entries() == set()

    def test_malformed_candidate_skipped(self, store):
        store.candidates_path.write_text(json.dumps({"candidates": [{"key": "k"}]}))
        result = store.read_promotion_candidates()
        assert result.records == []
        assert result.skipped == 1


class TestArchiveMonth:
    def _seed(self, store):
        entries = [
            make_entry("mem_feb1", created=at(2026, 2, 3)),
            make_entry("mem_feb2", created=at(2026, 2, 27)),
            make_entry("mem_mar", created=at(2026, 3, 2)),
        ]
        store.write_short_term_memory(entries)
        return entries

    def test_archives_closed_month(self, store):
        self._seed(store)
        assert store.archive_month("2026-02", now=at(2026, 3, 10)) == 2
        assert [e.id for e in store.read_archive("2026-02").records] == ["mem_feb1", "mem_feb2"]
        assert [e.id for e in store.read_short_term_memory().records] == ["mem_mar"]

    def test_second_call_is_noop(self, store):
        self._seed(store)
        store.archive_month("2026-02", now=at(2026, 3, 10))
        snapshot = store.archive_path("2026-02").read_text()
        assert store.archive_month("2026-02", now=at(2026, 3, 11)) == 0
        assert store.archive_path("2026-02").read_text() == snapshot
        assert len(store.read_archive("2026-02").records) == 2

    def test_finishes_interrupted_run(self, store):
        """Archive written but short-term not yet trimmed: rerun only trims."""
        entries = self._seed(store)
        store.archive_month("2026-02", now=at(2026, 3, 10))
        store.write_short_term_memory(entries)
        assert store.archive_month("2026-02", now=at(2026, 3, 10)) == 0
        assert [e.id for e in store.read_short_term_memory().records] == ["mem_mar"]
        assert len(store.read_archive("2026-02").records) == 2

    def test_empty_month_still_creates_archive(self, store):
        self._seed(store)
        assert store.archive_month("2026-01", now=at(2026, 3, 10)) == 0
        assert store.archive_path("2026-01").exists()
        assert store.list_archives() == ["2026-01"]

    def test_open_month_rejected(self, store):
        with pytest.raises(ValueError, match="not closed"):
            store.archive_month("2026-03", now=at(2026, 3, 10))

    def test_bad_format_rejected(self, store):
        with pytest.raises(ValueError):
            store.archive_month("2026-3", now=at(2026, 3, 10))

"""Tests for devlog.types helpers and record validation."""

import pytest

from devlog.types import (
    EventType,
    MemoryEntry,
    ParseDatetimeError,
    PromotionCandidate,
    entry_fingerprint,
    normalize_content,
    parse_datetime,
)


class TestEventTypeParse:
    def test_accepts_hyphenated_spelling(self):
        assert EventType.parse("tool-use") is EventType.TOOL_USE
        assert EventType.parse(" Session-End ") is EventType.SESSION_END

    def test_rejects_unknown(self):
        with pytest.raises(ValueError):
            EventType.parse("file_saved")

    def test_rejects_non_string(self):
        with pytest.raises(ValueError):
            EventType.parse(None)


class TestNormalizeContent:
    def test_case_and_punctuation_collapse(self):
        assert normalize_content("Uses  EDIT tool -- for refactors!") == "uses edit tool for refactors"

    def test_nfkc(self):
        # Fullwidth letters fold to ASCII
        assert normalize_content("ＥＤＩＴ") == "edit"

    def test_empty(self):
        assert normalize_content("") == ""
        assert normalize_content(None) == ""


class TestParseDatetime:
    def test_naive_assumed_utc(self):
        dt = parse_datetime("2026-03-10T12:00:00")
        assert dt.utcoffset().total_seconds() == 0

    def test_z_suffix(self):
        assert parse_datetime("2026-03-10T12:00:00Z").hour == 12

    def test_garbage_raises(self):
        with pytest.raises(ParseDatetimeError):
            parse_datetime("yesterday-ish")

    def test_empty_is_none(self):
        assert parse_datetime("") is None


class TestEntryFingerprint:
    def test_stable_across_whitespace_and_case(self):
        a = entry_fingerprint("s1", "pattern", "Uses Edit tool", "2026-03-10T12:00:00+00:00")
        b = entry_fingerprint("s1", "pattern", "uses edit  tool", "2026-03-10T12:00:00+00:00")
        assert a == b
        assert a.startswith("mem_")

    def test_differs_by_session(self):
        a = entry_fingerprint("s1", "pattern", "x", "t")
        b = entry_fingerprint("s2", "pattern", "x", "t")
        assert a != b


class TestMemoryEntryFromDict:
    def _valid(self):
        return {
            "id": "mem_1",
            "type": "pattern",
            "content": "uses Edit tool",
            "session_id": "s1",
            "created_at": "2026-03-10T12:00:00+00:00",
            "score": 0.5,
        }

    def test_round_trip_fills_defaults(self):
        entry = MemoryEntry.from_dict(self._valid())
        assert entry.last_touched_at == entry.created_at
        assert entry.promotion_candidate is False
        assert entry.decay_marks == {}

    @pytest.mark.parametrize(
        "patch",
        [
            {"id": ""},
            {"type": "gossip"},
            {"score": "high"},
            {"score": 1.5},
            {"score": True},
            {"created_at": "not a date"},
            {"decay_marks": ["daily"]},
        ],
    )
    def test_rejects_malformed(self, patch):
        data = self._valid()
        data.update(patch)
        with pytest.raises(ValueError):
            MemoryEntry.from_dict(data)


class TestPromotionCandidate:
    def test_occurrences_and_score(self):
        candidate = PromotionCandidate(
            key="k",
            type="pattern",
            content="c",
            first_seen_at="2026-03-10T12:00:00+00:00",
            last_seen_at="2026-03-12T12:00:00+00:00",
            session_ids=["s1", "s2"],
            entry_scores={"a": 0.9, "b": 1.0, "c": 0.5},
        )
        assert candidate.occurrences == 2
        assert candidate.accumulated_score == pytest.approx(2.4)
        data = candidate.to_dict()
        assert data["occurrences"] == 2
        assert PromotionCandidate.from_dict(data).entry_scores == candidate.entry_scores

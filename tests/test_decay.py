"""Tests for the decay engine."""

import pytest
from helpers import at, make_entry

from devlog.daemon.decay import (
    DecayEngine,
    bucket_for,
    bucket_index,
    parse_bucket,
    previous_month,
)
from devlog.types import Granularity


def _scores(store):
    return {e.id: e.score for e in store.read_short_term_memory().records}


class TestBuckets:
    def test_labels(self):
        when = at(2026, 3, 14)
        assert bucket_for(Granularity.DAILY, when) == "2026-03-14"
        assert bucket_for(Granularity.WEEKLY, when) == "2026-W11"
        assert bucket_for(Granularity.MONTHLY, when) == "2026-03"

    @pytest.mark.parametrize("granularity", list(Granularity))
    def test_label_round_trips_to_index(self, granularity):
        when = at(2026, 3, 14)
        assert parse_bucket(granularity, bucket_for(granularity, when)) == bucket_index(
            granularity, when
        )

    def test_week_index_consecutive_across_year(self):
        # Mon 2025-12-29 is ISO week 2026-W01
        assert bucket_index(Granularity.WEEKLY, at(2026, 1, 5)) - bucket_index(
            Granularity.WEEKLY, at(2025, 12, 31)
        ) == 1

    def test_month_index_across_year(self):
        assert bucket_index(Granularity.MONTHLY, at(2026, 1, 1)) - bucket_index(
            Granularity.MONTHLY, at(2025, 12, 31)
        ) == 1

    def test_previous_month(self):
        assert previous_month(at(2026, 1, 15)) == "2025-12"
        assert previous_month(at(2026, 3, 1)) == "2026-02"


class TestDailyDecay:
    def test_same_day_no_change(self, store):
        store.write_short_term_memory([make_entry(created=at(2026, 3, 10, 9))])
        report = DecayEngine(store).run_daily_decay(at(2026, 3, 10, 18))
        assert report.unchanged == 1
        assert _scores(store) == {"mem_1": 1.0}

    def test_one_day_later(self, store):
        store.write_short_term_memory([make_entry(created=at(2026, 3, 10))])
        report = DecayEngine(store).run_daily_decay(at(2026, 3, 11))
        assert report.decayed == 1
        assert report.bucket == "2026-03-11"
        assert _scores(store) == {"mem_1": pytest.approx(0.9)}

    def test_twice_same_day_decays_once(self, store):
        store.write_short_term_memory([make_entry(created=at(2026, 3, 10))])
        engine = DecayEngine(store)
        engine.run_daily_decay(at(2026, 3, 11, 8))
        engine.run_daily_decay(at(2026, 3, 11, 20))
        assert _scores(store) == {"mem_1": pytest.approx(0.9)}

    def test_missed_days_compound(self, store):
        store.write_short_term_memory([make_entry(created=at(2026, 3, 10))])
        DecayEngine(store).run_daily_decay(at(2026, 3, 13))
        assert _scores(store)["mem_1"] == pytest.approx(0.9**3)

    def test_monotonic_non_increasing(self, store):
        store.write_short_term_memory([make_entry(created=at(2026, 3, 10))])
        engine = DecayEngine(store)
        previous = 1.0
        for day in range(11, 20):
            engine.run_daily_decay(at(2026, 3, day))
            score = _scores(store).get("mem_1", 0.0)
            assert score <= previous
            previous = score

    def test_mark_recorded(self, store):
        store.write_short_term_memory([make_entry(created=at(2026, 3, 10))])
        DecayEngine(store).run_daily_decay(at(2026, 3, 11))
        entry = store.read_short_term_memory().records[0]
        assert entry.decay_marks == {"daily": "2026-03-11"}

    def test_touch_resets_reference(self, store):
        store.write_short_term_memory(
            [make_entry(created=at(2026, 3, 1), last_touched_at=at(2026, 3, 10).isoformat())]
        )
        DecayEngine(store).run_daily_decay(at(2026, 3, 11))
        assert _scores(store)["mem_1"] == pytest.approx(0.9)


class TestPruning:
    def test_below_floor_pruned(self, store):
        store.write_short_term_memory(
            [
                make_entry("mem_low", score=0.055, created=at(2026, 3, 10)),
                make_entry("mem_ok", score=0.8, created=at(2026, 3, 10)),
            ]
        )
        report = DecayEngine(store).run_daily_decay(at(2026, 3, 11))
        assert report.pruned == 1
        assert set(_scores(store)) == {"mem_ok"}

    def test_custom_floor(self, store):
        store.write_short_term_memory([make_entry(score=0.5, created=at(2026, 3, 10))])
        DecayEngine(store, prune_floor=0.5).run_daily_decay(at(2026, 3, 11))
        assert _scores(store) == {}


class TestGranularities:
    def test_weekly_independent_of_daily(self, store):
        store.write_short_term_memory([make_entry(created=at(2026, 3, 10))])
        engine = DecayEngine(store)
        engine.run_daily_decay(at(2026, 3, 17))
        engine.run_weekly_decay(at(2026, 3, 17))
        assert _scores(store)["mem_1"] == pytest.approx(0.9**7 * 0.75, abs=1e-5)

    def test_custom_factors(self, store):
        store.write_short_term_memory([make_entry(created=at(2026, 3, 10))])
        DecayEngine(store, factors={"daily": 0.5}).run_daily_decay(at(2026, 3, 11))
        assert _scores(store)["mem_1"] == pytest.approx(0.5)

    def test_monthly_decays_then_archives_previous_month(self, store):
        store.write_short_term_memory(
            [
                make_entry("mem_feb", created=at(2026, 2, 20)),
                make_entry("mem_mar", created=at(2026, 3, 2)),
            ]
        )
        report = DecayEngine(store).run_monthly_decay(at(2026, 3, 5))
        assert report.decayed == 1
        assert report.archived == 1
        archived = store.read_archive("2026-02").records
        assert [e.id for e in archived] == ["mem_feb"]
        assert archived[0].score == pytest.approx(0.5)
        assert set(_scores(store)) == {"mem_mar"}

    def test_monthly_after_long_downtime_archives_every_closed_month(self, store):
        store.write_short_term_memory(
            [
                make_entry("mem_jan", created=at(2026, 1, 15)),
                make_entry("mem_feb", created=at(2026, 2, 20)),
                make_entry("mem_mar", created=at(2026, 3, 2)),
            ]
        )
        report = DecayEngine(store).run_monthly_decay(at(2026, 3, 5))
        assert report.archived == 2
        assert store.list_archives() == ["2026-01", "2026-02"]
        (jan,) = store.read_archive("2026-01").records
        assert jan.score == pytest.approx(0.25)
        assert set(_scores(store)) == {"mem_mar"}

    def test_monthly_twice_is_noop(self, store):
        store.write_short_term_memory([make_entry("mem_feb", created=at(2026, 2, 20))])
        engine = DecayEngine(store)
        engine.run_monthly_decay(at(2026, 3, 5))
        report = engine.run_monthly_decay(at(2026, 3, 6))
        assert report.archived == 0
        assert len(store.read_archive("2026-02").records) == 1


class TestMalformedRecords:
    def test_skipped_and_quarantined(self, store):
        store.write_short_term_memory([make_entry(created=at(2026, 3, 10))])
        with open(store.short_term_path, "a") as f:
            f.write("garbage\n")
        report = DecayEngine(store).run_daily_decay(at(2026, 3, 11))
        assert report.skipped == 1
        assert report.decayed == 1
        assert store.read_short_term_memory().skipped == 0
        assert store.corrupt_path.exists()

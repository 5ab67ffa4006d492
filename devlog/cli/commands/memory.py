"""Memory commands: decay, promote, archive, memory.

These run the same passes the daemon schedules. Run them while the daemon
is stopped; both rewrite the same memory files.
"""

import json
import sys
from datetime import timedelta

from devlog.config import DevlogConfig
from devlog.daemon.decay import DecayEngine
from devlog.daemon.promotion import PromotionEngine
from devlog.storage.memory_store import MemoryStore
from devlog.types import Granularity


def _store(config: DevlogConfig) -> MemoryStore:
    store = MemoryStore(config.base_dir)
    store.init_store()
    return store


def cmd_decay(args, config: DevlogConfig) -> int:
    engine = DecayEngine(_store(config), config.factors, config.prune_floor)
    report = engine.run_decay(Granularity(args.granularity))
    print(json.dumps(report.to_dict(), indent=2))
    return 0


def cmd_promote(args, config: DevlogConfig) -> int:
    """Evaluate promotion and drop stale candidates."""
    engine = PromotionEngine(_store(config), config.min_occurrences, config.min_score)
    report = engine.evaluate_for_promotion()
    stale = engine.cleanup_stale_candidates(timedelta(days=config.candidate_max_age_days))
    result = report.to_dict()
    result["stale_removed"] = stale
    print(json.dumps(result, indent=2))
    return 0


def cmd_archive(args, config: DevlogConfig) -> int:
    store = _store(config)
    try:
        count = store.archive_month(args.year_month)
    except ValueError as e:
        print(f"Cannot archive: {e}", file=sys.stderr)
        return 1
    print(f"Archived {count} entries to {store.archive_path(args.year_month)}")
    return 0


def cmd_memory(args, config: DevlogConfig) -> int:
    """Show short-term (default) or long-term memory."""
    store = _store(config)
    result = store.read_long_term_memory() if args.long else store.read_short_term_memory()

    if args.json:
        print(
            json.dumps(
                {"records": [r.to_dict() for r in result.records], "skipped": result.skipped},
                indent=2,
            )
        )
        return 0

    title = "Long-term memory" if args.long else "Short-term memory"
    print(f"{title} ({len(result.records)} entries)")
    print("=" * 40)
    for record in result.records:
        if args.long:
            print(f"[{record.type}] {record.content}")
            print(f"    {record.occurrences} sessions, promoted {record.promoted_at[:10]}")
        else:
            flag = " *" if record.promotion_candidate else ""
            print(f"[{record.score:.2f}] [{record.type}] {record.content}{flag}")
    if result.skipped:
        print(f"\n({result.skipped} malformed record(s) skipped)")
    return 0

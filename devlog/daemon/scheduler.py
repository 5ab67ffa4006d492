"""Daemon scheduler.

One asyncio task per cadence, all sharing a DaemonContext:

- drain:        poll the queue every ``poll_interval`` seconds
- daily / weekly / monthly:  decay once per calendar bucket, then evaluate
  promotion
- maintenance:  once per day, drop stale candidates and purge old
  completed events

Every step is synchronous and runs on the loop thread, so no two steps ever
touch the memory files at the same time. Stopping lets the step in progress
finish (a drain step finishes its whole batch), then each task exits.

Cross-restart state lives in ``<base>/daemon-state.json`` so a restarted
daemon does not re-run a decay pass it already ran in the current bucket.
"""

import asyncio
import logging
import os
import signal
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

from devlog.config import DevlogConfig
from devlog.daemon.decay import DecayEngine, bucket_for
from devlog.daemon.promotion import PromotionEngine
from devlog.daemon.watcher import Watcher
from devlog.discovery import load_extractor
from devlog.logging_config import log_memory_event, setup_devlog_logging
from devlog.protocols import Extractor, StorageError
from devlog.storage.flat_files import read_json, write_json
from devlog.storage.memory_store import MemoryStore
from devlog.storage.queue import EventQueue
from devlog.types import Granularity

logger = logging.getLogger(__name__)

STATE_FILE = "daemon-state.json"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunState:
    """Daemon state persisted across restarts."""

    pid: Optional[int] = None
    started_at: Optional[str] = None
    running: bool = False
    events_processed: int = 0
    events_failed: int = 0
    # granularity value -> bucket of the last completed decay pass
    last_decay: Dict[str, str] = field(default_factory=dict)
    last_maintenance: Optional[str] = None
    last_poll_at: Optional[str] = None

    @classmethod
    def load(cls, path: Path) -> "RunState":
        try:
            data = read_json(path, default={})
        except StorageError as e:
            logger.warning(f"Ignoring unreadable daemon state: {e}")
            return cls()
        if not isinstance(data, dict):
            return cls()
        known = {f.name for f in fields(cls)}
        state = cls(**{k: v for k, v in data.items() if k in known})
        if not isinstance(state.last_decay, dict):
            state.last_decay = {}
        return state

    def save(self, path: Path) -> None:
        write_json(path, asdict(self))


@dataclass
class DaemonContext:
    """Everything the scheduled tasks share."""

    config: DevlogConfig
    queue: EventQueue
    store: MemoryStore
    watcher: Watcher
    decay: DecayEngine
    promotion: PromotionEngine
    state: RunState
    state_path: Path
    clock: Callable[[], datetime] = _utc_now
    stopping: asyncio.Event = field(default_factory=asyncio.Event)

    def save_state(self) -> None:
        try:
            self.state.save(self.state_path)
        except StorageError as e:
            logger.error(f"Could not persist daemon state: {e}")


def build_context(
    config: DevlogConfig,
    extractor: Optional[Extractor] = None,
    clock: Callable[[], datetime] = _utc_now,
) -> DaemonContext:
    """Wire queue, store, engines and watcher for ``config``.

    Raises ConfigError if the configured extractor cannot be loaded.
    """
    if extractor is None:
        extractor = load_extractor(config.extractor)
    base = Path(config.base_dir)
    queue = EventQueue(base)
    queue.init_queue()
    store = MemoryStore(base)
    store.init_store()
    state_path = base / STATE_FILE
    return DaemonContext(
        config=config,
        queue=queue,
        store=store,
        watcher=Watcher(
            queue,
            store,
            extractor,
            batch_size=config.batch_size,
            max_attempts=config.max_attempts,
            watchdog_seconds=config.watchdog_seconds,
        ),
        decay=DecayEngine(store, config.factors, config.prune_floor),
        promotion=PromotionEngine(store, config.min_occurrences, config.min_score),
        state=RunState.load(state_path),
        state_path=state_path,
        clock=clock,
    )


class Scheduler:
    """Runs the daemon cadences until stopped."""

    def __init__(self, ctx: DaemonContext):
        self.ctx = ctx
        self.tasks: Dict[str, asyncio.Task] = {}

    # === Steps (synchronous) ===

    def drain_step(self) -> int:
        """One watcher cycle. Returns how many events were claimed."""
        ctx = self.ctx
        now = ctx.clock()
        result = ctx.watcher.drain_once(now)
        ctx.state.last_poll_at = now.isoformat()
        if result.claimed:
            ctx.state.events_processed += len(result.completed)
            ctx.state.events_failed += len(result.failed)
            ctx.save_state()
        if result.completed:
            ctx.promotion.evaluate_for_promotion(now=now)
        return result.claimed

    def decay_step(self, granularity: Granularity) -> bool:
        """Run a decay pass unless one already ran in the current bucket."""
        ctx = self.ctx
        now = ctx.clock()
        bucket = bucket_for(granularity, now)
        if ctx.state.last_decay.get(granularity.value) == bucket:
            return False
        ctx.decay.run_decay(granularity, now)
        ctx.promotion.evaluate_for_promotion(now=now)
        ctx.state.last_decay[granularity.value] = bucket
        ctx.save_state()
        return True

    def maintenance_step(self) -> bool:
        ctx = self.ctx
        now = ctx.clock()
        day = bucket_for(Granularity.DAILY, now)
        if ctx.state.last_maintenance == day:
            return False
        stale = ctx.promotion.cleanup_stale_candidates(
            timedelta(days=ctx.config.candidate_max_age_days), now
        )
        purged = ctx.queue.purge_completed(
            now - timedelta(days=ctx.config.completed_retention_days)
        )
        log_memory_event("maintenance", f"stale_candidates={stale}, purged_events={purged}")
        ctx.state.last_maintenance = day
        ctx.save_state()
        return True

    # === Tasks ===

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early if the daemon is stopping."""
        try:
            await asyncio.wait_for(self.ctx.stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _repeat(self, name: str, step: Callable[[], object], interval: float) -> None:
        while not self.ctx.stopping.is_set():
            try:
                step()
            except Exception:
                logger.exception(f"{name} step failed; retrying next interval")
            await self._sleep(interval)
        logger.debug(f"{name} task stopped")

    async def _drain_loop(self) -> None:
        batch_size = self.ctx.config.batch_size
        while not self.ctx.stopping.is_set():
            try:
                claimed = self.drain_step()
            except Exception:
                logger.exception("drain step failed; retrying next interval")
                claimed = 0
            if claimed >= batch_size:
                # Full batch: more may be waiting
                await asyncio.sleep(0)
                continue
            await self._sleep(self.ctx.config.poll_interval)
        logger.debug("drain task stopped")

    def start(self) -> None:
        """Recover abandoned events and start one task per cadence."""
        ctx = self.ctx
        recovered = ctx.watcher.recover(ctx.clock())
        if recovered:
            log_memory_event("recover", f"events={len(recovered)}")

        ctx.state.pid = os.getpid()
        ctx.state.started_at = ctx.clock().isoformat()
        ctx.state.running = True
        ctx.save_state()

        interval = ctx.config.decay_check_interval
        self.tasks = {
            "drain": asyncio.create_task(self._drain_loop()),
            "maintenance": asyncio.create_task(
                self._repeat("maintenance", self.maintenance_step, interval)
            ),
        }
        for granularity in Granularity:
            self.tasks[granularity.value] = asyncio.create_task(
                self._repeat(
                    f"{granularity.value} decay",
                    lambda g=granularity: self.decay_step(g),
                    interval,
                )
            )
        logger.info(f"devlog daemon started (pid {ctx.state.pid}, base {ctx.config.base_dir})")

    def stop(self) -> None:
        """Ask every task to finish its current step and exit."""
        if not self.ctx.stopping.is_set():
            logger.info("Shutdown requested; finishing current batch")
            self.ctx.stopping.set()

    def cancel(self, name: str) -> bool:
        """Cancel a single cadence task. Returns False if unknown or done."""
        task = self.tasks.get(name)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def run(self) -> None:
        self.start()
        try:
            await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        finally:
            self.ctx.state.running = False
            self.ctx.save_state()
            logger.info("devlog daemon stopped")


async def _serve(ctx: DaemonContext) -> None:
    scheduler = Scheduler(ctx)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Signal handlers not supported for {sig!r}")
    await scheduler.run()


def run_daemon(config: DevlogConfig, extractor: Optional[Extractor] = None) -> int:
    """Run the daemon in the foreground until SIGINT/SIGTERM.

    Raises ConfigError before anything starts if the setup is invalid.
    """
    setup_devlog_logging(config.base_dir, level=config.log_level)
    ctx = build_context(config, extractor)
    asyncio.run(_serve(ctx))
    return 0

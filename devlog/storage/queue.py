"""SQLite-backed durable event queue.

One row per event with an explicit state column. Every transition is a
single conditional UPDATE (compare-and-swap on the current state) inside its
own transaction, so concurrent claimants can never both win, and a crash
leaves each record in its last committed state.

Layout: ``<base>/queue/queue.db``.
"""

import contextlib
import json
import logging
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from devlog.protocols import EventNotFoundError, QueueStateError, StorageError
from devlog.storage.events import validate_event
from devlog.storage.schema import init_queue_db
from devlog.types import (
    EventState,
    EventType,
    QueuedEvent,
    payload_from_dict,
    payload_to_dict,
)

logger = logging.getLogger(__name__)

# last_error is truncated to this many characters
MAX_ERROR_LENGTH = 2000


def _iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp so lexical order equals time order."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now(now: Optional[datetime] = None) -> datetime:
    return now if now is not None else datetime.now(timezone.utc)


def generate_event_id(now: Optional[datetime] = None) -> str:
    """Time-ordered event id: ``evt_<13-digit epoch ms>_<12 hex>``."""
    millis = int(_now(now).timestamp() * 1000)
    return f"evt_{millis:013d}_{secrets.token_hex(6)}"


class EventQueue:
    """Durable mailbox of hook events.

    Connections are opened per operation. Producers (hook processes) and the
    daemon may each hold their own EventQueue over the same base directory.
    """

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir).expanduser()
        self.queue_dir = self.base_dir / "queue"
        self.db_path = self.queue_dir / "queue.db"
        self._initialized = False

    # === Connection handling ===

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Context manager that handles transactions AND closes connection.

        sqlite3 errors are re-raised as StorageError. DevlogErrors raised
        inside the block roll back and propagate unchanged.
        """
        if not self._initialized:
            self.init_queue()
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open queue database {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise StorageError(f"Queue database error: {e}") from e
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_queue(self) -> None:
        """Create the on-disk layout. Safe to call any number of times."""
        if self.base_dir.exists() and not self.base_dir.is_dir():
            raise StorageError(f"Base directory is not a directory: {self.base_dir}")
        try:
            self.queue_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create queue directory {self.queue_dir}: {e}") from e
        try:
            conn = self._get_conn()
            try:
                init_queue_db(conn, self.db_path)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot initialize queue database {self.db_path}: {e}") from e
        self._initialized = True

    # === Row helpers ===

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> QueuedEvent:
        try:
            event_type = EventType(row["event_type"])
            payload = payload_from_dict(event_type, json.loads(row["payload"]))
            state = EventState(row["state"])
        except (ValueError, TypeError) as e:
            raise StorageError(f"Corrupt queue record {row['id']}: {e}") from e
        return QueuedEvent(
            id=row["id"],
            event_type=event_type,
            session_id=row["session_id"],
            payload=payload,
            state=state,
            enqueued_at=row["enqueued_at"],
            attempts=row["attempts"],
            claimed_at=row["claimed_at"],
            finished_at=row["finished_at"],
            last_error=row["last_error"],
        )

    @staticmethod
    def _record_transition(
        conn: sqlite3.Connection,
        event_id: str,
        from_state: Optional[EventState],
        to_state: EventState,
        at: str,
        detail: Optional[str] = None,
    ) -> None:
        conn.execute(
            "INSERT INTO event_transitions (event_id, from_state, to_state, at, detail) "
            "VALUES (?, ?, ?, ?, ?)",
            (event_id, from_state.value if from_state else None, to_state.value, at, detail),
        )

    def _raise_for_state(
        self, conn: sqlite3.Connection, event_id: str, expected: str
    ) -> None:
        row = conn.execute("SELECT state FROM events WHERE id = ?", (event_id,)).fetchone()
        if row is None:
            raise EventNotFoundError(event_id)
        raise QueueStateError(event_id, expected, row["state"])

    def _transition(
        self,
        event_id: str,
        from_state: EventState,
        to_state: EventState,
        assignments: str,
        params: tuple,
        detail: Optional[str] = None,
        extra_where: str = "",
        extra_params: tuple = (),
        expected: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> QueuedEvent:
        """Compare-and-swap one record from ``from_state`` to ``to_state``."""
        at = _iso(_now(now))
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE events SET state = ?, {assignments} "
                f"WHERE id = ? AND state = ?{extra_where}",
                (to_state.value, *params, event_id, from_state.value, *extra_params),
            )
            if cur.rowcount != 1:
                self._raise_for_state(conn, event_id, expected or from_state.value)
            self._record_transition(conn, event_id, from_state, to_state, at, detail)
            row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return self._row_to_event(row)

    # === Producer side ===

    def enqueue_event(self, event: Mapping[str, Any], now: Optional[datetime] = None) -> str:
        """Validate and persist a new pending event. Returns its id.

        Raises EventValidationError for an unknown event_type or a bad
        payload, StorageError when the record cannot be written.
        """
        event_type, session_id, payload = validate_event(event)
        current = _now(now)
        event_id = generate_event_id(current)
        enqueued_at = _iso(current)
        payload_json = json.dumps(payload_to_dict(payload), default=str)

        with self._connect() as conn:
            conn.execute(
                "INSERT INTO events (id, event_type, session_id, payload, state, enqueued_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    event_id,
                    event_type.value,
                    session_id,
                    payload_json,
                    EventState.PENDING.value,
                    enqueued_at,
                ),
            )
            self._record_transition(conn, event_id, None, EventState.PENDING, enqueued_at)

        logger.debug(f"Enqueued {event_type.value} event {event_id} for session {session_id}")
        return event_id

    # === Reads ===

    def read_event(self, event_id: str) -> QueuedEvent:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        if row is None:
            raise EventNotFoundError(event_id)
        return self._row_to_event(row)

    def list_pending_events(self) -> List[str]:
        """Ids of pending events, oldest first (id breaks ties)."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM events WHERE state = ? ORDER BY enqueued_at, id",
                (EventState.PENDING.value,),
            ).fetchall()
        return [row["id"] for row in rows]

    def list_retryable_events(self, max_attempts: int) -> List[str]:
        """Ids of failed events that still have attempts left, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM events WHERE state = ? AND attempts < ? "
                "ORDER BY enqueued_at, id",
                (EventState.FAILED.value, max_attempts),
            ).fetchall()
        return [row["id"] for row in rows]

    def list_failed_events(self) -> List[QueuedEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE state = ? ORDER BY enqueued_at, id",
                (EventState.FAILED.value,),
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def list_transitions(self, event_id: str) -> List[Dict[str, Any]]:
        """Audit trail for one event, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT from_state, to_state, at, detail FROM event_transitions "
                "WHERE event_id = ? ORDER BY seq",
                (event_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_queue_stats(self) -> Dict[str, int]:
        """Count of records per state. Every state is present, zeros included."""
        stats = {state.value: 0 for state in EventState}
        with self._connect() as conn:
            rows = conn.execute("SELECT state, COUNT(*) AS n FROM events GROUP BY state").fetchall()
        for row in rows:
            stats[row["state"]] = row["n"]
        return stats

    # === Transitions ===

    def mark_processing(self, event_id: str, now: Optional[datetime] = None) -> QueuedEvent:
        """Claim a pending event. The only mutual-exclusion point.

        Raises QueueStateError if the event is not pending (including when a
        concurrent caller claimed it first), EventNotFoundError if unknown.
        """
        claimed_at = _iso(_now(now))
        return self._transition(
            event_id,
            EventState.PENDING,
            EventState.PROCESSING,
            "claimed_at = ?",
            (claimed_at,),
            now=now,
        )

    def mark_completed(self, event_id: str, now: Optional[datetime] = None) -> QueuedEvent:
        finished_at = _iso(_now(now))
        return self._transition(
            event_id,
            EventState.PROCESSING,
            EventState.COMPLETED,
            "attempts = attempts + 1, finished_at = ?, last_error = NULL",
            (finished_at,),
            now=now,
        )

    def mark_failed(
        self, event_id: str, reason: str, now: Optional[datetime] = None
    ) -> QueuedEvent:
        """Move a processing event to failed, recording why.

        Failed records stay in the queue for inspection and retry.
        """
        reason = (reason or "unknown error")[:MAX_ERROR_LENGTH]
        finished_at = _iso(_now(now))
        return self._transition(
            event_id,
            EventState.PROCESSING,
            EventState.FAILED,
            "attempts = attempts + 1, finished_at = ?, last_error = ?",
            (finished_at, reason),
            detail=reason,
            now=now,
        )

    def claim_retry(
        self, event_id: str, max_attempts: int, now: Optional[datetime] = None
    ) -> QueuedEvent:
        """Claim a failed event for another attempt (failed -> processing).

        Succeeds only while attempts < max_attempts. Raises QueueStateError
        otherwise.
        """
        claimed_at = _iso(_now(now))
        return self._transition(
            event_id,
            EventState.FAILED,
            EventState.PROCESSING,
            "claimed_at = ?",
            (claimed_at,),
            detail="retry",
            extra_where=" AND attempts < ?",
            extra_params=(max_attempts,),
            expected=f"failed with attempts < {max_attempts}",
            now=now,
        )

    def requeue_failed(self, event_id: str, now: Optional[datetime] = None) -> QueuedEvent:
        """Operator action: put a failed event back in pending."""
        return self._transition(
            event_id,
            EventState.FAILED,
            EventState.PENDING,
            "claimed_at = NULL, finished_at = NULL",
            (),
            detail="manual requeue",
            now=now,
        )

    # === Maintenance ===

    def recover_stuck_events(
        self,
        older_than: Union[timedelta, float],
        now: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
    ) -> List[str]:
        """Settle abandoned processing records.

        A record is abandoned when it was claimed more than ``older_than``
        ago (a timedelta or seconds). Each recovered record counts one
        attempt. It returns to pending, unless that attempt reaches
        ``max_attempts``: then it is failed for good with last_error
        'abandoned'. Returns the recovered ids, requeued or failed.
        """
        if not isinstance(older_than, timedelta):
            older_than = timedelta(seconds=float(older_than))
        current = _now(now)
        cutoff = _iso(current - older_than)
        at = _iso(current)

        requeued = []
        exhausted = []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, attempts FROM events "
                "WHERE state = ? AND (claimed_at IS NULL OR claimed_at < ?) "
                "ORDER BY enqueued_at, id",
                (EventState.PROCESSING.value, cutoff),
            ).fetchall()
            for row in rows:
                give_up = max_attempts is not None and row["attempts"] + 1 >= max_attempts
                if give_up:
                    target = EventState.FAILED
                    cur = conn.execute(
                        "UPDATE events SET state = ?, attempts = attempts + 1, finished_at = ?, "
                        "last_error = 'abandoned' WHERE id = ? AND state = ?",
                        (target.value, at, row["id"], EventState.PROCESSING.value),
                    )
                else:
                    target = EventState.PENDING
                    cur = conn.execute(
                        "UPDATE events SET state = ?, attempts = attempts + 1, claimed_at = NULL, "
                        "last_error = 'abandoned' WHERE id = ? AND state = ?",
                        (target.value, row["id"], EventState.PROCESSING.value),
                    )
                if cur.rowcount != 1:
                    continue
                self._record_transition(
                    conn, row["id"], EventState.PROCESSING, target, at, "abandoned"
                )
                (exhausted if give_up else requeued).append(row["id"])

        if requeued:
            logger.warning(f"Recovered {len(requeued)} abandoned event(s): {requeued}")
        if exhausted:
            logger.warning(
                f"{len(exhausted)} abandoned event(s) reached {max_attempts} attempts "
                f"and were failed permanently: {exhausted}"
            )
        return requeued + exhausted

    def purge_completed(self, before: datetime) -> int:
        """Delete completed records finished before ``before``. Returns count."""
        cutoff = _iso(before)
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM event_transitions WHERE event_id IN "
                "(SELECT id FROM events WHERE state = ? AND finished_at < ?)",
                (EventState.COMPLETED.value, cutoff),
            )
            cur = conn.execute(
                "DELETE FROM events WHERE state = ? AND finished_at < ?",
                (EventState.COMPLETED.value, cutoff),
            )
            deleted = cur.rowcount
        if deleted:
            logger.info(f"Purged {deleted} completed event(s) finished before {cutoff}")
        return deleted

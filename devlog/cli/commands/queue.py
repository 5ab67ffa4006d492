"""Queue commands: enqueue, status, failed, retry.

``devlog enqueue`` is what hook adapters call. It reads one hook JSON object
from stdin, keeps the fields the event's payload declares, and prints the
new event id.
"""

import json
import logging
import sys
from typing import Any, Dict, Optional

from devlog.config import DevlogConfig
from devlog.protocols import DevlogError, EventValidationError, StorageError
from devlog.storage.flat_files import read_json
from devlog.storage.queue import EventQueue
from devlog.types import EventType, payload_fields

logger = logging.getLogger(__name__)

# Claude Code hook_event_name -> event_type
HOOK_EVENT_NAMES = {
    "PostToolUse": EventType.TOOL_USE,
    "Stop": EventType.SESSION_STOP,
    "SubagentStop": EventType.SESSION_STOP,
    "SessionEnd": EventType.SESSION_END,
}


def _read_stdin_json() -> Dict[str, Any]:
    raw = sys.stdin.read()
    if not raw.strip():
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("stdin must contain a JSON object")
    return data


def build_event(
    data: Dict[str, Any],
    event_type: Optional[str] = None,
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Turn raw hook input into a flat event for enqueue_event.

    Raises EventValidationError if no event type can be determined.
    """
    raw_type = event_type or data.get("event_type")
    if not raw_type and data.get("hook_event_name") in HOOK_EVENT_NAMES:
        raw_type = HOOK_EVENT_NAMES[data["hook_event_name"]].value
    try:
        et = EventType.parse(raw_type)
    except ValueError as e:
        raise EventValidationError(f"Unknown event_type: {raw_type!r}") from e

    data = dict(data)
    if et == EventType.TOOL_USE and "tool_result" not in data and "tool_response" in data:
        response = data["tool_response"]
        data["tool_result"] = response if isinstance(response, str) else json.dumps(response)

    event = {k: data[k] for k in payload_fields(et) if k in data}
    event["event_type"] = et.value
    event["session_id"] = session_id or data.get("session_id")
    return event


def cmd_enqueue(args, config: DevlogConfig) -> int:
    try:
        data = _read_stdin_json()
    except ValueError as e:
        print(f"Invalid JSON on stdin: {e}", file=sys.stderr)
        return 1

    queue = EventQueue(config.base_dir)
    try:
        event_id = queue.enqueue_event(build_event(data, args.event_type, args.session_id))
    except EventValidationError as e:
        print(f"Rejected event: {e}", file=sys.stderr)
        return 1
    except StorageError as e:
        print(f"Could not enqueue event: {e}", file=sys.stderr)
        return 1
    print(event_id)
    return 0


def cmd_status(args, config: DevlogConfig) -> int:
    """Show queue counts and daemon state."""
    stats = EventQueue(config.base_dir).get_queue_stats()
    try:
        state = read_json(config.base_dir / "daemon-state.json", default={}) or {}
    except StorageError as e:
        logger.warning(f"Could not read daemon state: {e}")
        state = {}

    if args.json:
        print(json.dumps({"queue": stats, "daemon": state}, indent=2, default=str))
        return 0

    print("Queue")
    print("=" * 40)
    for name, count in stats.items():
        print(f"  {name:<12} {count}")
    print()
    print("Daemon")
    print("=" * 40)
    if not state:
        print("  never started")
        return 0
    print(f"  running      {state.get('running', False)} (pid {state.get('pid')})")
    print(f"  started      {state.get('started_at') or '-'}")
    print(f"  processed    {state.get('events_processed', 0)}")
    print(f"  failed       {state.get('events_failed', 0)}")
    for granularity, bucket in sorted((state.get("last_decay") or {}).items()):
        print(f"  {granularity:<12} last decayed {bucket}")
    return 0


def cmd_failed(args, config: DevlogConfig) -> int:
    """List failed events with their last error."""
    events = EventQueue(config.base_dir).list_failed_events()
    if args.json:
        print(json.dumps([e.to_dict() for e in events], indent=2, default=str))
        return 0
    if not events:
        print("No failed events.")
        return 0
    for e in events:
        exhausted = " (exhausted)" if e.attempts >= config.max_attempts else ""
        print(f"{e.id}  {e.event_type.value:<14} attempts={e.attempts}{exhausted}")
        print(f"    {e.last_error or ''}")
    return 0


def cmd_retry(args, config: DevlogConfig) -> int:
    """Put a failed event back in pending."""
    try:
        event = EventQueue(config.base_dir).requeue_failed(args.event_id)
    except DevlogError as e:
        print(f"Cannot retry {args.event_id}: {e}", file=sys.stderr)
        return 1
    print(f"Requeued {event.id} (attempts so far: {event.attempts})")
    return 0

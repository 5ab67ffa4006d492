"""Event payload schemas and ingestion validation.

Each EventType has a closed Draft-7 JSON schema. Events are validated here,
at enqueue time, so nothing untyped ever reaches the queue.
"""

import json
import logging
from typing import Any, Dict, Mapping, Tuple

from jsonschema import Draft7Validator

from devlog.protocols import EventValidationError
from devlog.types import EventPayload, EventType, payload_from_dict

logger = logging.getLogger(__name__)

# Serialized payloads above this size are rejected
MAX_PAYLOAD_BYTES = 1024 * 1024

_OPTIONAL_STRING = {"type": ["string", "null"]}

EVENT_SCHEMAS: Dict[EventType, Dict[str, Any]] = {
    EventType.TOOL_USE: {
        "type": "object",
        "properties": {
            "tool_name": {"type": "string", "minLength": 1},
            "tool_input": {},
            "tool_result": _OPTIONAL_STRING,
            "transcript_path": _OPTIONAL_STRING,
            "cwd": _OPTIONAL_STRING,
        },
        "required": ["tool_name"],
        "additionalProperties": False,
    },
    EventType.SESSION_STOP: {
        "type": "object",
        "properties": {
            "transcript_path": _OPTIONAL_STRING,
            "conversation_summary": _OPTIONAL_STRING,
            "cwd": _OPTIONAL_STRING,
        },
        "additionalProperties": False,
    },
    EventType.SESSION_END: {
        "type": "object",
        "properties": {
            "transcript_path": _OPTIONAL_STRING,
            "conversation_summary": _OPTIONAL_STRING,
            "reason": _OPTIONAL_STRING,
            "cwd": _OPTIONAL_STRING,
        },
        "additionalProperties": False,
    },
    EventType.TURN_COMPLETE: {
        "type": "object",
        "properties": {
            "user_prompt": {"type": "string"},
            "assistant_response": {"type": "string"},
            "files_touched": {"type": "array", "items": {"type": "string"}},
            "cwd": _OPTIONAL_STRING,
        },
        "required": ["user_prompt", "assistant_response"],
        "additionalProperties": False,
    },
}

_VALIDATORS: Dict[EventType, Draft7Validator] = {}


def _validator(event_type: EventType) -> Draft7Validator:
    validator = _VALIDATORS.get(event_type)
    if validator is None:
        schema = EVENT_SCHEMAS[event_type]
        Draft7Validator.check_schema(schema)
        validator = Draft7Validator(schema)
        _VALIDATORS[event_type] = validator
    return validator


def validate_payload(event_type: EventType, payload: Mapping[str, Any]) -> EventPayload:
    """Validate a payload against its event type's schema.

    Returns the typed payload dataclass. Raises EventValidationError with
    the first schema violation.
    """
    if not isinstance(payload, Mapping):
        raise EventValidationError(
            f"payload must be an object, got {type(payload).__name__}"
        )
    data = dict(payload)

    errors = sorted(_validator(event_type).iter_errors(data), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        path = ".".join(str(part) for part in first.path) or "(root)"
        raise EventValidationError(
            f"Invalid {event_type.value} payload at {path}: {first.message}"
        )

    try:
        size = len(json.dumps(data, default=str, separators=(",", ":")).encode("utf-8"))
    except (TypeError, ValueError) as e:
        raise EventValidationError(f"payload is not JSON-serializable: {e}") from e
    if size > MAX_PAYLOAD_BYTES:
        raise EventValidationError(
            f"payload too large ({size} bytes, max {MAX_PAYLOAD_BYTES})"
        )

    return payload_from_dict(event_type, data)


def validate_event(event: Mapping[str, Any]) -> Tuple[EventType, str, EventPayload]:
    """Validate a flat hook event at the ingestion boundary.

    The event carries ``event_type`` and ``session_id``; every other key is
    payload. Returns (event_type, session_id, typed payload).
    """
    if not isinstance(event, Mapping):
        raise EventValidationError(f"event must be an object, got {type(event).__name__}")

    try:
        event_type = EventType.parse(event.get("event_type"))
    except ValueError as e:
        raise EventValidationError(f"Unknown event_type: {event.get('event_type')!r}") from e

    session_id = event.get("session_id")
    if not isinstance(session_id, str) or not session_id.strip():
        raise EventValidationError("session_id must be a non-empty string")

    payload = {k: v for k, v in event.items() if k not in ("event_type", "session_id")}
    return event_type, session_id.strip(), validate_payload(event_type, payload)

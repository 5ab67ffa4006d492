"""Reference extractor.

Heuristic, no model calls: records which tools a session reaches for and
keeps session summaries as context. Real deployments plug in a richer
extractor through the ``devlog.extractors`` entry point group.
"""

import logging
from typing import List

from devlog.protocols import ExtractionError
from devlog.types import (
    EventType,
    MemoryDraft,
    QueuedEvent,
    SessionEndPayload,
    SessionStopPayload,
    ToolUsePayload,
)

logger = logging.getLogger(__name__)

# Summaries longer than this are truncated
MAX_SUMMARY_CHARS = 2000


def _files_from_input(tool_input) -> List[str]:
    if not isinstance(tool_input, dict):
        return []
    files = []
    for key in ("file_path", "path", "notebook_path"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            files.append(value)
    return files


class ToolUsageExtractor:
    """Turns tool-use events and session summaries into drafts."""

    name = "tool-usage"

    def extract(self, event: QueuedEvent) -> List[MemoryDraft]:
        payload = event.payload
        if event.event_type == EventType.TOOL_USE:
            if not isinstance(payload, ToolUsePayload) or not payload.tool_name.strip():
                raise ExtractionError(f"{event.id}: tool_use event without a tool name")
            tool = payload.tool_name.strip()
            return [
                MemoryDraft(
                    type="pattern",
                    content=f"uses {tool} tool",
                    recurrence_key=f"tool:{tool.lower()}",
                    files=_files_from_input(payload.tool_input),
                    tags=["tool-usage"],
                )
            ]

        if event.event_type in (EventType.SESSION_STOP, EventType.SESSION_END):
            if not isinstance(payload, (SessionStopPayload, SessionEndPayload)):
                raise ExtractionError(f"{event.id}: unexpected payload for {event.event_type.value}")
            summary = (payload.conversation_summary or "").strip()
            if not summary:
                return []
            return [
                MemoryDraft(
                    type="context",
                    content=summary[:MAX_SUMMARY_CHARS],
                    tags=["session-summary"],
                )
            ]

        # turn_complete carries raw conversation text; nothing heuristic to keep
        return []

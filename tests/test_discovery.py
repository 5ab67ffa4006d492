"""Tests for extractor discovery and the reference extractor."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest

from devlog.discovery import (
    BUILTIN_EXTRACTORS,
    CallableExtractor,
    discover_extractors,
    load_extractor,
)
from devlog.extractors import ToolUsageExtractor
from devlog.protocols import ConfigError, ExtractionError, Extractor
from devlog.types import (
    EventType,
    MemoryDraft,
    QueuedEvent,
    SessionEndPayload,
    ToolUsePayload,
    TurnCompletePayload,
)


def summarize(event):
    return [MemoryDraft(type="fact", content="from a function")]


class NeedsArgs:
    def __init__(self, api_key):
        self.api_key = api_key

    def extract(self, event):
        return []


NOT_AN_EXTRACTOR = 42


def _fake_entry_point(name, value, loaded):
    return SimpleNamespace(
        name=name,
        value=value,
        dist=SimpleNamespace(name="thirdparty", version="1.2.0"),
        load=lambda: loaded,
    )


class TestLoadExtractor:
    def test_builtin_by_name(self):
        extractor = load_extractor("tool-usage")
        assert isinstance(extractor, ToolUsageExtractor)
        assert isinstance(extractor, Extractor)

    def test_module_attr_class(self):
        assert isinstance(load_extractor("devlog.extractors:ToolUsageExtractor"), ToolUsageExtractor)

    def test_module_attr_function_is_wrapped(self):
        extractor = load_extractor(f"{__name__}:summarize")
        assert isinstance(extractor, CallableExtractor)
        assert extractor.extract(None)[0].content == "from a function"

    def test_missing_module(self):
        with pytest.raises(ConfigError, match="Cannot import"):
            load_extractor("no_such_module_xyz:thing")

    def test_missing_attr(self):
        with pytest.raises(ConfigError, match="not found"):
            load_extractor("devlog.extractors:Nope")

    def test_constructor_failure(self):
        with pytest.raises(ConfigError, match="Cannot construct"):
            load_extractor(f"{__name__}:NeedsArgs")

    def test_not_callable(self):
        with pytest.raises(ConfigError, match="not an extractor"):
            load_extractor(f"{__name__}:NOT_AN_EXTRACTOR")

    def test_empty_reference(self):
        with pytest.raises(ConfigError):
            load_extractor("  ")

    def test_entry_point(self):
        ep = _fake_entry_point("llm", "thirdparty.extract:LLMExtractor", ToolUsageExtractor)
        with patch("devlog.discovery._get_entry_points", return_value=[ep]):
            assert isinstance(load_extractor("llm"), ToolUsageExtractor)

    def test_unknown_name_lists_available(self):
        with patch("devlog.discovery._get_entry_points", return_value=[]):
            with pytest.raises(ConfigError, match="tool-usage"):
                load_extractor("llm")

    def test_ambiguous_entry_point(self):
        eps = [
            _fake_entry_point("llm", "a:X", ToolUsageExtractor),
            _fake_entry_point("llm", "b:Y", ToolUsageExtractor),
        ]
        with patch("devlog.discovery._get_entry_points", return_value=eps):
            with pytest.raises(ConfigError, match="Ambiguous"):
                load_extractor("llm")


class TestDiscoverExtractors:
    def test_parses_entry_points(self):
        ep = _fake_entry_point("llm", "thirdparty.extract:LLMExtractor [openai]", None)
        with patch("devlog.discovery._get_entry_points", return_value=[ep]):
            (found,) = discover_extractors()
        assert found.qualname == "thirdparty.extract:LLMExtractor"
        assert found.dist_name == "thirdparty"

    def test_builtins_registered(self):
        assert "tool-usage" in BUILTIN_EXTRACTORS


class TestToolUsageExtractor:
    def _event(self, event_type, payload):
        return QueuedEvent(id="evt_1", event_type=event_type, session_id="s1", payload=payload)

    def test_tool_use(self):
        (draft,) = ToolUsageExtractor().extract(
            self._event(
                EventType.TOOL_USE,
                ToolUsePayload(tool_name="Edit", tool_input={"file_path": "a.py"}),
            )
        )
        assert draft.type == "pattern"
        assert draft.content == "uses Edit tool"
        assert draft.recurrence_key == "tool:edit"
        assert draft.files == ["a.py"]

    def test_blank_tool_name_is_extraction_error(self):
        with pytest.raises(ExtractionError):
            ToolUsageExtractor().extract(self._event(EventType.TOOL_USE, ToolUsePayload(tool_name=" ")))

    def test_session_summary(self):
        (draft,) = ToolUsageExtractor().extract(
            self._event(
                EventType.SESSION_END,
                SessionEndPayload(conversation_summary="Refactored the queue", reason="exit"),
            )
        )
        assert draft.type == "context"
        assert draft.content == "Refactored the queue"

    def test_session_without_summary(self):
        assert ToolUsageExtractor().extract(self._event(EventType.SESSION_END, SessionEndPayload())) == []

    def test_turn_complete_ignored(self):
        payload = TurnCompletePayload(user_prompt="hi", assistant_response="hello")
        assert ToolUsageExtractor().extract(self._event(EventType.TURN_COMPLETE, payload)) == []

"""
Extractor discovery for devlog.

Extractors are found three ways, in order:

1. An explicit ``module:attr`` reference
2. A built-in name (see BUILTIN_EXTRACTORS)
3. An installed entry point in the ``devlog.extractors`` group

The loaded object may be an Extractor class (instantiated with no
arguments), an Extractor instance, or a plain callable taking an event and
returning drafts.
"""

import importlib
import importlib.metadata
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from devlog.protocols import ENTRY_POINT_GROUP_EXTRACTORS, ConfigError, Extractor
from devlog.types import MemoryDraft, QueuedEvent

logger = logging.getLogger(__name__)

BUILTIN_EXTRACTORS = {
    "tool-usage": "devlog.extractors:ToolUsageExtractor",
}


@dataclass
class DiscoveredExtractor:
    """Metadata about an extractor entry point."""

    name: str
    module: str
    attr: str
    dist_name: Optional[str] = None
    dist_version: Optional[str] = None

    @property
    def qualname(self) -> str:
        """Full qualified reference: 'module:attr'."""
        return f"{self.module}:{self.attr}"


def _get_entry_points(group: str) -> List[importlib.metadata.EntryPoint]:
    try:
        return list(importlib.metadata.entry_points(group=group))
    except Exception as exc:
        logger.warning("Failed to read entry points for group '%s': %s", group, exc)
        return []


def discover_extractors() -> List[DiscoveredExtractor]:
    """List installed extractors (devlog.extractors entry point group)."""
    found = []
    for ep in _get_entry_points(ENTRY_POINT_GROUP_EXTRACTORS):
        module, _, attr = (ep.value or "").partition(":")
        found.append(
            DiscoveredExtractor(
                name=ep.name,
                module=module.strip(),
                attr=attr.split(" [", 1)[0].strip(),
                dist_name=ep.dist.name if ep.dist is not None else None,
                dist_version=ep.dist.version if ep.dist is not None else None,
            )
        )
    return found


class CallableExtractor:
    """Adapts a plain function to the Extractor protocol."""

    def __init__(self, func: Callable[[QueuedEvent], Sequence[MemoryDraft]]):
        self.func = func
        self.name = getattr(func, "__name__", repr(func))

    def extract(self, event: QueuedEvent) -> Sequence[MemoryDraft]:
        return self.func(event)

    def __repr__(self) -> str:
        return f"CallableExtractor({self.name})"


def _import_ref(ref: str) -> Any:
    module_name, _, attr = ref.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import extractor module '{module_name}': {exc}") from exc
    obj: Any = module
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError:
            raise ConfigError(f"Extractor '{ref}' not found") from None
    return obj


def _load_entry_point(name: str) -> Any:
    eps = [ep for ep in _get_entry_points(ENTRY_POINT_GROUP_EXTRACTORS) if ep.name == name]
    if not eps:
        return None
    if len(eps) > 1:
        raise ConfigError(
            f"Ambiguous extractor '{name}' in group '{ENTRY_POINT_GROUP_EXTRACTORS}': "
            f"{len(eps)} matches found"
        )
    try:
        return eps[0].load()
    except Exception as exc:
        raise ConfigError(f"Failed to load extractor entry point '{name}': {exc}") from exc


def _instantiate(obj: Any, ref: str) -> Extractor:
    if isinstance(obj, type):
        try:
            obj = obj()
        except Exception as exc:
            raise ConfigError(f"Cannot construct extractor '{ref}': {exc}") from exc
    if isinstance(obj, Extractor):
        return obj
    if callable(obj):
        return CallableExtractor(obj)
    raise ConfigError(f"'{ref}' is not an extractor")


def load_extractor(ref: str) -> Extractor:
    """Resolve an extractor reference to a ready Extractor.

    Raises:
        ConfigError: If the reference cannot be resolved or loaded.
    """
    ref = (ref or "").strip()
    if not ref:
        raise ConfigError("No extractor configured")

    if ":" in ref:
        obj = _import_ref(ref)
    elif ref in BUILTIN_EXTRACTORS:
        obj = _import_ref(BUILTIN_EXTRACTORS[ref])
    else:
        obj = _load_entry_point(ref)
        if obj is None:
            known = sorted(set(BUILTIN_EXTRACTORS) | {e.name for e in discover_extractors()})
            raise ConfigError(f"Unknown extractor '{ref}'. Available: {', '.join(known)}")

    extractor = _instantiate(obj, ref)
    logger.debug(f"Loaded extractor {ref} -> {extractor!r}")
    return extractor

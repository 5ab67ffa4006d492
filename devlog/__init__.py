"""
devlog - durable hook event queue and decaying developer memory.

Hook adapters enqueue events; a daemon drains them through an extractor
into short-term memory, decays that memory over time, and promotes what
keeps recurring into long-term memory.
"""

from .daemon.decay import DecayEngine
from .daemon.promotion import PromotionEngine
from .daemon.watcher import Watcher
from .storage.memory_store import MemoryStore
from .storage.queue import EventQueue

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("devlog")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["EventQueue", "MemoryStore", "Watcher", "DecayEngine", "PromotionEngine"]

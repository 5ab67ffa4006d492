"""Logging setup for the devlog daemon.

Two outputs under ``<base>/logs/``:

- ``daemon-YYYY-MM-DD.log``: the ``devlog`` logger tree
- ``memory-events-YYYY-MM-DD.log``: one line per memory lifecycle event
  (batch drained, decay pass, promotion), meant for humans tailing it

The memory event log is written only once setup_devlog_logging has chosen a
base directory, or when a caller passes ``base_dir`` explicitly.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional, Union

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_log_base: Optional[Path] = None


def _log_dir(base_dir: Optional[Union[str, Path]] = None) -> Optional[Path]:
    if base_dir is not None:
        return Path(base_dir).expanduser() / "logs"
    if _log_base is not None:
        return _log_base / "logs"
    return None


def setup_devlog_logging(
    base_dir: Optional[Union[str, Path]] = None,
    level: str = "INFO",
    console: bool = False,
) -> logging.Logger:
    """Configure the ``devlog`` logger with a dated file handler.

    Args:
        base_dir: devlog home; defaults to get_devlog_home()
        level: Level name, case-insensitive. Unknown names fall back to INFO
        console: Also log to stderr. Always on at DEBUG

    Returns:
        The ``devlog`` logger. Calling again does not add handlers.
    """
    global _log_base
    if base_dir is None:
        from devlog.config import get_devlog_home

        base_dir = get_devlog_home()
    _log_base = Path(base_dir).expanduser()

    log_level = getattr(logging, str(level).upper(), None)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logger = logging.getLogger("devlog")
    logger.setLevel(log_level)

    log_dir = _log_base / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        log_file = log_dir / f"daemon-{datetime.now().strftime('%Y-%m-%d')}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    want_console = console or log_level <= logging.DEBUG
    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if want_console and not has_console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def log_memory_event(
    event_type: str,
    details: str,
    base_dir: Optional[Union[str, Path]] = None,
) -> None:
    """Append one line to the memory event log."""
    log_dir = _log_dir(base_dir)
    logging.getLogger("devlog.events").debug(f"{event_type} | {details}")
    if log_dir is None:
        return
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        event_file = log_dir / f"memory-events-{datetime.now().strftime('%Y-%m-%d')}.log"
        timestamp = datetime.now().isoformat(timespec="seconds")
        with open(event_file, "a", encoding="utf-8") as f:
            f.write(f"{timestamp} | {event_type} | {details}\n")
    except OSError as e:
        logging.getLogger("devlog").warning(f"Could not write memory event log: {e}")


def _format_counts(counts: Mapping[str, Any]) -> str:
    return ", ".join(f"{k}={v}" for k, v in counts.items())


def log_batch(claimed: int, completed: int, failed: int, base_dir=None) -> None:
    log_memory_event(
        "batch",
        f"claimed={claimed}, completed={completed}, failed={failed}",
        base_dir=base_dir,
    )


def log_decay(report: Mapping[str, Any], base_dir=None) -> None:
    log_memory_event("decay", _format_counts(report), base_dir=base_dir)


def log_promotion(key: str, occurrences: int, score: float, base_dir=None) -> None:
    log_memory_event(
        "promote",
        f"key={key}, occurrences={occurrences}, score={score:.3f}",
        base_dir=base_dir,
    )

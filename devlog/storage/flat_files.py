"""Flat file primitives for devlog memory storage.

Free functions over JSON lines and JSON documents. The memory store is
built on three operations:

- append_jsonl:  one record per line, flushed and fsynced
- read_jsonl:    tolerant read; malformed lines are skipped and counted
- atomic_write:  write to a temp file in the same directory, then os.replace

A reader therefore only ever sees the old file or the new file, never a
half-written one.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Tuple

from devlog.protocols import StorageError

logger = logging.getLogger(__name__)


def _dumps(record: Any) -> str:
    return json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)


def ensure_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageError(f"Cannot create directory {path}: {e}") from e
    if not path.is_dir():
        raise StorageError(f"Not a directory: {path}")


def _ends_with_newline(path: Path) -> bool:
    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        if f.tell() == 0:
            return True
        f.seek(-1, os.SEEK_END)
        return f.read(1) == b"\n"


def append_jsonl(path: Path, records: Iterable[Any]) -> int:
    """Append records to a JSON lines file. Returns the number written.

    A trailing partial line left by a crashed writer is terminated first,
    so it is skipped on read instead of swallowing the new record.
    """
    lines = [_dumps(r) + "\n" for r in records]
    if not lines:
        return 0
    ensure_dir(path.parent)
    try:
        repair = path.exists() and not _ends_with_newline(path)
        with open(path, "a", encoding="utf-8") as f:
            if repair:
                logger.warning(f"Terminating partial trailing line in {path}")
                f.write("\n")
            f.write("".join(lines))
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        raise StorageError(f"Failed to append to {path}: {e}") from e
    return len(lines)


def read_jsonl(
    path: Path,
    parse: Optional[Callable[[Any], Any]] = None,
) -> Tuple[List[Any], List[str]]:
    """Read a JSON lines file tolerantly.

    Each line is decoded and, if ``parse`` is given, converted with it; a
    line that fails either step is skipped. Returns (records, bad_lines).
    A missing file reads as empty.
    """
    records: List[Any] = []
    bad: List[str] = []
    if not path.exists():
        return records, bad
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            for lineno, line in enumerate(f, start=1):
                text = line.strip()
                if not text:
                    continue
                try:
                    data = json.loads(text)
                    records.append(parse(data) if parse else data)
                except (ValueError, TypeError, KeyError) as e:
                    logger.debug(f"Skipping malformed line {lineno} in {path}: {e}")
                    bad.append(text)
    except OSError as e:
        raise StorageError(f"Failed to read {path}: {e}") from e
    if bad:
        logger.warning(f"Skipped {len(bad)} malformed record(s) in {path}")
    return records, bad


def atomic_write(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` atomically."""
    ensure_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except OSError as e:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise StorageError(f"Failed to write {path}: {e}") from e


def rewrite_jsonl(path: Path, records: Iterable[Any]) -> None:
    """Atomically replace a JSON lines file with ``records``."""
    atomic_write(path, "".join(_dumps(r) + "\n" for r in records))


def read_json(path: Path, default: Any = None) -> Any:
    """Read a JSON document. Missing file returns ``default``.

    Raises StorageError if the document exists but cannot be decoded.
    """
    if not path.exists():
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except ValueError as e:
        raise StorageError(f"Corrupt JSON document {path}: {e}") from e
    except OSError as e:
        raise StorageError(f"Failed to read {path}: {e}") from e


def write_json(path: Path, data: Any) -> None:
    atomic_write(path, json.dumps(data, ensure_ascii=False, indent=2, default=str) + "\n")

"""JSON state files shared by concurrent hook processes.

Every hook invocation is its own short-lived process, so two sessions can
update the same document at once. Writers take an exclusive file lock on a
sidecar ``.lock`` file for the whole read-modify-write and publish the new
document with an atomic rename, so readers never see a torn file and no
update is lost.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = 5.0


def read_json_file(path: Path) -> Any | None:
    """Parse a JSON file; missing, unreadable or malformed files yield None."""
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.debug(f"Discarding unreadable state file {path}: {e}")
        return None


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON atomically: temp file + os.replace()."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def file_lock(path: Path) -> FileLock:
    return FileLock(str(path) + ".lock", timeout=LOCK_TIMEOUT_SECONDS)


@contextmanager
def locked_update(
    path: Path,
    default_factory: Callable[[], dict],
) -> Iterator[dict]:
    """Read-modify-write ``path`` under an exclusive lock.

    Yields the current document (or a fresh default when the file is
    missing, corrupt or not an object). Whatever the caller leaves in the
    yielded dict is written back when the block exits without error.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = file_lock(path)
    try:
        lock.acquire()
    except Timeout:
        # A stuck lock must not wedge the hook; fall back to an unlocked update.
        logger.warning(f"Lock timeout on {path}, updating without lock")
        lock = None
    try:
        data = read_json_file(path)
        if not isinstance(data, dict):
            data = default_factory()
        yield data
        atomic_write_json(path, data)
    finally:
        if lock is not None:
            lock.release()


def append_jsonl(path: Path, entry: dict) -> None:
    """Append one JSON line; failures are logged and ignored."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")
    except OSError as e:
        logger.debug(f"JSONL append to {path} failed: {e}")


def read_jsonl(path: Path) -> list[dict]:
    """Read a JSONL file, skipping lines that fail to parse."""
    entries: list[dict] = []
    try:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
    except OSError:
        return entries
    for line in lines:
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except ValueError:
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return entries

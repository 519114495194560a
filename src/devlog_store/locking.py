"""File locking and atomic JSON persistence for file-backed providers."""

from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Optional

import portalocker

from .errors import LockTimeout, MalformedDataError


@contextmanager
def file_lock(path: Path, timeout: float = 10.0) -> Generator[None, None, None]:
    """Acquire an exclusive advisory lock guarding ``path``.

    The lock lives in a sibling ``<name>.lock`` file so the guarded file
    itself can be replaced by rename while the lock is held.

    Raises:
        LockTimeout: If the lock cannot be acquired within ``timeout``
    """
    lock_path = path.with_suffix(path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.touch(exist_ok=True)

    try:
        lock = portalocker.Lock(lock_path, timeout=timeout)
        lock.acquire()
    except portalocker.LockException as e:
        raise LockTimeout(f"Could not lock {path} within {timeout}s") from e
    try:
        yield
    finally:
        lock.release()


@contextmanager
def atomic_write(path: Path, encoding: str = "utf-8") -> Generator:
    """Write a text file atomically.

    Content goes to a uniquely named temp file in the same directory which
    is then renamed over the target, so readers never see a partial file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)

    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def write_json(path: Path, data: Any) -> None:
    """Atomically write ``data`` as pretty-printed JSON."""
    with atomic_write(path) as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
        f.write("\n")


def read_json(path: Path, default: Optional[Any] = None) -> Any:
    """Read a JSON document.

    Returns ``default`` when the file is missing.

    Raises:
        MalformedDataError: If the file exists but is not valid JSON
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedDataError(f"Invalid JSON in {path}: {e}") from e


@contextmanager
def locked_json_update(path: Path, default: Any, timeout: float = 10.0) -> Generator:
    """Lock, load, yield for in-place mutation, then atomically write back.

    Nothing is written if the body raises.
    """
    with file_lock(path, timeout=timeout):
        data = read_json(path, default=default)
        yield data
        write_json(path, data)

"""File locking and atomic JSON documents.

Every JSON document forkcat persists is replaced whole via a temp file
and os.replace, so a reader sees either the old or the new content and
never a torn record. Read-modify-write cycles run under an exclusive
portalocker lock on a sibling lock file, which works across processes
and across sandboxes sharing a bind mount.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any

import portalocker

DEFAULT_LOCK_TIMEOUT = 60


@contextmanager
def locked(lock_path: Path, timeout: float = DEFAULT_LOCK_TIMEOUT) -> Iterator[None]:
    """Hold an exclusive lock on ``lock_path`` for the block."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with portalocker.Lock(str(lock_path), mode="a", timeout=timeout):
        yield


def write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(
        f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp"
    )
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def read_json(path: Path, default: Any = None) -> Any:
    """Load a JSON document, returning ``default`` when it is absent."""
    if not path.exists():
        return default
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def update_json(
    path: Path,
    lock_path: Path,
    mutate: Callable[[Any], Any],
    default: Any = None,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> Any:
    """Locked read-modify-write of a JSON document.

    ``mutate`` receives the current document (or ``default``) and
    returns the new one, which is written atomically and returned.
    """
    with locked(lock_path, timeout):
        current = read_json(path, default)
        updated = mutate(current)
        write_json_atomic(path, updated)
        return updated


@asynccontextmanager
async def async_locked(
    lock_path: Path, timeout: float = DEFAULT_LOCK_TIMEOUT
) -> AsyncIterator[None]:
    """``locked`` for coroutines; waiting happens off the event loop."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock = portalocker.Lock(str(lock_path), mode="a", timeout=timeout)
    await asyncio.to_thread(lock.acquire)
    try:
        yield
    finally:
        lock.release()

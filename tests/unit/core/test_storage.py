"""Tests for locked, atomic JSON documents."""

import asyncio
import threading

import portalocker
import pytest

from forkcat.core.storage import (
    async_locked,
    locked,
    read_json,
    update_json,
    write_json_atomic,
)


def test_read_missing_returns_default(tmp_path):
    assert read_json(tmp_path / "absent.json") is None
    assert read_json(tmp_path / "absent.json", {"a": 1}) == {"a": 1}


def test_write_then_read(tmp_path):
    path = tmp_path / "nested" / "doc.json"

    write_json_atomic(path, {"insights": [1, 2]})

    assert read_json(path) == {"insights": [1, 2]}
    # No temp files left next to the document
    assert [p.name for p in path.parent.iterdir()] == ["doc.json"]


def test_update_json_serializes_threads(tmp_path):
    path = tmp_path / "counter.json"
    lock = tmp_path / "counter.lock"

    def bump():
        for _ in range(20):
            update_json(path, lock, lambda doc: {"n": (doc or {"n": 0})["n"] + 1})

    threads = [threading.Thread(target=bump) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert read_json(path) == {"n": 100}


def test_lock_timeout(tmp_path):
    lock = tmp_path / "held.lock"
    acquired = threading.Event()
    release = threading.Event()

    def holder():
        with locked(lock):
            acquired.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        acquired.wait(5)
        with pytest.raises(portalocker.exceptions.LockException), locked(lock, timeout=0.2):
            pass
    finally:
        release.set()
        thread.join()


async def test_async_locked_excludes_coroutines(tmp_path):
    lock = tmp_path / "merge.lock"
    inside = 0
    peak = 0

    async def critical():
        nonlocal inside, peak
        async with async_locked(lock, timeout=5):
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.05)
            inside -= 1

    await asyncio.gather(critical(), critical(), critical())

    assert peak == 1

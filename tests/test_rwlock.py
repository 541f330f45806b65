from __future__ import annotations

import threading

from cronkeeper.rwlock import ReadWriteLock


def test_readers_share_the_lock() -> None:
    lock = ReadWriteLock()
    inside = threading.Barrier(2, timeout=2)

    def reader() -> None:
        with lock.read():
            inside.wait()

    threads = [threading.Thread(target=reader) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=3)
    assert not any(thread.is_alive() for thread in threads)
    assert not inside.broken


def test_writer_waits_for_reader() -> None:
    lock = ReadWriteLock()
    events = []
    writer_started = threading.Event()

    def writer() -> None:
        writer_started.set()
        with lock.write():
            events.append("write")

    with lock.read():
        thread = threading.Thread(target=writer)
        thread.start()
        writer_started.wait(2)
        thread.join(timeout=0.1)
        assert thread.is_alive()
        events.append("read-done")
    thread.join(timeout=2)
    assert events == ["read-done", "write"]


def test_write_is_exclusive() -> None:
    lock = ReadWriteLock()
    counter = {"value": 0}

    def bump() -> None:
        for _ in range(500):
            with lock.write():
                current = counter["value"]
                counter["value"] = current + 1

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert counter["value"] == 2000

"""
Fine-grained synchronization primitives.

Shared engine state is partitioned per key (oracle source, protocol,
sender, resource) so unrelated resources never contend. Locks guard
in-memory mutation only; callers must never perform I/O while holding one.

File: backend/txguard/core/locks.py
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class ReadWriteLock:
    """Writer-preferring reader/writer lock."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class KeyedLocks:
    """
    Lazily created reader/writer lock per key.

    Mirrors the per-address lock table used for nonce allocation: the
    registry itself is guarded by a short-lived mutex, and each key gets
    its own lock on first use.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, ReadWriteLock] = {}
        self._registry_lock = threading.Lock()

    def get(self, key: Hashable) -> ReadWriteLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = ReadWriteLock()
                self._locks[key] = lock
            return lock

    def read(self, key: Hashable):
        return self.get(key).read()

    def write(self, key: Hashable):
        return self.get(key).write()

    def discard(self, key: Hashable) -> None:
        with self._registry_lock:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

"""
Keyed lock registry for serializing same-campaign / same-donor mutations.

Problem: two concurrent withdrawals against one category can both pass the
budget check against a stale `spent` and jointly overspend.

Solution: a shared, thread-safe registry of locks keyed by record id. Requests
for different campaigns proceed in parallel; requests for the same campaign
queue behind one lock. Cross-process safety comes from the version
compare-and-swap in the storage layer.

Usage:
    from campaign_ledger.utils.locks import campaign_locks

    with campaign_locks.hold(campaign_id):
        ...  # re-check and commit
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLockRegistry:
    """
    Thread-safe registry of per-key locks.

    Locks are created lazily and kept for the life of the process; the number of
    keys is bounded by the number of active campaigns/donors.
    """

    def __init__(self, name: str = "ledger"):
        self.name = name
        self._locks: Dict[str, threading.Lock] = {}
        self._master_lock = threading.Lock()

    def _get_key_lock(self, key: str) -> threading.Lock:
        """Get or create the lock for a key."""
        with self._master_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for `key` for the duration of the block."""
        lock = self._get_key_lock(str(key))
        with lock:
            yield

    def __len__(self) -> int:
        with self._master_lock:
            return len(self._locks)

    def reset(self) -> None:
        """Drop all locks (tests only; never call while a lock is held)."""
        with self._master_lock:
            self._locks = {}


# Singleton instances - shared across all services in the process
campaign_locks = KeyedLockRegistry("campaign")
donor_locks = KeyedLockRegistry("donor")
organization_locks = KeyedLockRegistry("organization")

"""
Document storage interface.

Every document lives in a collection under a string key and carries an integer
version. Writes are either a create-if-absent `insert` or a `compare_and_swap`
against the version the writer read, so concurrent writers can never silently
overwrite each other.
"""

import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

COLLECTIONS = ("organizations", "campaigns", "donors", "transactions")


@dataclass
class StoredDocument:
    """A document as read from the backend."""

    key: str
    doc: dict[str, Any]
    version: int


def check_collection(collection: str) -> None:
    """Reject unknown collection names."""
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection!r}. Must be one of {COLLECTIONS}")


class DocumentBackend(ABC):
    """Versioned document store used by the repositories."""

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        """Return the document and its version, or None."""

    @abstractmethod
    def insert(self, collection: str, key: str, doc: dict[str, Any]) -> bool:
        """Create the document at version 1. Returns False if the key already exists."""

    @abstractmethod
    def compare_and_swap(self, collection: str, key: str, doc: dict[str, Any], expected_version: int) -> bool:
        """Replace the document if its stored version equals `expected_version`.

        On success the stored version becomes expected_version + 1.
        """

    @abstractmethod
    def delete(self, collection: str, key: str) -> bool:
        """Remove a document. Returns False if it did not exist."""

    @abstractmethod
    def list(self, collection: str) -> list[StoredDocument]:
        """Return every document in a collection, ordered by key."""


class InMemoryBackend(DocumentBackend):
    """Process-local backend (tests and single-process deployments).

    Stored documents are deep-copied on the way in and out so callers never
    share mutable state with the store.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, tuple[dict[str, Any], int]]] = {name: {} for name in COLLECTIONS}

    def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        check_collection(collection)
        with self._lock:
            entry = self._data[collection].get(key)
            if entry is None:
                return None
            doc, version = entry
            return StoredDocument(key=key, doc=copy.deepcopy(doc), version=version)

    def insert(self, collection: str, key: str, doc: dict[str, Any]) -> bool:
        check_collection(collection)
        with self._lock:
            if key in self._data[collection]:
                return False
            self._data[collection][key] = (copy.deepcopy(doc), 1)
            return True

    def compare_and_swap(self, collection: str, key: str, doc: dict[str, Any], expected_version: int) -> bool:
        check_collection(collection)
        with self._lock:
            entry = self._data[collection].get(key)
            if entry is None or entry[1] != expected_version:
                return False
            self._data[collection][key] = (copy.deepcopy(doc), expected_version + 1)
            return True

    def delete(self, collection: str, key: str) -> bool:
        check_collection(collection)
        with self._lock:
            return self._data[collection].pop(key, None) is not None

    def list(self, collection: str) -> list[StoredDocument]:
        check_collection(collection)
        with self._lock:
            return [
                StoredDocument(key=key, doc=copy.deepcopy(doc), version=version)
                for key, (doc, version) in sorted(self._data[collection].items())
            ]

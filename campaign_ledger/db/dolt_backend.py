"""DoltDB-backed document storage.

All collections share one table keyed by (collection, doc_key). The `version`
column makes every update a compare-and-swap:

    UPDATE ledger_documents SET doc = %s, version = version + 1
    WHERE collection = %s AND doc_key = %s AND version = %s

A rowcount of 0 means another writer got there first.
"""

import json
import logging
from typing import Any, Optional

from .backend import DocumentBackend, StoredDocument, check_collection
from .client import execute_query, execute_write

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ledger_documents (
    collection VARCHAR(32) NOT NULL,
    doc_key VARCHAR(128) NOT NULL,
    doc JSON NOT NULL,
    version INT NOT NULL DEFAULT 1,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
    PRIMARY KEY (collection, doc_key)
)
"""


def _serialize_json(value: dict[str, Any]) -> str:
    """Serialize a document for storage (documents are already JSON-mode dumps)."""
    return json.dumps(value, sort_keys=True)


def _deserialize_json(value: str | bytes | dict | None) -> Any:
    """Deserialize a JSON column from storage."""
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return json.loads(value)
    return value  # Already parsed by driver


class DoltBackend(DocumentBackend):
    """Document backend over the `ledger_documents` table."""

    TABLE = "ledger_documents"

    def ensure_schema(self) -> None:
        """Create the documents table if it does not exist."""
        execute_query(SCHEMA_SQL, fetch="none")
        logger.info(f"Ensured table {self.TABLE}")

    def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        check_collection(collection)
        row = execute_query(
            f"SELECT doc_key, doc, version FROM {self.TABLE} WHERE collection = %s AND doc_key = %s",
            (collection, key),
            fetch="one",
        )
        if not row:
            return None
        return self._to_stored(row)

    def insert(self, collection: str, key: str, doc: dict[str, Any]) -> bool:
        check_collection(collection)
        inserted = execute_write(
            f"INSERT IGNORE INTO {self.TABLE} (collection, doc_key, doc, version) VALUES (%s, %s, %s, 1)",
            (collection, key, _serialize_json(doc)),
        )
        return inserted == 1

    def compare_and_swap(self, collection: str, key: str, doc: dict[str, Any], expected_version: int) -> bool:
        check_collection(collection)
        updated = execute_write(
            f"UPDATE {self.TABLE} SET doc = %s, version = version + 1 "
            "WHERE collection = %s AND doc_key = %s AND version = %s",
            (_serialize_json(doc), collection, key, expected_version),
        )
        if updated != 1:
            logger.debug(f"CAS miss on {collection}/{key} at version {expected_version}")
        return updated == 1

    def delete(self, collection: str, key: str) -> bool:
        check_collection(collection)
        deleted = execute_write(
            f"DELETE FROM {self.TABLE} WHERE collection = %s AND doc_key = %s",
            (collection, key),
        )
        return deleted == 1

    def list(self, collection: str) -> list[StoredDocument]:
        check_collection(collection)
        rows = execute_query(
            f"SELECT doc_key, doc, version FROM {self.TABLE} WHERE collection = %s ORDER BY doc_key",
            (collection,),
        )
        return [self._to_stored(row) for row in rows or []]

    def _to_stored(self, row: dict) -> StoredDocument:
        return StoredDocument(key=row["doc_key"], doc=_deserialize_json(row["doc"]), version=int(row["version"]))

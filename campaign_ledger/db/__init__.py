"""Document storage: backends, DoltDB client, and repositories.

Provides:
- DocumentBackend interface with an in-memory and a DoltDB implementation
- Thread-local DoltDB connections (MySQL-compatible protocol)
- Repository classes with compare-and-swap updates
"""

from .backend import COLLECTIONS, DocumentBackend, InMemoryBackend, StoredDocument
from .repository import (
    CampaignRepository,
    DocumentRepository,
    DonorRepository,
    LedgerRepositories,
    OrganizationRepository,
    TransactionIndexRepository,
)


def create_backend(name: str) -> DocumentBackend:
    """Build a backend by config name ("memory" or "dolt")."""
    if name == "memory":
        return InMemoryBackend()
    if name == "dolt":
        from .dolt_backend import DoltBackend

        return DoltBackend()
    raise ValueError(f"Unknown backend: {name!r}")


__all__ = [
    "COLLECTIONS",
    "create_backend",
    # Backends
    "DocumentBackend",
    "InMemoryBackend",
    "StoredDocument",
    # Repositories
    "CampaignRepository",
    "DocumentRepository",
    "DonorRepository",
    "LedgerRepositories",
    "OrganizationRepository",
    "TransactionIndexRepository",
]

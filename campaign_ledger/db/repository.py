"""Data access repositories.

Typed CRUD over a DocumentBackend, one repository per collection. Documents are
stored as JSON-mode pydantic dumps; the backend's version is carried on the
model so that `update` can compare-and-swap against what was read.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from pydantic import BaseModel

from ..constants import CAS_MAX_ATTEMPTS
from ..exceptions import ConcurrentModification, NotFound
from ..models.ledger import Campaign, Donor, Organization, TransactionRecord
from .backend import DocumentBackend, StoredDocument

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class DocumentRepository(Generic[M]):
    """Versioned document operations for one collection."""

    collection: str = ""
    model: type[BaseModel] = BaseModel
    key_field: str = ""
    label: str = "Document"

    def __init__(self, backend: DocumentBackend):
        self.backend = backend

    def get(self, key: str) -> Optional[M]:
        """Load a document, or None if it does not exist."""
        stored = self.backend.get(self.collection, key)
        return self._load(stored) if stored else None

    def require(self, key: str) -> M:
        """Load a document or raise NotFound."""
        record = self.get(key)
        if record is None:
            raise NotFound(f"{self.label} not found: {key}", {"id": key})
        return record

    def exists(self, key: str) -> bool:
        return self.backend.get(self.collection, key) is not None

    def insert(self, record: M) -> bool:
        """Create a new document. Returns False if the key is taken."""
        created = self.backend.insert(self.collection, self._key(record), self._dump(record))
        if created:
            record.version = 1
        return created

    def update(self, record: M) -> M:
        """Write back a document read earlier.

        Raises:
            ConcurrentModification: the stored version moved since `record` was read
        """
        key = self._key(record)
        if not self.backend.compare_and_swap(self.collection, key, self._dump(record), record.version):
            raise ConcurrentModification(
                f"{self.label} {key} changed since version {record.version}",
                {"id": key, "version": record.version},
            )
        record.version += 1
        return record

    def mutate(self, key: str, apply: Callable[[M], bool], max_attempts: int = CAS_MAX_ATTEMPTS) -> Optional[M]:
        """Read-modify-write with re-read on version conflicts.

        `apply` mutates the freshly read record in place and returns False when
        there is nothing to write (e.g. the change is already present).

        Returns:
            The stored record after the call

        Raises:
            NotFound: the document does not exist
            ConcurrentModification: still conflicting after max_attempts
        """
        last_error: Optional[ConcurrentModification] = None
        for attempt in range(1, max_attempts + 1):
            record = self.require(key)
            if not apply(record):
                return record
            try:
                return self.update(record)
            except ConcurrentModification as e:
                last_error = e
                logger.debug(f"Retrying {self.label} {key} after version conflict (attempt {attempt})")
        raise last_error

    def list(self) -> list[M]:
        return [self._load(stored) for stored in self.backend.list(self.collection)]

    def delete(self, key: str) -> bool:
        return self.backend.delete(self.collection, key)

    def _key(self, record: M) -> str:
        return getattr(record, self.key_field)

    def _dump(self, record: M) -> dict:
        return record.model_dump(mode="json", exclude={"version"})

    def _load(self, stored: StoredDocument) -> M:
        return self.model.model_validate({**stored.doc, "version": stored.version})


class OrganizationRepository(DocumentRepository[Organization]):
    """Organization documents keyed by org_id."""

    collection = "organizations"
    model = Organization
    key_field = "org_id"
    label = "Organization"


class CampaignRepository(DocumentRepository[Campaign]):
    """Campaign documents keyed by campaign_id."""

    collection = "campaigns"
    model = Campaign
    key_field = "campaign_id"
    label = "Campaign"

    def list_for_organization(self, org_id: str) -> list[Campaign]:
        return [campaign for campaign in self.list() if campaign.org_id == org_id]


class DonorRepository(DocumentRepository[Donor]):
    """Donor documents keyed by donor_id."""

    collection = "donors"
    model = Donor
    key_field = "donor_id"
    label = "Donor"


class TransactionIndexRepository(DocumentRepository[TransactionRecord]):
    """Global transaction-id index.

    A transaction id is claimed before its event is appended anywhere, so an id
    can only ever name one event across donors and campaigns.
    """

    collection = "transactions"
    model = TransactionRecord
    key_field = "transaction_id"
    label = "Transaction"

    def claim(self, record: TransactionRecord) -> Optional[TransactionRecord]:
        """Claim a transaction id.

        Returns:
            None if the claim succeeded, otherwise the existing record
        """
        if self.insert(record):
            return None
        existing = self.get(record.transaction_id)
        if existing is None:
            # Released between our insert and read; try once more
            return None if self.insert(record) else self.get(record.transaction_id)
        return existing

    def release(self, transaction_id: str) -> None:
        """Drop a claim whose primary append did not happen."""
        if self.delete(transaction_id):
            logger.debug(f"Released transaction id {transaction_id}")


@dataclass
class LedgerRepositories:
    """All repositories over one backend."""

    organizations: OrganizationRepository
    campaigns: CampaignRepository
    donors: DonorRepository
    transactions: TransactionIndexRepository

    @classmethod
    def from_backend(cls, backend: DocumentBackend) -> "LedgerRepositories":
        return cls(
            organizations=OrganizationRepository(backend),
            campaigns=CampaignRepository(backend),
            donors=DonorRepository(backend),
            transactions=TransactionIndexRepository(backend),
        )

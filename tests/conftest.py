"""Shared fixtures for ledger tests.

Everything runs against the in-memory backend with fake collaborators; no LLM
or DoltDB is needed.
"""

import threading
import time
from decimal import Decimal

import pytest

from campaign_ledger.config import LedgerConfig
from campaign_ledger.db.backend import InMemoryBackend
from campaign_ledger.db.repository import LedgerRepositories
from campaign_ledger.llm.schemas import FraudAssessment, PlausibilityAssessment
from campaign_ledger.services.campaign_registry import CampaignRegistry
from campaign_ledger.services.donation_recorder import DonationRecorder
from campaign_ledger.services.ledger_service import LedgerService
from campaign_ledger.services.reconciliation import ReconciliationService
from campaign_ledger.services.withdrawal_processor import WithdrawalProcessor
from campaign_ledger.utils.locks import campaign_locks, donor_locks, organization_locks
from campaign_ledger.utils.logger import LedgerLogger

# ─── Fakes ────────────────────────────────────────────────────────────────────


class FakeFraudScorer:
    """Returns a fixed risk; can be made to fail or hang."""

    def __init__(self, risk: float = 0.1):
        self.risk = risk
        self.error: Exception | None = None
        self.delay = 0.0
        self.calls: list[list[dict]] = []

    def score(self, transactions):
        self.calls.append(transactions)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return FraudAssessment(riskScore=self.risk, isSuspicious=self.risk > 0.7)


class FakePlausibilityVerifier:
    """Returns a fixed score, or a per-reason score when configured."""

    def __init__(self, score: float = 0.9):
        self.score = score
        self.by_reason: dict[str, float] = {}
        self.error: Exception | None = None
        self.delay = 0.0
        self.calls: list[tuple] = []

    def verify(self, category, amount, reason):
        self.calls.append((category, amount, reason))
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return PlausibilityAssessment(score=self.by_reason.get(reason, self.score))


class FlakyBackend(InMemoryBackend):
    """In-memory backend whose writes to chosen collections fail on demand."""

    def __init__(self):
        super().__init__()
        self.failing: dict[str, int] = {}  # collection -> remaining failures (-1 = forever)
        self._fail_lock = threading.Lock()

    def fail(self, collection: str, times: int = -1) -> None:
        self.failing[collection] = times

    def heal(self) -> None:
        self.failing.clear()

    def _maybe_fail(self, collection: str) -> None:
        with self._fail_lock:
            remaining = self.failing.get(collection, 0)
            if remaining == 0:
                return
            if remaining > 0:
                self.failing[collection] = remaining - 1
        raise ConnectionError(f"{collection} store unavailable")

    def compare_and_swap(self, collection, key, doc, expected_version):
        self._maybe_fail(collection)
        return super().compare_and_swap(collection, key, doc, expected_version)


# ─── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _reset_locks():
    yield
    campaign_locks.reset()
    donor_locks.reset()
    organization_locks.reset()


@pytest.fixture
def config():
    return LedgerConfig(propagation_backoff_seconds=0.0, collaborator_timeout_seconds=1.0)


@pytest.fixture
def backend():
    return FlakyBackend()


@pytest.fixture
def repos(backend):
    return LedgerRepositories.from_backend(backend)


@pytest.fixture
def fraud_scorer():
    return FakeFraudScorer()


@pytest.fixture
def verifier():
    return FakePlausibilityVerifier()


@pytest.fixture
def registry(repos, config):
    return CampaignRegistry(repos, config)


@pytest.fixture
def reconciler(repos, config):
    return ReconciliationService(repos, config, sleep=lambda seconds: None)


@pytest.fixture
def recorder(repos, registry, fraud_scorer, reconciler, config):
    return DonationRecorder(repos, registry, fraud_scorer, reconciler, config)


@pytest.fixture
def processor(repos, registry, verifier, reconciler, config):
    return WithdrawalProcessor(repos, registry, verifier, reconciler, config)


@pytest.fixture
def organization(registry):
    return registry.register_organization("org-auth-1", "Helping Hands", verified=True)


@pytest.fixture
def donor(registry):
    return registry.register_donor("donor-auth-1", "Amina")


@pytest.fixture
def campaign(registry, organization):
    return registry.create_campaign(
        organization.org_id,
        "Flood Relief",
        Decimal("2000"),
        [{"name": "Food", "budget": Decimal("1000")}, {"name": "Medical", "budget": Decimal("500")}],
    )


@pytest.fixture
def ledger_logger():
    return LedgerLogger(name="campaign_ledger_test", log_level="DEBUG")


@pytest.fixture
def service(repos, fraud_scorer, verifier, config, ledger_logger):
    svc = LedgerService(repos, fraud_scorer, verifier, config=config, ledger_logger=ledger_logger)
    yield svc
    svc.close()

"""
Donation Recorder - money in.

Flow:
1. Validate amount (0 < amount <= max_donation_amount), donor, campaign, category
2. Fraud-score the donor's recent window plus the candidate (outside any lock)
   - risk > threshold: FlaggedForReview, donor untouched
   - scorer unavailable: accept with verified=False and the fallback score
3. Under the donor lock: claim the transaction id, append to the donor's list,
   recompute donor aggregates (compare-and-swap)
4. Propagate to the campaign and organization mirrors (best-effort)

Re-submitting a committed transaction id returns the original donation.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..config import LedgerConfig
from ..constants import DONATION_ID_PREFIX, TRUST_SCALE_MAX
from ..db.repository import LedgerRepositories
from ..exceptions import FlaggedForReview, ValidationError
from ..llm.collaborators import CollaboratorUnavailable, FraudScorer, call_with_timeout
from ..models.ledger import CampaignStatus, Donation, Donor, TransactionKind, TransactionRecord, utcnow
from ..scorers.compliance import refresh_donor
from ..utils.ids import has_foreign_prefix, new_id
from ..utils.locks import donor_locks
from ..utils.money import parse_amount
from .campaign_registry import CampaignRegistry
from .reconciliation import PropagationEvent, ReconciliationService

logger = logging.getLogger(__name__)


def _window_entry(transaction_id, amount, timestamp, donor_id, campaign_id, category) -> dict:
    """One transaction as shown to the fraud scorer."""
    return {
        "id": transaction_id,
        "amount": float(amount),
        "date": timestamp.isoformat(),
        "donorId": donor_id,
        "campaignId": campaign_id,
        "category": category,
    }


@dataclass
class DonationResult:
    """Outcome of a donation submission."""

    donation: Donation
    duplicate: bool = False
    propagated: bool = False
    risk_score: Optional[float] = None  # None when the scorer was unavailable

    @property
    def transaction_id(self) -> str:
        return self.donation.transaction_id

    @property
    def verification_score(self) -> float:
        """Trust on the 0-1 scale (1 - risk)."""
        return round(self.donation.fraud_score / TRUST_SCALE_MAX, 4)


class DonationRecorder:
    """Appends donation events to donor ledgers."""

    def __init__(
        self,
        repos: LedgerRepositories,
        registry: CampaignRegistry,
        fraud_scorer: FraudScorer,
        reconciler: ReconciliationService,
        config: Optional[LedgerConfig] = None,
    ):
        self.repos = repos
        self.registry = registry
        self.fraud_scorer = fraud_scorer
        self.reconciler = reconciler
        self.config = config or LedgerConfig()

    def record(
        self,
        donor_id: str,
        campaign_id: str,
        category: str,
        amount: Any,
        transaction_id: Optional[str] = None,
        rail_transaction_id: Optional[str] = None,
    ) -> DonationResult:
        """
        Record a donation.

        Raises:
            ValidationError: bad amount, inactive campaign, transaction id owned by another event
            NotFound: unknown donor, campaign or category
            FlaggedForReview: fraud risk above the threshold
        """
        value = parse_amount(amount)
        if value <= 0:
            raise ValidationError("Donation amount must be greater than 0", {"amount": str(value)})
        if value > self.config.max_donation_amount:
            raise ValidationError(
                f"Donation amount exceeds the single-transaction limit of {self.config.max_donation_amount}",
                {"amount": str(value), "limit": str(self.config.max_donation_amount)},
            )
        if transaction_id is not None and not str(transaction_id).strip():
            raise ValidationError("transactionId must not be empty")

        donor = self.repos.donors.require(donor_id)

        if transaction_id:
            existing = donor.find_donation(transaction_id)
            if existing:
                logger.info(f"Duplicate donation {transaction_id} for donor {donor_id}; returning original")
                return DonationResult(donation=existing, duplicate=True)
            self._check_foreign_claim(transaction_id, donor_id)
            if has_foreign_prefix(transaction_id, DONATION_ID_PREFIX):
                raise ValidationError(
                    f"transactionId {transaction_id} is not a donation id", {"transactionId": transaction_id}
                )

        campaign = self.registry.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.ACTIVE:
            raise ValidationError(
                f"Campaign {campaign_id} is {campaign.status.value} and not accepting donations",
                {"campaignId": campaign_id, "status": campaign.status.value},
            )
        self.registry.find_category(campaign, category)

        transaction_id = transaction_id or new_id(DONATION_ID_PREFIX)
        timestamp = utcnow()
        risk, verified, fraud_score = self._score(donor, campaign_id, category, value, transaction_id, timestamp)

        if risk is not None and risk > self.config.fraud_risk_threshold:
            raise FlaggedForReview(
                "Donation flagged for manual review",
                {"riskScore": risk, "threshold": self.config.fraud_risk_threshold},
            )

        donation = Donation(
            transaction_id=transaction_id,
            donor_id=donor_id,
            campaign_id=campaign_id,
            category=category,
            amount=value,
            timestamp=timestamp,
            fraud_score=fraud_score,
            verified=verified,
            rail_transaction_id=rail_transaction_id,
        )

        committed, duplicate = self._commit(donation)
        if duplicate:
            return DonationResult(donation=committed, duplicate=True)

        propagated = self.reconciler.propagate(PropagationEvent.for_donation(committed, campaign.org_id))
        logger.info(
            f"Donation {committed.transaction_id}: {committed.amount} to {campaign_id}/{category} "
            f"(score {committed.fraud_score:.1f}, verified={committed.verified}, propagated={propagated})"
        )
        return DonationResult(donation=committed, propagated=propagated, risk_score=risk)

    def _check_foreign_claim(self, transaction_id: str, donor_id: str) -> None:
        record = self.repos.transactions.get(transaction_id)
        if record and (record.kind != TransactionKind.DONATION or record.owner_id != donor_id):
            raise ValidationError(
                f"Transaction id {transaction_id} is already used by another {record.kind.value}",
                {"transactionId": transaction_id},
            )

    def _score(self, donor: Donor, campaign_id, category, amount, transaction_id, timestamp):
        """Returns (risk or None, verified, fraud_score on 0-100)."""
        size = self.config.fraud_window_size
        recent = donor.donations[-size:] if size else []
        window = [
            _window_entry(d.transaction_id, d.amount, d.timestamp, d.donor_id, d.campaign_id, d.category)
            for d in recent
        ]
        window.append(_window_entry(transaction_id, amount, timestamp, donor.donor_id, campaign_id, category))

        try:
            assessment = call_with_timeout(
                "fraud scorer", self.fraud_scorer.score, self.config.collaborator_timeout_seconds, window
            )
        except CollaboratorUnavailable as e:
            logger.warning(f"Accepting {transaction_id} unverified: {e}")
            return None, False, self.config.fraud_fallback_score

        risk = assessment.risk_score
        return risk, True, round((1.0 - risk) * TRUST_SCALE_MAX, 4)

    def _commit(self, donation: Donation) -> tuple[Donation, bool]:
        """Append under the donor lock. Returns (stored donation, duplicate)."""
        donor_id = donation.donor_id
        transaction_id = donation.transaction_id

        with donor_locks.hold(donor_id):
            existing = self.repos.transactions.claim(
                TransactionRecord(
                    transaction_id=transaction_id,
                    kind=TransactionKind.DONATION,
                    owner_id=donor_id,
                    campaign_id=donation.campaign_id,
                )
            )
            if existing and (existing.kind != TransactionKind.DONATION or existing.owner_id != donor_id):
                raise ValidationError(
                    f"Transaction id {transaction_id} is already used by another {existing.kind.value}",
                    {"transactionId": transaction_id},
                )
            claimed = existing is None

            appended = False

            def apply(donor: Donor) -> bool:
                nonlocal appended
                if donor.find_donation(transaction_id):
                    appended = False
                    return False
                donor.donations.append(donation)
                refresh_donor(donor, self.config.neutral_trust_score)
                donor.last_synced_at = utcnow()
                appended = True
                return True

            try:
                donor = self.repos.donors.mutate(donor_id, apply, self.config.cas_max_attempts)
            except Exception:
                if claimed:
                    self.repos.transactions.release(transaction_id)
                raise

        if not appended:
            logger.info(f"Duplicate donation {transaction_id} for donor {donor_id}; returning original")
            return donor.find_donation(transaction_id), True
        return donation, False

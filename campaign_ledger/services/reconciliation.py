"""
Reconciliation / sync boundary between the two stores of each money flow.

Primary facts:
- donations live on the donor document
- withdrawals live on the campaign document

Secondary mirrors, updated here keyed by transaction id:
- campaign.donation_refs / raised totals (from donations)
- organization totals and applied_transaction_ids (from both)

`propagate` is best-effort: bounded retry with exponential backoff, then the
event waits in the pending queue. It never raises into the request that
committed the primary append. `sweep` replays the primary event lists and
repairs whatever the mirrors got wrong.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from ..config import LedgerConfig
from ..db.repository import LedgerRepositories
from ..exceptions import PropagationFailure
from ..models.ledger import (
    Campaign,
    Donation,
    DonationRef,
    Donor,
    Organization,
    TransactionKind,
    TransactionRecord,
    Withdrawal,
    utcnow,
)
from ..scorers.compliance import (
    find_stale_fields,
    organization_trust_score,
    refresh_campaign,
    refresh_donor,
    refresh_organization,
)
from ..utils.locks import campaign_locks, donor_locks, organization_locks
from ..utils.worker_pool import WorkerPool

logger = logging.getLogger(__name__)

CLAIM_GRACE_SECONDS = 300  # Unused claims younger than this may still be in flight


@dataclass
class PropagationEvent:
    """A committed ledger event that still has to reach its mirrors."""

    kind: TransactionKind
    transaction_id: str
    campaign_id: str
    org_id: str
    amount: Decimal
    donation: Optional[Donation] = None
    attempts: int = 0
    last_error: Optional[str] = None
    queued_at: Optional[datetime] = None

    @classmethod
    def for_donation(cls, donation: Donation, org_id: str) -> "PropagationEvent":
        return cls(
            kind=TransactionKind.DONATION,
            transaction_id=donation.transaction_id,
            campaign_id=donation.campaign_id,
            org_id=org_id,
            amount=donation.amount,
            donation=donation,
        )

    @classmethod
    def for_withdrawal(cls, withdrawal: Withdrawal) -> "PropagationEvent":
        return cls(
            kind=TransactionKind.WITHDRAWAL,
            transaction_id=withdrawal.transaction_id,
            campaign_id=withdrawal.campaign_id,
            org_id=withdrawal.org_id,
            amount=withdrawal.amount,
        )


@dataclass
class ReconciliationReport:
    """Findings of a replay sweep."""

    donors_checked: int = 0
    campaigns_checked: int = 0
    organizations_checked: int = 0
    missing_refs: list[str] = field(default_factory=list)  # donation txn ids absent from campaigns
    orphan_refs: list[str] = field(default_factory=list)  # campaign refs with no donor event
    stale_campaigns: dict[str, list[str]] = field(default_factory=dict)
    stale_donors: list[str] = field(default_factory=list)
    stale_organizations: list[str] = field(default_factory=list)
    missing_index_entries: list[str] = field(default_factory=list)
    released_claims: list[str] = field(default_factory=list)
    pending_cleared: int = 0
    repaired: bool = False

    @property
    def divergence_count(self) -> int:
        return (
            len(self.missing_refs)
            + len(self.orphan_refs)
            + len(self.stale_campaigns)
            + len(self.stale_donors)
            + len(self.stale_organizations)
            + len(self.missing_index_entries)
            + len(self.released_claims)
        )

    @property
    def has_divergence(self) -> bool:
        return self.divergence_count > 0

    def to_dict(self) -> dict:
        return {
            "donorsChecked": self.donors_checked,
            "campaignsChecked": self.campaigns_checked,
            "organizationsChecked": self.organizations_checked,
            "missingRefs": self.missing_refs,
            "orphanRefs": self.orphan_refs,
            "staleCampaigns": self.stale_campaigns,
            "staleDonors": self.stale_donors,
            "staleOrganizations": self.stale_organizations,
            "missingIndexEntries": self.missing_index_entries,
            "releasedClaims": self.released_claims,
            "pendingCleared": self.pending_cleared,
            "divergences": self.divergence_count,
            "repaired": self.repaired,
        }


class ReconciliationService:
    """Propagates committed events to mirror stores and repairs divergence."""

    def __init__(
        self,
        repos: LedgerRepositories,
        config: Optional[LedgerConfig] = None,
        pool: Optional[WorkerPool] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repos = repos
        self.config = config or LedgerConfig()
        self.pool = pool
        if self.config.async_propagation and self.pool is None:
            self.pool = WorkerPool(max_workers=self.config.propagation_workers, logger=logger)
        self._sleep = sleep
        self._pending: dict[str, PropagationEvent] = {}
        self._pending_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Propagation
    # ------------------------------------------------------------------

    def propagate(self, event: PropagationEvent) -> bool:
        """
        Mirror a committed event. Never raises.

        Returns:
            True if the mirrors are up to date when this returns; False if the
            event was handed to the worker pool or queued after failing.
        """
        if self.config.async_propagation and self.pool is not None:
            self.pool.submit(self._propagate_with_retry, event)
            return False
        return self._propagate_with_retry(event)

    def _propagate_with_retry(self, event: PropagationEvent) -> bool:
        backoff = self.config.propagation_backoff_seconds
        max_retries = self.config.propagation_max_retries

        for attempt in range(max_retries + 1):
            try:
                self.apply(event)
                self._discard_pending(event.transaction_id)
                return True
            except Exception as e:
                event.attempts += 1
                event.last_error = f"{type(e).__name__}: {e}"
                if attempt < max_retries:
                    logger.warning(
                        f"Propagation of {event.transaction_id} failed (attempt {attempt + 1}/{max_retries + 1}), "
                        f"retrying in {backoff:.2f}s: {event.last_error}"
                    )
                    self._sleep(backoff)
                    backoff *= 2

        failure = PropagationFailure(
            f"Propagation of {event.kind.value} {event.transaction_id} failed after {event.attempts} attempts",
            {"transactionId": event.transaction_id, "lastError": event.last_error},
        )
        logger.error(f"{failure.message}; queued for retry ({event.last_error})")
        self._enqueue(event)
        return False

    def apply(self, event: PropagationEvent) -> None:
        """Apply one event to its mirrors (idempotent on transaction id)."""
        if event.kind == TransactionKind.DONATION:
            self._apply_donation_to_campaign(event)
        self._apply_to_organization(event)

    def _apply_donation_to_campaign(self, event: PropagationEvent) -> None:
        ref = DonationRef.from_donation(event.donation)

        def apply(campaign: Campaign) -> bool:
            if campaign.has_donation_ref(ref.transaction_id):
                return False
            campaign.donation_refs.append(ref)
            refresh_campaign(campaign, self.config.neutral_trust_score)
            return True

        with campaign_locks.hold(event.campaign_id):
            self.repos.campaigns.mutate(event.campaign_id, apply, self.config.cas_max_attempts)

    def _apply_to_organization(self, event: PropagationEvent) -> None:
        def apply(organization: Organization) -> bool:
            if event.transaction_id in organization.applied_transaction_ids:
                return False
            organization.applied_transaction_ids.append(event.transaction_id)
            if event.kind == TransactionKind.DONATION:
                organization.total_raised += event.amount
            else:
                organization.total_withdrawn += event.amount
            campaigns = [c for c in (self.repos.campaigns.get(cid) for cid in organization.campaign_ids) if c]
            organization.overall_trust_score = organization_trust_score(campaigns, self.config.neutral_trust_score)
            organization.last_synced_at = utcnow()
            return True

        with organization_locks.hold(event.org_id):
            self.repos.organizations.mutate(event.org_id, apply, self.config.cas_max_attempts)

    # ------------------------------------------------------------------
    # Pending queue
    # ------------------------------------------------------------------

    def _enqueue(self, event: PropagationEvent) -> None:
        event.queued_at = event.queued_at or utcnow()
        with self._pending_lock:
            self._pending[event.transaction_id] = event

    def _discard_pending(self, transaction_id: str) -> bool:
        with self._pending_lock:
            return self._pending.pop(transaction_id, None) is not None

    def pending_events(self) -> list[PropagationEvent]:
        with self._pending_lock:
            return list(self._pending.values())

    def retry_pending(self) -> dict[str, int]:
        """Re-attempt every queued event once."""
        events = self.pending_events()
        succeeded = 0
        for event in events:
            try:
                self.apply(event)
            except Exception as e:
                event.attempts += 1
                event.last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"Pending propagation {event.transaction_id} still failing: {event.last_error}")
                continue
            self._discard_pending(event.transaction_id)
            succeeded += 1

        result = {"retried": len(events), "succeeded": succeeded, "failed": len(events) - succeeded}
        if events:
            logger.info(f"Retried pending propagation: {result}")
        return result

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until async propagation has drained (True if idle)."""
        if self.pool is None:
            return True
        return self.pool.wait_idle(timeout)

    def shutdown(self) -> None:
        if self.pool is not None:
            self.pool.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Replay sweep
    # ------------------------------------------------------------------

    def sweep(self, repair: bool = True, claim_grace_seconds: int = CLAIM_GRACE_SECONDS) -> ReconciliationReport:
        """
        Replay donor and campaign event lists, detect divergence, and repair it.

        Args:
            repair: Write fixes back (False only reports)
            claim_grace_seconds: Unused transaction claims younger than this are left alone

        Returns:
            ReconciliationReport of everything found
        """
        report = ReconciliationReport(repaired=repair)
        neutral = self.config.neutral_trust_score

        donors = self.repos.donors.list()
        campaigns = {c.campaign_id: c for c in self.repos.campaigns.list()}
        report.donors_checked = len(donors)
        report.campaigns_checked = len(campaigns)

        # Donor-side replay: the donation lists are the truth for campaign refs
        expected_refs: dict[str, dict[str, DonationRef]] = {cid: {} for cid in campaigns}
        for donor in donors:
            for donation in donor.donations:
                expected_refs.setdefault(donation.campaign_id, {})[donation.transaction_id] = (
                    DonationRef.from_donation(donation)
                )
            if self._donor_is_stale(donor):
                report.stale_donors.append(donor.donor_id)
                if repair:
                    self._repair_donor(donor.donor_id)

        for campaign_id, expected in expected_refs.items():
            if campaign_id not in campaigns:
                logger.error(f"Donations reference unknown campaign {campaign_id}: {sorted(expected)}")
                continue
            campaign = campaigns[campaign_id]
            actual = {ref.transaction_id: ref for ref in campaign.donation_refs}
            missing = sorted(set(expected) - set(actual))
            # Donors were read before campaigns; a ref newer than that snapshot is checked live
            orphans = [txn for txn in sorted(set(actual) - set(expected)) if not self._donation_committed(actual[txn])]
            stale = find_stale_fields(campaign, neutral)
            report.missing_refs.extend(missing)
            report.orphan_refs.extend(orphans)
            if stale and not (missing or orphans):
                report.stale_campaigns[campaign_id] = stale
            if repair and (missing or orphans or stale):
                campaigns[campaign_id] = self._repair_campaign(
                    campaign_id, [expected[txn] for txn in missing], set(orphans)
                )

        self._sweep_organizations(report, repair)
        self._sweep_transaction_index(donors, list(campaigns.values()), report, repair, claim_grace_seconds)

        if repair:
            report.pending_cleared = self._clear_applied_pending()

        level = logging.WARNING if report.has_divergence else logging.INFO
        logger.log(
            level,
            f"Reconciliation sweep: {report.divergence_count} divergences across "
            f"{report.campaigns_checked} campaigns / {report.donors_checked} donors"
            + (" (repaired)" if repair and report.has_divergence else ""),
        )
        return report

    def _donor_is_stale(self, donor: Donor) -> bool:
        expected = refresh_donor(donor.model_copy(deep=True), self.config.neutral_trust_score)
        return (
            donor.total_donated != expected.total_donated
            or donor.donation_count != expected.donation_count
            or abs(donor.average_fraud_score - expected.average_fraud_score) > 1e-9
        )

    def _repair_donor(self, donor_id: str) -> None:
        def apply(donor: Donor) -> bool:
            refresh_donor(donor, self.config.neutral_trust_score)
            donor.last_synced_at = utcnow()
            return True

        with donor_locks.hold(donor_id):
            self.repos.donors.mutate(donor_id, apply, self.config.cas_max_attempts)
        logger.info(f"Repaired donor {donor_id} aggregates")

    def _donation_committed(self, ref: DonationRef) -> bool:
        """Whether the donor named by a campaign ref holds that donation right now."""
        donor = self.repos.donors.get(ref.donor_id)
        return donor is not None and donor.find_donation(ref.transaction_id) is not None

    def _repair_campaign(self, campaign_id: str, missing: list[DonationRef], orphans: set[str]) -> Campaign:
        """
        Add missing refs and drop confirmed orphans, then re-derive projections.

        Orphans are re-checked against the donor inside the write, so a donation
        that committed after the sweep's donor read is never removed.
        """

        def apply(campaign: Campaign) -> bool:
            kept = [
                ref
                for ref in campaign.donation_refs
                if ref.transaction_id not in orphans or self._donation_committed(ref)
            ]
            present = {ref.transaction_id for ref in kept}
            added = sorted((ref for ref in missing if ref.transaction_id not in present), key=lambda ref: ref.timestamp)
            campaign.donation_refs = kept + added
            refresh_campaign(campaign, self.config.neutral_trust_score)
            return True

        with campaign_locks.hold(campaign_id):
            campaign = self.repos.campaigns.mutate(campaign_id, apply, self.config.cas_max_attempts)
        logger.info(f"Repaired campaign {campaign_id} (raised {campaign.raised_amount})")
        return campaign

    def _owned_campaigns(self, org_id: str) -> list[Campaign]:
        return sorted(self.repos.campaigns.list_for_organization(org_id), key=lambda c: c.created_at)

    def _sweep_organizations(self, report: ReconciliationReport, repair: bool) -> None:
        """Compare organization aggregates with their campaigns as stored now."""
        neutral = self.config.neutral_trust_score
        organizations = self.repos.organizations.list()
        report.organizations_checked = len(organizations)
        for organization in organizations:
            owned = self._owned_campaigns(organization.org_id)
            expected = refresh_organization(organization.model_copy(deep=True), owned, neutral)
            if (
                organization.total_raised == expected.total_raised
                and organization.total_withdrawn == expected.total_withdrawn
                and organization.total_campaigns == expected.total_campaigns
                and set(organization.campaign_ids) == set(expected.campaign_ids)
                and set(organization.applied_transaction_ids) == set(expected.applied_transaction_ids)
                and abs(organization.overall_trust_score - expected.overall_trust_score) <= 1e-9
            ):
                continue
            report.stale_organizations.append(organization.org_id)
            if not repair:
                continue

            def apply(org: Organization) -> bool:
                # Re-read on every attempt; propagation may have moved the campaigns on
                refresh_organization(org, self._owned_campaigns(org.org_id), neutral)
                return True

            with organization_locks.hold(organization.org_id):
                self.repos.organizations.mutate(organization.org_id, apply, self.config.cas_max_attempts)
            logger.info(f"Repaired organization {organization.org_id} aggregates")

    def _sweep_transaction_index(
        self,
        donors: list[Donor],
        campaigns: list[Campaign],
        report: ReconciliationReport,
        repair: bool,
        claim_grace_seconds: int,
    ) -> None:
        events: dict[str, TransactionRecord] = {}
        for donor in donors:
            for donation in donor.donations:
                events[donation.transaction_id] = TransactionRecord(
                    transaction_id=donation.transaction_id,
                    kind=TransactionKind.DONATION,
                    owner_id=donor.donor_id,
                    campaign_id=donation.campaign_id,
                    created_at=donation.timestamp,
                )
        for campaign in campaigns:
            for withdrawal in campaign.withdrawals:
                events[withdrawal.transaction_id] = TransactionRecord(
                    transaction_id=withdrawal.transaction_id,
                    kind=TransactionKind.WITHDRAWAL,
                    owner_id=campaign.campaign_id,
                    campaign_id=campaign.campaign_id,
                    created_at=withdrawal.timestamp,
                )

        indexed = {record.transaction_id: record for record in self.repos.transactions.list()}
        cutoff = utcnow() - timedelta(seconds=claim_grace_seconds)

        for transaction_id in sorted(set(events) - set(indexed)):
            report.missing_index_entries.append(transaction_id)
            if repair:
                self.repos.transactions.insert(events[transaction_id])

        for transaction_id in sorted(set(indexed) - set(events)):
            record = indexed[transaction_id]
            if record.created_at > cutoff or self._transaction_committed(record):
                continue
            report.released_claims.append(transaction_id)
            if repair:
                self.repos.transactions.release(transaction_id)

    def _transaction_committed(self, record: TransactionRecord) -> bool:
        if record.kind == TransactionKind.DONATION:
            donor = self.repos.donors.get(record.owner_id)
            return donor is not None and donor.find_donation(record.transaction_id) is not None
        campaign = self.repos.campaigns.get(record.campaign_id)
        return campaign is not None and campaign.find_withdrawal(record.transaction_id) is not None

    def _clear_applied_pending(self) -> int:
        """Drop queued events the sweep has already reflected."""
        applied: set[str] = set()
        for organization in self.repos.organizations.list():
            applied.update(organization.applied_transaction_ids)
        cleared = 0
        for event in self.pending_events():
            if event.transaction_id in applied and self._discard_pending(event.transaction_id):
                cleared += 1
        return cleared

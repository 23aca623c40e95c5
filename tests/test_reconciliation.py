"""
Tests for mirror propagation, the pending queue and the replay sweep.

Storage failures are simulated with the FlakyBackend from conftest, which makes
compare-and-swap writes to chosen collections raise.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from campaign_ledger.models.ledger import DonationRef, TransactionKind, TransactionRecord, Withdrawal, utcnow
from campaign_ledger.services.donation_recorder import DonationRecorder
from campaign_ledger.services.reconciliation import PropagationEvent, ReconciliationService

# ─── Helpers ─────────────────────────────────────────────────────────────────


def _donate(recorder, donor, campaign, amount="50", **kwargs):
    return recorder.record(donor.donor_id, campaign.campaign_id, "Food", amount, **kwargs)


def _spent(repos, campaign):
    return repos.campaigns.get(campaign.campaign_id).find_category("Food").spent


def _withdrawal_event(campaign, transaction_id="WTH-manual", amount="100"):
    return PropagationEvent.for_withdrawal(
        Withdrawal(
            transaction_id=transaction_id,
            campaign_id=campaign.campaign_id,
            org_id=campaign.org_id,
            category="Food",
            amount=Decimal(amount),
            reason="Rice",
            ai_verification_score=0.9,
        )
    )


class TestPropagation:
    """Best-effort mirroring after the primary commit."""

    def test_failure_queues_event_without_raising(self, recorder, backend, reconciler, repos, donor, campaign):
        """A mirror outage leaves the donation committed and the event queued."""
        backend.fail("campaigns")
        result = _donate(recorder, donor, campaign)

        assert result.propagated is False
        assert repos.donors.get(donor.donor_id).donation_count == 1
        assert repos.campaigns.get(campaign.campaign_id).raised_amount == Decimal("0")

        pending = reconciler.pending_events()
        assert [e.transaction_id for e in pending] == [result.transaction_id]
        assert pending[0].attempts == 4
        assert "ConnectionError" in pending[0].last_error
        assert pending[0].queued_at is not None

    def test_transient_failure_recovers_inline(self, recorder, backend, reconciler, repos, donor, campaign):
        """Failures within the retry budget are absorbed."""
        backend.fail("campaigns", times=2)
        result = _donate(recorder, donor, campaign)

        assert result.propagated is True
        assert reconciler.pending_events() == []
        assert repos.campaigns.get(campaign.campaign_id).raised_amount == Decimal("50")

    def test_backoff_doubles(self, repos, backend, config, campaign):
        """Retries back off exponentially from the configured initial delay."""
        sleeps = []
        reconciler = ReconciliationService(
            repos, config.with_overrides(propagation_backoff_seconds=0.5), sleep=sleeps.append
        )
        backend.fail("organizations")

        assert reconciler.propagate(_withdrawal_event(campaign)) is False
        assert sleeps == [0.5, 1.0, 2.0]

    def test_apply_is_idempotent(self, reconciler, repos, organization, campaign):
        """Applying the same event twice counts it once."""
        event = _withdrawal_event(campaign, amount="120")
        reconciler.apply(event)
        reconciler.apply(event)

        stored = repos.organizations.get(organization.org_id)
        assert stored.total_withdrawn == Decimal("120")
        assert stored.applied_transaction_ids.count("WTH-manual") == 1

    def test_async_propagation(self, repos, registry, fraud_scorer, config, donor, campaign):
        """With async propagation the request returns before the mirrors update."""
        reconciler = ReconciliationService(repos, config.with_overrides(async_propagation=True))
        recorder = DonationRecorder(repos, registry, fraud_scorer, reconciler, config)
        try:
            result = _donate(recorder, donor, campaign)
            assert result.propagated is False
            assert reconciler.wait_idle(timeout=5)
            assert repos.campaigns.get(campaign.campaign_id).has_donation_ref(result.transaction_id)
        finally:
            reconciler.shutdown()


class TestPendingQueue:
    """Queued events are retried later."""

    def test_retry_after_recovery(self, recorder, backend, reconciler, repos, donor, campaign, organization):
        """retry_pending drains the queue once storage is healthy."""
        backend.fail("campaigns")
        result = _donate(recorder, donor, campaign)
        backend.heal()

        assert reconciler.retry_pending() == {"retried": 1, "succeeded": 1, "failed": 0}
        assert reconciler.pending_events() == []
        assert repos.campaigns.get(campaign.campaign_id).has_donation_ref(result.transaction_id)
        assert repos.organizations.get(organization.org_id).total_raised == Decimal("50")

    def test_retry_still_failing(self, processor, backend, reconciler, repos, campaign):
        """Events that keep failing stay queued with a growing attempt count."""
        backend.fail("organizations")
        result = processor.process(campaign.campaign_id, campaign.org_id, "Food", "100", "Rice")

        assert result.propagated is False
        assert _spent(repos, campaign) == Decimal("100")
        assert reconciler.retry_pending() == {"retried": 1, "succeeded": 0, "failed": 1}
        assert reconciler.pending_events()[0].attempts == 5


class TestSweep:
    """Replay of event lists against cached projections."""

    def test_clean_ledger_has_no_divergence(self, recorder, processor, reconciler, donor, campaign):
        """Nothing to report after normal traffic."""
        _donate(recorder, donor, campaign)
        processor.process(campaign.campaign_id, campaign.org_id, "Food", "30", "Rice")

        report = reconciler.sweep()
        assert report.has_divergence is False
        assert report.donors_checked == 1
        assert report.campaigns_checked == 1
        assert report.organizations_checked == 1

    def test_repairs_missing_donation_refs(self, recorder, backend, reconciler, repos, donor, campaign, organization):
        """A donation that never reached its campaign is replayed from the donor list."""
        backend.fail("campaigns")
        result = _donate(recorder, donor, campaign, amount="75")
        backend.heal()

        report = reconciler.sweep()

        assert report.missing_refs == [result.transaction_id]
        assert report.stale_organizations == [organization.org_id]
        assert report.pending_cleared == 1
        assert reconciler.pending_events() == []

        stored = repos.campaigns.get(campaign.campaign_id)
        assert stored.raised_amount == Decimal("75")
        assert stored.find_category("Food").raised == Decimal("75")
        assert repos.organizations.get(organization.org_id).total_raised == Decimal("75")

        assert reconciler.sweep().has_divergence is False

    def test_dry_run_reports_only(self, recorder, backend, reconciler, repos, donor, campaign):
        """repair=False leaves the stores untouched."""
        backend.fail("campaigns")
        result = _donate(recorder, donor, campaign)
        backend.heal()

        report = reconciler.sweep(repair=False)

        assert report.missing_refs == [result.transaction_id]
        assert report.repaired is False
        assert repos.campaigns.get(campaign.campaign_id).raised_amount == Decimal("0")
        assert len(reconciler.pending_events()) == 1

    def test_removes_orphan_refs(self, reconciler, repos, donor, campaign):
        """Campaign refs with no donor event are dropped."""

        def add_orphan(stored):
            stored.donation_refs.append(
                DonationRef(
                    transaction_id="DON-ghost",
                    donor_id=donor.donor_id,
                    category="Food",
                    amount=Decimal("10"),
                    fraud_score=90.0,
                    timestamp=utcnow(),
                )
            )
            return True

        repos.campaigns.mutate(campaign.campaign_id, add_orphan)

        report = reconciler.sweep()

        assert report.orphan_refs == ["DON-ghost"]
        assert not repos.campaigns.get(campaign.campaign_id).has_donation_ref("DON-ghost")

    def test_donation_between_donor_and_campaign_reads_is_kept(
        self, recorder, reconciler, repos, monkeypatch, donor, campaign, organization
    ):
        """A ref newer than the donor snapshot is confirmed live, not dropped as an orphan."""
        list_campaigns = repos.campaigns.list
        late = []

        def donate_then_list():
            if not late:
                late.append(_donate(recorder, donor, campaign, amount="50"))
            return list_campaigns()

        monkeypatch.setattr(repos.campaigns, "list", donate_then_list)

        report = reconciler.sweep()

        transaction_id = late[0].transaction_id
        assert report.orphan_refs == []
        stored = repos.campaigns.get(campaign.campaign_id)
        assert stored.has_donation_ref(transaction_id)
        assert stored.raised_amount == Decimal("50")
        assert repos.donors.get(donor.donor_id).total_donated == Decimal("50")
        assert repos.organizations.get(organization.org_id).total_raised == Decimal("50")
        assert repos.transactions.get(transaction_id) is not None

    def test_organization_rebuilt_from_current_campaigns(
        self, recorder, reconciler, repos, monkeypatch, donor, campaign, organization
    ):
        """Organization repair reads campaigns inside the write, not from the sweep's snapshot."""
        list_organizations = repos.organizations.list
        late = []

        def list_then_donate():
            organizations = list_organizations()
            if not late:
                late.append(_donate(recorder, donor, campaign, amount="35"))
            return organizations

        monkeypatch.setattr(repos.organizations, "list", list_then_donate)

        reconciler.sweep()

        stored = repos.organizations.get(organization.org_id)
        assert stored.total_raised == Decimal("35")
        assert late[0].transaction_id in stored.applied_transaction_ids

    def test_old_claim_of_late_donation_is_kept(self, recorder, reconciler, repos, monkeypatch, donor, campaign):
        """An old index entry whose donation committed after the donor read is not released."""
        list_campaigns = repos.campaigns.list
        late = []

        def donate_then_list():
            if not late:
                result = _donate(recorder, donor, campaign)
                record = repos.transactions.get(result.transaction_id)
                repos.transactions.delete(result.transaction_id)
                repos.transactions.insert(record.model_copy(update={"created_at": utcnow() - timedelta(hours=1)}))
                late.append(result)
            return list_campaigns()

        monkeypatch.setattr(repos.campaigns, "list", donate_then_list)

        report = reconciler.sweep()

        assert report.released_claims == []
        assert repos.transactions.get(late[0].transaction_id) is not None

    def test_repairs_stale_donor_and_campaign_totals(self, recorder, reconciler, repos, donor, campaign):
        """Tampered cached totals are recomputed from the events."""
        _donate(recorder, donor, campaign, amount="40")

        def tamper_donor(stored):
            stored.total_donated = Decimal("999")
            return True

        def tamper_campaign(stored):
            stored.raised_amount = Decimal("1")
            return True

        repos.donors.mutate(donor.donor_id, tamper_donor)
        repos.campaigns.mutate(campaign.campaign_id, tamper_campaign)

        report = reconciler.sweep()

        assert report.stale_donors == [donor.donor_id]
        assert "raised_amount" in report.stale_campaigns[campaign.campaign_id]
        assert repos.donors.get(donor.donor_id).total_donated == Decimal("40")
        assert repos.campaigns.get(campaign.campaign_id).raised_amount == Decimal("40")

    def test_transaction_index_repair(self, recorder, reconciler, repos, donor, campaign):
        """Missing index entries are restored; old unused claims are released."""
        result = _donate(recorder, donor, campaign)
        repos.transactions.delete(result.transaction_id)
        for transaction_id, age in (("DON-stale-claim", timedelta(hours=1)), ("DON-fresh-claim", timedelta(0))):
            repos.transactions.insert(
                TransactionRecord(
                    transaction_id=transaction_id,
                    kind=TransactionKind.DONATION,
                    owner_id=donor.donor_id,
                    campaign_id=campaign.campaign_id,
                    created_at=utcnow() - age,
                )
            )

        report = reconciler.sweep()

        assert report.missing_index_entries == [result.transaction_id]
        assert report.released_claims == ["DON-stale-claim"]
        assert repos.transactions.get(result.transaction_id) is not None
        assert repos.transactions.get("DON-stale-claim") is None
        assert repos.transactions.get("DON-fresh-claim") is not None

    @pytest.mark.parametrize("repair", [True, False])
    def test_report_body(self, reconciler, campaign, repair):
        """The report serializes with camelCase keys."""
        body = reconciler.sweep(repair=repair).to_dict()
        assert body["divergences"] == 0
        assert body["repaired"] is repair
        assert body["campaignsChecked"] == 1

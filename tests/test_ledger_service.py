"""Tests for the request/response facade: wire bodies and error bodies."""

import pytest

from campaign_ledger.exceptions import ConcurrentModification
from campaign_ledger.services.ledger_service import LedgerService

# ─── Helpers ─────────────────────────────────────────────────────────────────


def _donation_body(donor, campaign, **overrides):
    body = {"campaignId": campaign.campaign_id, "amount": 50, "category": "Food", "donorId": donor.donor_id}
    body.update(overrides)
    return body


def _withdrawal_body(campaign, **overrides):
    body = {
        "campaignId": campaign.campaign_id,
        "category": "Food",
        "amount": "400",
        "reason": "Rice and lentils for 80 families",
        "orgId": campaign.org_id,
    }
    body.update(overrides)
    return body


class TestSubmitDonation:
    """Donation submission bodies."""

    def test_receipt(self, service, donor, campaign, ledger_logger):
        """A committed donation returns its id and 0-1 verification score."""
        body = service.submit_donation(_donation_body(donor, campaign))

        assert set(body) == {"transactionId", "verificationScore"}
        assert body["transactionId"].startswith("DON-")
        assert body["verificationScore"] == pytest.approx(0.9)
        assert ledger_logger.committed == 1

    def test_flagged_body(self, service, fraud_scorer, donor, campaign, ledger_logger):
        """High-risk donations come back as a FlaggedForReview body."""
        fraud_scorer.risk = 0.95
        body = service.submit_donation(_donation_body(donor, campaign))

        assert body["errorType"] == "FlaggedForReview"
        assert body["details"]["riskScore"] == 0.95
        assert ledger_logger.rejections[0]["error_type"] == "FlaggedForReview"
        assert ledger_logger.rejections[0]["data"]["campaignId"] == campaign.campaign_id

    def test_missing_field(self, service, donor, campaign):
        """Schema errors are reported as ValidationError bodies."""
        body = _donation_body(donor, campaign)
        del body["amount"]
        result = service.submit_donation(body)

        assert result["errorType"] == "ValidationError"
        assert "amount" in result["error"]

    @pytest.mark.parametrize("amount", ["abc", -5, 0])
    def test_bad_amount(self, service, donor, campaign, amount):
        """Unparseable and non-positive amounts are ValidationErrors."""
        assert service.submit_donation(_donation_body(donor, campaign, amount=amount))["errorType"] == "ValidationError"

    def test_non_object_body(self, service):
        """A body that is not an object is rejected."""
        assert service.submit_donation(["not", "a", "dict"])["errorType"] == "ValidationError"

    def test_unknown_campaign(self, service, donor, campaign):
        """Unknown campaigns come back as NotFound."""
        body = service.submit_donation(_donation_body(donor, campaign, campaignId="CMP-missing"))
        assert body["errorType"] == "NotFound"

    def test_duplicate_is_not_logged_twice(self, service, donor, campaign, ledger_logger):
        """Replaying a transaction id returns the same receipt without a second commit."""
        first = service.submit_donation(_donation_body(donor, campaign, transactionId="DON-client-7"))
        second = service.submit_donation(_donation_body(donor, campaign, transactionId="DON-client-7"))

        assert first == second
        assert ledger_logger.committed == 1

    def test_storage_errors_propagate(self, service, backend, donor, campaign):
        """Infrastructure failures are not turned into caller error bodies."""
        backend.fail("donors")
        with pytest.raises(ConnectionError):
            service.submit_donation(_donation_body(donor, campaign))

    def test_internal_ledger_errors_propagate(self, service, donor, campaign, ledger_logger, monkeypatch):
        """Internal ledger errors are logged and re-raised."""

        def conflict(**kwargs):
            raise ConcurrentModification("Donor changed since version 3")

        monkeypatch.setattr(service.donations, "record", conflict)
        with pytest.raises(ConcurrentModification):
            service.submit_donation(_donation_body(donor, campaign))
        assert len(ledger_logger.errors) == 1


class TestSubmitWithdrawal:
    """Withdrawal submission bodies."""

    def test_receipt(self, service, campaign):
        """A committed withdrawal returns its id and AI verification score."""
        body = service.submit_withdrawal(_withdrawal_body(campaign))

        assert set(body) == {"transactionId", "aiVerificationScore"}
        assert body["transactionId"].startswith("WTH-")
        assert body["aiVerificationScore"] == pytest.approx(0.9)

    def test_budget_exceeded_body(self, service, campaign):
        """Over-budget withdrawals return BudgetExceeded with the numbers."""
        body = service.submit_withdrawal(_withdrawal_body(campaign, amount="1200"))

        assert body["errorType"] == "BudgetExceeded"
        assert body["details"]["spent"] == "0"
        assert body["details"]["requested"] == "1200"

    def test_reason_mismatch_body(self, service, verifier, campaign):
        """Implausible reasons return ReasonMismatch."""
        verifier.score = 0.3
        body = service.submit_withdrawal(_withdrawal_body(campaign, reason="Team offsite"))
        assert body["errorType"] == "ReasonMismatch"

    def test_wrong_organization(self, service, campaign):
        """Another organization's withdrawal is a ValidationError."""
        body = service.submit_withdrawal(_withdrawal_body(campaign, orgId="org-someone-else"))
        assert body["errorType"] == "ValidationError"


class TestQueries:
    """Read-side bodies."""

    def test_compliance_query(self, service, campaign):
        """Category compliance reflects committed withdrawals."""
        service.submit_withdrawal(_withdrawal_body(campaign, amount="250"))
        body = service.compliance_query({"campaignId": campaign.campaign_id, "category": "Food"})

        assert body == {
            "isCompliant": True,
            "allocatedAmount": "1000",
            "spentAmount": "250",
            "remainingAmount": "750",
            "utilizationRate": 25.0,
        }

    def test_compliance_query_unknown_category(self, service, campaign):
        """Category lookup is case-sensitive."""
        body = service.compliance_query({"campaignId": campaign.campaign_id, "category": "food"})
        assert body["errorType"] == "NotFound"

    def test_transaction_history(self, service, donor, campaign):
        """History lists donations and withdrawals with camelCase keys."""
        donation = service.submit_donation(_donation_body(donor, campaign))
        withdrawal = service.submit_withdrawal(_withdrawal_body(campaign, amount="20"))

        body = service.transaction_history({"campaignId": campaign.campaign_id})

        assert body["type"] == "all"
        assert body["total"] == 2
        assert body["donations"][0]["transactionId"] == donation["transactionId"]
        assert body["donations"][0]["amount"] == "50"
        assert body["donations"][0]["fraudScore"] == pytest.approx(90.0)
        assert body["withdrawals"][0]["transactionId"] == withdrawal["transactionId"]
        assert body["withdrawals"][0]["aiVerificationScore"] == pytest.approx(0.9)
        assert body["withdrawals"][0]["compliantAtCommit"] is True

    @pytest.mark.parametrize(
        "history_type,donations,withdrawals",
        [("donations", 1, 0), ("withdrawals", 0, 1), ("ALL", 1, 1), (None, 1, 1)],
    )
    def test_history_type_filter(self, service, donor, campaign, history_type, donations, withdrawals):
        """The type filter is case-insensitive and defaults to all."""
        service.submit_donation(_donation_body(donor, campaign))
        service.submit_withdrawal(_withdrawal_body(campaign, amount="20"))

        body = service.transaction_history({"campaignId": campaign.campaign_id, "type": history_type})

        assert len(body["donations"]) == donations
        assert len(body["withdrawals"]) == withdrawals
        assert body["total"] == donations + withdrawals

    def test_history_invalid_type(self, service, campaign):
        """Unknown history types are rejected."""
        body = service.transaction_history({"campaignId": campaign.campaign_id, "type": "refunds"})
        assert body["errorType"] == "ValidationError"

    def test_campaign_summary(self, service, donor, campaign):
        """Summary reports projections and allocation delta."""
        service.submit_donation(_donation_body(donor, campaign, amount="300"))
        body = service.campaign_summary({"campaignId": campaign.campaign_id})

        assert body["raisedAmount"] == "300"
        assert body["allocationDelta"] == "500"
        assert body["trustScore"] == pytest.approx(95.0)
        assert body["averageVerificationScore"] == 1.0

    def test_campaign_summary_uses_configured_neutral_verification(
        self, repos, fraud_scorer, verifier, config, ledger_logger, campaign
    ):
        """A campaign without withdrawals reports the configured neutral verification score."""
        svc = LedgerService(
            repos,
            fraud_scorer,
            verifier,
            config=config.with_overrides(neutral_verification_score=0.5),
            ledger_logger=ledger_logger,
        )
        try:
            body = svc.campaign_summary({"campaignId": campaign.campaign_id})
        finally:
            svc.close()
        assert body["averageVerificationScore"] == 0.5

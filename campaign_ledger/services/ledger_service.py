"""
Ledger service - the request/response surface of the ledger core.

Every method takes a camelCase dict body and returns a JSON-ready dict. Caller
errors come back as {"error", "errorType"} bodies; anything else (storage
outages, bugs) propagates.

Usage:
    service = LedgerService.from_config()
    service.submit_donation({"campaignId": cid, "amount": 50, "category": "Food", "donorId": uid})
"""

import logging
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..config import LedgerConfig, load_config
from ..db import create_backend
from ..db.backend import DocumentBackend
from ..db.repository import LedgerRepositories
from ..exceptions import CALLER_VISIBLE_ERRORS, LedgerError, ValidationError
from ..llm.collaborators import FraudScorer, LLMFraudScorer, LLMPlausibilityVerifier, PlausibilityVerifier
from ..models.api import (
    CampaignQuery,
    ComplianceQuery,
    DonationReceipt,
    DonationRequest,
    HistoryQuery,
    WithdrawalReceipt,
    WithdrawalRequest,
)
from ..scorers.compliance import category_report, summarize_campaign
from ..utils.logger import LedgerLogger, get_logger
from .campaign_registry import CampaignRegistry
from .donation_recorder import DonationRecorder
from .reconciliation import ReconciliationService
from .withdrawal_processor import WithdrawalProcessor

logger = logging.getLogger(__name__)


def _camel_keys(record: dict[str, Any]) -> dict[str, Any]:
    return {to_camel(key): value for key, value in record.items()}


def _validation_body(error: PydanticValidationError) -> dict[str, Any]:
    problems = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in error.errors()]
    return ValidationError("Invalid request: " + "; ".join(problems), {"fields": problems}).to_body()


class LedgerService:
    """Facade over registry, recorder, processor and reconciliation."""

    def __init__(
        self,
        repos: LedgerRepositories,
        fraud_scorer: FraudScorer,
        verifier: PlausibilityVerifier,
        config: Optional[LedgerConfig] = None,
        ledger_logger: Optional[LedgerLogger] = None,
    ):
        self.config = config or LedgerConfig()
        self.repos = repos
        self.ledger_logger = ledger_logger or get_logger()
        self.registry = CampaignRegistry(repos, self.config)
        self.reconciler = ReconciliationService(repos, self.config)
        self.donations = DonationRecorder(repos, self.registry, fraud_scorer, self.reconciler, self.config)
        self.withdrawals = WithdrawalProcessor(repos, self.registry, verifier, self.reconciler, self.config)

    @classmethod
    def from_config(
        cls,
        config: Optional[LedgerConfig] = None,
        backend: Optional[DocumentBackend] = None,
        fraud_scorer: Optional[FraudScorer] = None,
        verifier: Optional[PlausibilityVerifier] = None,
        ledger_logger: Optional[LedgerLogger] = None,
    ) -> "LedgerService":
        """Build a service with LLM collaborators and the configured backend."""
        config = config or load_config()
        backend = backend or create_backend(config.backend)
        timeout = config.collaborator_timeout_seconds
        return cls(
            repos=LedgerRepositories.from_backend(backend),
            fraud_scorer=fraud_scorer or LLMFraudScorer(timeout=timeout),
            verifier=verifier or LLMPlausibilityVerifier(timeout=timeout),
            config=config,
            ledger_logger=ledger_logger,
        )

    def close(self) -> None:
        """Drain async propagation."""
        self.reconciler.shutdown()

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def submit_donation(self, body: dict[str, Any]) -> dict[str, Any]:
        """{campaignId, amount, category, donorId} -> {transactionId, verificationScore}"""

        def run() -> dict[str, Any]:
            request = DonationRequest.model_validate(body)
            result = self.donations.record(
                donor_id=request.donor_id,
                campaign_id=request.campaign_id,
                category=request.category,
                amount=request.amount,
                transaction_id=request.transaction_id,
                rail_transaction_id=request.rail_transaction_id,
            )
            if not result.duplicate:
                self.ledger_logger.log_commit(
                    "donation",
                    result.transaction_id,
                    request.campaign_id,
                    result.donation.amount,
                    result.donation.fraud_score,
                )
            receipt = DonationReceipt(
                transaction_id=result.transaction_id, verification_score=result.verification_score
            )
            return receipt.model_dump(by_alias=True)

        return self._handle("donation", body, run)

    def submit_withdrawal(self, body: dict[str, Any]) -> dict[str, Any]:
        """{campaignId, category, amount, reason, orgId} -> {transactionId, aiVerificationScore}"""

        def run() -> dict[str, Any]:
            request = WithdrawalRequest.model_validate(body)
            result = self.withdrawals.process(
                campaign_id=request.campaign_id,
                org_id=request.org_id,
                category=request.category,
                amount=request.amount,
                reason=request.reason,
                transaction_id=request.transaction_id,
                rail_transaction_id=request.rail_transaction_id,
            )
            if not result.duplicate:
                self.ledger_logger.log_commit(
                    "withdrawal",
                    result.transaction_id,
                    request.campaign_id,
                    result.withdrawal.amount,
                    result.ai_verification_score,
                )
            receipt = WithdrawalReceipt(
                transaction_id=result.transaction_id, ai_verification_score=result.ai_verification_score
            )
            return receipt.model_dump(by_alias=True)

        return self._handle("withdrawal", body, run)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def compliance_query(self, body: dict[str, Any]) -> dict[str, Any]:
        """{campaignId, category} -> {isCompliant, allocatedAmount, spentAmount, remainingAmount, utilizationRate}"""

        def run() -> dict[str, Any]:
            query = ComplianceQuery.model_validate(body)
            campaign = self.registry.get_campaign(query.campaign_id)
            return category_report(self.registry.find_category(campaign, query.category)).to_dict()

        return self._handle("compliance query", body, run)

    def transaction_history(self, body: dict[str, Any]) -> dict[str, Any]:
        """{campaignId, type?} -> {campaignId, donations, withdrawals, total}

        Donations come from the campaign's mirror (donation_refs); run a sweep
        first if propagation is pending.
        """

        def run() -> dict[str, Any]:
            query = HistoryQuery.model_validate(body)
            campaign = self.registry.get_campaign(query.campaign_id)
            donations = [_camel_keys(ref.model_dump(mode="json")) for ref in campaign.donation_refs]
            withdrawals = [_camel_keys(w.model_dump(mode="json")) for w in campaign.withdrawals]
            if query.type == "donations":
                withdrawals = []
            elif query.type == "withdrawals":
                donations = []
            return {
                "campaignId": campaign.campaign_id,
                "type": query.type,
                "donations": donations,
                "withdrawals": withdrawals,
                "total": len(donations) + len(withdrawals),
            }

        return self._handle("history query", body, run)

    def campaign_summary(self, body: dict[str, Any]) -> dict[str, Any]:
        """{campaignId} -> cached projections, per-category reports and allocation delta"""

        def run() -> dict[str, Any]:
            query = CampaignQuery.model_validate(body)
            return summarize_campaign(
                self.registry.get_campaign(query.campaign_id),
                neutral_verification_score=self.config.neutral_verification_score,
            )

        return self._handle("campaign summary", body, run)

    # ------------------------------------------------------------------

    def _handle(self, kind: str, body: Any, run: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        if not isinstance(body, dict):
            error = ValidationError("Request body must be an object")
            self.ledger_logger.log_rejection(kind, error.error_type, error.message)
            return error.to_body()
        try:
            return run()
        except PydanticValidationError as e:
            error_body = _validation_body(e)
            self.ledger_logger.log_rejection(kind, error_body["errorType"], error_body["error"])
            return error_body
        except CALLER_VISIBLE_ERRORS as e:
            self.ledger_logger.log_rejection(kind, e.error_type, e.message, **_context(body))
            return e.to_body()
        except LedgerError as e:
            # Internal ledger errors (e.g. exhausted CAS retries) are not caller errors
            self.ledger_logger.error(f"{kind} failed", exception=e, **_context(body))
            raise


def _context(body: dict[str, Any]) -> dict[str, Any]:
    return {key: body[key] for key in ("campaignId", "category", "donorId", "orgId") if key in body}

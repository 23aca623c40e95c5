"""
Withdrawal Processor - money out.

Each request moves through:

    received -> compliance_checked -> plausibility_checked -> committed
                      |                        |
                      +-> rejected (BudgetExceeded)
                                               +-> rejected (ReasonMismatch)

The budget check is the one place the ledger refuses entry instead of flagging:
an over-withdrawal is an irreversible cash movement. The check runs once up
front (cheap rejection before calling the plausibility collaborator) and again
under the per-campaign lock against a fresh read right before the
compare-and-swap commit, so two concurrent withdrawals can never both pass
against a stale `spent`.

Because of that check, every withdrawal committed here records
`compliant_at_commit=True`, so a campaign's compliance rate stays at 100 on
this path. It only drops for withdrawals recorded otherwise, e.g. after a
budget was revised below what had already been spent.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from ..config import LedgerConfig
from ..constants import WITHDRAWAL_ID_PREFIX
from ..db.repository import LedgerRepositories
from ..exceptions import BudgetExceeded, ReasonMismatch, ValidationError
from ..llm.collaborators import CollaboratorUnavailable, PlausibilityVerifier, call_with_timeout
from ..models.ledger import Campaign, CampaignStatus, Category, TransactionKind, TransactionRecord, Withdrawal, utcnow
from ..scorers.compliance import category_compliance, refresh_campaign
from ..utils.ids import has_foreign_prefix, new_id
from ..utils.locks import campaign_locks
from ..utils.money import parse_amount
from .campaign_registry import CampaignRegistry
from .reconciliation import PropagationEvent, ReconciliationService

logger = logging.getLogger(__name__)


class WithdrawalStage(str, Enum):
    RECEIVED = "received"
    COMPLIANCE_CHECKED = "compliance_checked"
    PLAUSIBILITY_CHECKED = "plausibility_checked"
    COMMITTED = "committed"
    REJECTED = "rejected"


@dataclass
class WithdrawalResult:
    """Outcome of a committed (or replayed) withdrawal."""

    withdrawal: Withdrawal
    stages: list[WithdrawalStage] = field(default_factory=list)
    duplicate: bool = False
    propagated: bool = False

    @property
    def transaction_id(self) -> str:
        return self.withdrawal.transaction_id

    @property
    def ai_verification_score(self) -> float:
        return self.withdrawal.ai_verification_score


def check_budget(category: Category, amount: Decimal) -> None:
    """Raise BudgetExceeded if spending `amount` would push the category over budget."""
    would_be_spent = category.spent + amount
    if would_be_spent > category.budget:
        raise BudgetExceeded(
            f"Withdrawal of {amount} exceeds remaining budget of {category.budget - category.spent} "
            f"in category '{category.name}'",
            {
                "category": category.name,
                "budget": str(category.budget),
                "spent": str(category.spent),
                "requested": str(amount),
            },
        )


class WithdrawalProcessor:
    """Validates and commits withdrawals against campaign categories."""

    def __init__(
        self,
        repos: LedgerRepositories,
        registry: CampaignRegistry,
        verifier: PlausibilityVerifier,
        reconciler: ReconciliationService,
        config: Optional[LedgerConfig] = None,
    ):
        self.repos = repos
        self.registry = registry
        self.verifier = verifier
        self.reconciler = reconciler
        self.config = config or LedgerConfig()

    def process(
        self,
        campaign_id: str,
        org_id: str,
        category: str,
        amount: Any,
        reason: str,
        transaction_id: Optional[str] = None,
        rail_transaction_id: Optional[str] = None,
    ) -> WithdrawalResult:
        """
        Process a withdrawal request.

        Raises:
            ValidationError: bad input, inactive campaign, or org does not own the campaign
            NotFound: unknown campaign or category
            BudgetExceeded: category would overspend
            ReasonMismatch: justification scored below the plausibility threshold
        """
        stages = [WithdrawalStage.RECEIVED]

        value = parse_amount(amount)
        if value <= 0:
            raise ValidationError("Withdrawal amount must be greater than 0", {"amount": str(value)})
        if not reason or not reason.strip():
            raise ValidationError("A withdrawal reason is required")
        if transaction_id is not None and not str(transaction_id).strip():
            raise ValidationError("transactionId must not be empty")

        campaign = self.registry.get_campaign(campaign_id)
        if campaign.org_id != org_id:
            raise ValidationError(
                f"Organization {org_id} does not own campaign {campaign_id}",
                {"campaignId": campaign_id, "orgId": org_id},
            )

        if transaction_id:
            existing = campaign.find_withdrawal(transaction_id)
            if existing:
                logger.info(f"Duplicate withdrawal {transaction_id} on {campaign_id}; returning original")
                return WithdrawalResult(withdrawal=existing, stages=[WithdrawalStage.COMMITTED], duplicate=True)
            self._check_foreign_claim(transaction_id, campaign_id)
            if has_foreign_prefix(transaction_id, WITHDRAWAL_ID_PREFIX):
                raise ValidationError(
                    f"transactionId {transaction_id} is not a withdrawal id", {"transactionId": transaction_id}
                )

        if campaign.status != CampaignStatus.ACTIVE:
            raise ValidationError(
                f"Campaign {campaign_id} is {campaign.status.value}; withdrawals are closed",
                {"campaignId": campaign_id, "status": campaign.status.value},
            )
        target = self.registry.find_category(campaign, category)

        try:
            check_budget(target, value)
            stages.append(WithdrawalStage.COMPLIANCE_CHECKED)

            score = self._verify(category, value, reason)
            if score < self.config.plausibility_threshold:
                raise ReasonMismatch(
                    f"Withdrawal reason does not match category '{category}'",
                    {"score": score, "threshold": self.config.plausibility_threshold, "category": category},
                )
            stages.append(WithdrawalStage.PLAUSIBILITY_CHECKED)
        except (BudgetExceeded, ReasonMismatch) as e:
            stages.append(WithdrawalStage.REJECTED)
            logger.info(f"Withdrawal on {campaign_id}/{category} rejected at {stages[-2].value}: {e.error_type}")
            raise

        withdrawal = Withdrawal(
            transaction_id=transaction_id or new_id(WITHDRAWAL_ID_PREFIX),
            campaign_id=campaign_id,
            org_id=org_id,
            category=category,
            amount=value,
            reason=reason.strip(),
            timestamp=utcnow(),
            ai_verification_score=score,
            approved=True,
            rail_transaction_id=rail_transaction_id,
        )

        committed, duplicate = self._commit(withdrawal)
        if duplicate:
            return WithdrawalResult(withdrawal=committed, stages=[WithdrawalStage.COMMITTED], duplicate=True)
        stages.append(WithdrawalStage.COMMITTED)

        propagated = self.reconciler.propagate(PropagationEvent.for_withdrawal(committed))
        logger.info(
            f"Withdrawal {committed.transaction_id}: {committed.amount} from {campaign_id}/{category} "
            f"(score {committed.ai_verification_score:.2f}, propagated={propagated})"
        )
        return WithdrawalResult(withdrawal=committed, stages=stages, propagated=propagated)

    def _check_foreign_claim(self, transaction_id: str, campaign_id: str) -> None:
        record = self.repos.transactions.get(transaction_id)
        if record and (record.kind != TransactionKind.WITHDRAWAL or record.owner_id != campaign_id):
            raise ValidationError(
                f"Transaction id {transaction_id} is already used by another {record.kind.value}",
                {"transactionId": transaction_id},
            )

    def _verify(self, category: str, amount: Decimal, reason: str) -> float:
        """Plausibility score in [0, 1]; outages fail closed with the fallback score."""
        try:
            assessment = call_with_timeout(
                "plausibility verifier",
                self.verifier.verify,
                self.config.collaborator_timeout_seconds,
                category,
                amount,
                reason,
            )
        except CollaboratorUnavailable as e:
            logger.warning(f"Plausibility check unavailable, using fallback score: {e}")
            return self.config.plausibility_fallback_score
        return assessment.score

    def _commit(self, withdrawal: Withdrawal) -> tuple[Withdrawal, bool]:
        """Re-check the budget and append under the campaign lock. Returns (stored, duplicate)."""
        campaign_id = withdrawal.campaign_id
        transaction_id = withdrawal.transaction_id

        with campaign_locks.hold(campaign_id):
            existing = self.repos.transactions.claim(
                TransactionRecord(
                    transaction_id=transaction_id,
                    kind=TransactionKind.WITHDRAWAL,
                    owner_id=campaign_id,
                    campaign_id=campaign_id,
                )
            )
            if existing and (existing.kind != TransactionKind.WITHDRAWAL or existing.owner_id != campaign_id):
                raise ValidationError(
                    f"Transaction id {transaction_id} is already used by another {existing.kind.value}",
                    {"transactionId": transaction_id},
                )
            claimed = existing is None

            appended = False

            def apply(campaign: Campaign) -> bool:
                nonlocal appended
                if campaign.find_withdrawal(transaction_id):
                    appended = False
                    return False
                if campaign.status != CampaignStatus.ACTIVE:
                    raise ValidationError(
                        f"Campaign {campaign_id} is {campaign.status.value}; withdrawals are closed",
                        {"campaignId": campaign_id, "status": campaign.status.value},
                    )
                category = self.registry.find_category(campaign, withdrawal.category)
                check_budget(category, withdrawal.amount)
                category.apply_spend(withdrawal.amount)
                campaign.withdrawals.append(
                    withdrawal.model_copy(update={"compliant_at_commit": category_compliance(category)})
                )
                refresh_campaign(campaign, self.config.neutral_trust_score)
                appended = True
                return True

            try:
                campaign = self.repos.campaigns.mutate(campaign_id, apply, self.config.cas_max_attempts)
            except Exception:
                if claimed:
                    self.repos.transactions.release(transaction_id)
                raise

        stored = campaign.find_withdrawal(transaction_id)
        if not appended:
            logger.info(f"Duplicate withdrawal {transaction_id} on {campaign_id}; returning original")
        return stored, not appended

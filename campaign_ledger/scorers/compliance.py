"""
Compliance & trust aggregation - pure functions over ledger event lists.

Cached fields on Campaign/Donor/Organization are projections; every number here
is re-derivable from the events that produced it:

- category compliance: spent <= budget
- campaign compliance rate: % of withdrawals compliant at the time they committed
  (100 with no withdrawals)
- average fraud score: mean of every score in scope, neutral default when empty
- trust score: mean of average fraud score and compliance rate

Scales: donation fraud scores are 0-100, withdrawal verification scores are 0-1
and are multiplied by 100 before joining a campaign-scope average.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from ..constants import (
    FULL_COMPLIANCE_RATE,
    NEUTRAL_TRUST_SCORE,
    NEUTRAL_VERIFICATION_SCORE,
    TRUST_SCALE_MAX,
    VERIFICATION_SCALE_MAX,
)
from ..models.ledger import Campaign, Category, Donor, Organization, utcnow

ZERO = Decimal("0")


@dataclass
class CategoryReport:
    """Compliance snapshot of one category."""

    category: str
    is_compliant: bool
    allocated_amount: Decimal
    spent_amount: Decimal
    remaining_amount: Decimal
    utilization_rate: float  # 0-100+, > 100 only if a budget was revised below spend

    def to_dict(self) -> dict:
        return {
            "isCompliant": self.is_compliant,
            "allocatedAmount": str(self.allocated_amount),
            "spentAmount": str(self.spent_amount),
            "remainingAmount": str(self.remaining_amount),
            "utilizationRate": self.utilization_rate,
        }


def category_compliance(category: Category) -> bool:
    """A category is compliant while its spending stays within budget."""
    return category.spent <= category.budget


def utilization_rate(category: Category) -> float:
    """Spent as a percentage of budget, rounded to 2 places."""
    if category.budget <= 0:
        return 0.0
    return round(float(category.spent / category.budget * 100), 2)


def category_report(category: Category) -> CategoryReport:
    return CategoryReport(
        category=category.name,
        is_compliant=category_compliance(category),
        allocated_amount=category.budget,
        spent_amount=category.spent,
        remaining_amount=category.budget - category.spent,
        utilization_rate=utilization_rate(category),
    )


def average_score(scores: Iterable[float], default: float) -> float:
    """
    Arithmetic mean of scores.

    Args:
        scores: Event scores, all on the same scale
        default: Neutral value returned for an empty list (100 on the 0-100 scale, 1.0 on 0-1)
    """
    values = list(scores)
    if not values:
        return default
    return sum(values) / len(values)


def campaign_compliance_rate(campaign: Campaign) -> float:
    """Percentage of withdrawals that were compliant when committed."""
    if not campaign.withdrawals:
        return FULL_COMPLIANCE_RATE
    compliant = sum(1 for w in campaign.withdrawals if w.compliant_at_commit)
    return compliant / len(campaign.withdrawals) * 100


def campaign_scores(campaign: Campaign) -> list[float]:
    """Every score in campaign scope, on the 0-100 scale."""
    scale = TRUST_SCALE_MAX / VERIFICATION_SCALE_MAX
    donation_scores = [ref.fraud_score for ref in campaign.donation_refs]
    withdrawal_scores = [w.ai_verification_score * scale for w in campaign.withdrawals]
    return donation_scores + withdrawal_scores


def average_verification_score(campaign: Campaign, default: float = NEUTRAL_VERIFICATION_SCORE) -> float:
    """Mean AI verification score of the campaign's withdrawals, on the 0-1 scale."""
    return average_score((w.ai_verification_score for w in campaign.withdrawals), default)


def campaign_trust_score(campaign: Campaign) -> float:
    """Mean of the campaign's cached average fraud score and compliance rate."""
    return (campaign.average_fraud_score + campaign.compliance_rate) / 2


def organization_trust_score(campaigns: Iterable[Campaign], default: float = NEUTRAL_TRUST_SCORE) -> float:
    """Mean trust score over an organization's campaigns."""
    return average_score((c.trust_score for c in campaigns), default)


def allocation_delta(campaign: Campaign) -> Decimal:
    """target_amount - sum of category budgets (positive = under-allocated)."""
    return campaign.target_amount - campaign.total_budget


def refresh_campaign(campaign: Campaign, neutral_score: float = NEUTRAL_TRUST_SCORE) -> Campaign:
    """Re-derive every cached projection of a campaign from its event lists (in place)."""
    for category in campaign.categories:
        refs = [ref for ref in campaign.donation_refs if ref.category == category.name]
        withdrawals = [w for w in campaign.withdrawals if w.category == category.name]
        category.raised = sum((ref.amount for ref in refs), ZERO)
        category.spent = sum((w.amount for w in withdrawals), ZERO)
        category.remaining = category.budget - category.spent
        category.transactions = len(refs) + len(withdrawals)

    campaign.raised_amount = sum((ref.amount for ref in campaign.donation_refs), ZERO)
    campaign.average_fraud_score = average_score(campaign_scores(campaign), neutral_score)
    campaign.compliance_rate = campaign_compliance_rate(campaign)
    campaign.trust_score = campaign_trust_score(campaign)
    campaign.updated_at = utcnow()
    return campaign


def refresh_donor(donor: Donor, neutral_score: float = NEUTRAL_TRUST_SCORE) -> Donor:
    """Re-derive a donor's totals and average fraud score (in place)."""
    donor.total_donated = sum((d.amount for d in donor.donations), ZERO)
    donor.donation_count = len(donor.donations)
    donor.average_fraud_score = average_score((d.fraud_score for d in donor.donations), neutral_score)
    return donor


def refresh_organization(
    organization: Organization,
    campaigns: list[Campaign],
    neutral_score: float = NEUTRAL_TRUST_SCORE,
) -> Organization:
    """Re-derive organization aggregates from its campaigns (in place).

    `applied_transaction_ids` is rebuilt too, so later propagation of the same
    events stays a no-op.
    """
    organization.campaign_ids = [c.campaign_id for c in campaigns]
    organization.total_campaigns = len(campaigns)
    organization.total_raised = sum((c.raised_amount for c in campaigns), ZERO)
    organization.total_withdrawn = sum((w.amount for c in campaigns for w in c.withdrawals), ZERO)
    organization.overall_trust_score = organization_trust_score(campaigns, neutral_score)
    organization.applied_transaction_ids = sorted(
        [ref.transaction_id for c in campaigns for ref in c.donation_refs]
        + [w.transaction_id for c in campaigns for w in c.withdrawals]
    )
    organization.last_synced_at = utcnow()
    return organization


def find_stale_fields(campaign: Campaign, neutral_score: float = NEUTRAL_TRUST_SCORE) -> list[str]:
    """Names of cached campaign projections that disagree with the event lists."""
    expected = refresh_campaign(campaign.model_copy(deep=True), neutral_score)
    stale: list[str] = []
    for field_name in ("raised_amount", "average_fraud_score", "compliance_rate", "trust_score"):
        if _differs(getattr(campaign, field_name), getattr(expected, field_name)):
            stale.append(field_name)
    for current, derived in zip(campaign.categories, expected.categories):
        for field_name in ("spent", "remaining", "raised", "transactions"):
            if getattr(current, field_name) != getattr(derived, field_name):
                stale.append(f"categories[{current.name}].{field_name}")
    return stale


def _differs(current, derived, tolerance: float = 1e-9) -> bool:
    if isinstance(current, float) or isinstance(derived, float):
        return abs(float(current) - float(derived)) > tolerance
    return current != derived


def summarize_campaign(
    campaign: Campaign,
    reports: Optional[list[CategoryReport]] = None,
    neutral_verification_score: float = NEUTRAL_VERIFICATION_SCORE,
) -> dict:
    """Campaign projections plus allocation delta, for the summary query."""
    reports = reports if reports is not None else [category_report(c) for c in campaign.categories]
    return {
        "campaignId": campaign.campaign_id,
        "orgId": campaign.org_id,
        "title": campaign.title,
        "status": campaign.status.value,
        "targetAmount": str(campaign.target_amount),
        "raisedAmount": str(campaign.raised_amount),
        "totalBudget": str(campaign.total_budget),
        "totalSpent": str(campaign.total_spent),
        "allocationDelta": str(allocation_delta(campaign)),
        "averageFraudScore": round(campaign.average_fraud_score, 2),
        "complianceRate": round(campaign.compliance_rate, 2),
        "trustScore": round(campaign.trust_score, 2),
        "averageVerificationScore": round(average_verification_score(campaign, neutral_verification_score), 4),
        "categories": [{"name": r.category, **r.to_dict()} for r in reports],
    }

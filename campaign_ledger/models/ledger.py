"""
Pydantic models for the campaign ledger.

Two independently stored views of the same money flow:
- Donor documents own the Donation events (the donor's personal history)
- Campaign documents own the Withdrawal events and mirror donations as DonationRefs

Aggregate fields (raised_amount, average_fraud_score, compliance_rate, ...) are
cached projections; scorers/compliance.py re-derives them from the event lists.
Every stored document carries a `version` used for compare-and-swap writes.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..constants import FULL_COMPLIANCE_RATE, NEUTRAL_TRUST_SCORE

ZERO = Decimal("0")


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class CampaignStatus(str, Enum):
    """Campaign lifecycle: active -> completed | cancelled."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrganizationStatus(str, Enum):
    """Soft status; organizations are never hard-deleted."""

    ACTIVE = "active"
    SUSPENDED = "suspended"


class TransactionKind(str, Enum):
    """Kinds of ledger events keyed by transaction id."""

    DONATION = "donation"
    WITHDRAWAL = "withdrawal"


class Category(BaseModel):
    """A named budget line within a campaign."""

    name: str = Field(..., min_length=1, description="Unique (case-sensitive) within its campaign")
    budget: Decimal = Field(..., gt=0, description="Fixed allocation")
    spent: Decimal = Field(default=ZERO, ge=0, description="Sum of committed withdrawals")
    remaining: Optional[Decimal] = Field(None, description="budget - spent")
    raised: Decimal = Field(default=ZERO, ge=0, description="Sum of donations targeting this category")
    transactions: int = Field(default=0, ge=0, description="Donations + withdrawals recorded against it")

    @model_validator(mode="after")
    def _derive_remaining(self) -> "Category":
        self.remaining = self.budget - self.spent
        return self

    def apply_spend(self, amount: Decimal) -> None:
        """Record a committed withdrawal; `spent` only increases."""
        if amount <= 0:
            raise ValueError("spend amount must be positive")
        self.spent += amount
        self.remaining = self.budget - self.spent
        self.transactions += 1


class PlanInsights(BaseModel):
    """Text-generation collaborator output attached when the plan was drafted."""

    success_probability: float = Field(default=0.0, ge=0.0, le=1.0)
    estimated_days: int = Field(default=0, ge=0)
    risk_factors: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)


class Donation(BaseModel):
    """Immutable donation event, owned by the donor that made it."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(..., min_length=1)
    donor_id: str
    campaign_id: str
    category: str
    amount: Decimal = Field(..., gt=0)
    timestamp: datetime = Field(default_factory=utcnow)
    fraud_score: float = Field(..., ge=0.0, le=100.0, description="Trust score, 100 = no fraud signal")
    verified: bool = Field(default=True, description="False when fraud scoring was unavailable")
    rail_transaction_id: Optional[str] = Field(None, description="Payment-rail shadow id")


class DonationRef(BaseModel):
    """Campaign-side mirror of a donation (referenced, not owned)."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    donor_id: str
    category: str
    amount: Decimal = Field(..., gt=0)
    fraud_score: float = Field(..., ge=0.0, le=100.0)
    timestamp: datetime

    @classmethod
    def from_donation(cls, donation: Donation) -> "DonationRef":
        return cls(
            transaction_id=donation.transaction_id,
            donor_id=donation.donor_id,
            category=donation.category,
            amount=donation.amount,
            fraud_score=donation.fraud_score,
            timestamp=donation.timestamp,
        )


class Withdrawal(BaseModel):
    """Immutable withdrawal event, owned by the campaign."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(..., min_length=1)
    campaign_id: str
    org_id: str
    category: str
    amount: Decimal = Field(..., gt=0)
    reason: str
    timestamp: datetime = Field(default_factory=utcnow)
    ai_verification_score: float = Field(..., ge=0.0, le=1.0)
    approved: bool = True
    compliant_at_commit: bool = Field(True, description="Category spent <= budget right after this event")
    rail_transaction_id: Optional[str] = None


class Campaign(BaseModel):
    """One fundraising effort owned by exactly one organization."""

    campaign_id: str
    org_id: str
    title: str = Field(..., min_length=1)
    description: str = ""
    target_amount: Decimal = Field(..., gt=0)
    status: CampaignStatus = CampaignStatus.ACTIVE
    categories: list[Category] = Field(default_factory=list)
    withdrawals: list[Withdrawal] = Field(default_factory=list)
    donation_refs: list[DonationRef] = Field(default_factory=list)

    # Cached projections
    raised_amount: Decimal = ZERO
    average_fraud_score: float = NEUTRAL_TRUST_SCORE
    compliance_rate: float = FULL_COMPLIANCE_RATE
    trust_score: float = NEUTRAL_TRUST_SCORE

    plan_insights: Optional[PlanInsights] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def find_category(self, name: str) -> Optional[Category]:
        for category in self.categories:
            if category.name == name:
                return category
        return None

    def find_withdrawal(self, transaction_id: str) -> Optional[Withdrawal]:
        for withdrawal in self.withdrawals:
            if withdrawal.transaction_id == transaction_id:
                return withdrawal
        return None

    def has_donation_ref(self, transaction_id: str) -> bool:
        return any(ref.transaction_id == transaction_id for ref in self.donation_refs)

    @property
    def total_spent(self) -> Decimal:
        return sum((c.spent for c in self.categories), ZERO)

    @property
    def total_budget(self) -> Decimal:
        return sum((c.budget for c in self.categories), ZERO)


class Organization(BaseModel):
    """A registered charity and its rolling aggregates."""

    org_id: str = Field(..., min_length=1, description="Stable identity from the identity provider")
    tracking_id: str
    name: str
    verified: bool = False
    status: OrganizationStatus = OrganizationStatus.ACTIVE
    campaign_ids: list[str] = Field(default_factory=list)
    total_campaigns: int = 0
    total_raised: Decimal = ZERO
    total_withdrawn: Decimal = ZERO
    overall_trust_score: float = NEUTRAL_TRUST_SCORE
    applied_transaction_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_synced_at: Optional[datetime] = None
    version: int = 0


class Donor(BaseModel):
    """A registered donor and their donation history."""

    donor_id: str = Field(..., min_length=1, description="Stable identity from the identity provider")
    tracking_id: str
    name: str
    donations: list[Donation] = Field(default_factory=list)
    total_donated: Decimal = ZERO
    donation_count: int = 0
    average_fraud_score: float = NEUTRAL_TRUST_SCORE
    created_at: datetime = Field(default_factory=utcnow)
    last_synced_at: Optional[datetime] = None
    version: int = 0

    def find_donation(self, transaction_id: str) -> Optional[Donation]:
        for donation in self.donations:
            if donation.transaction_id == transaction_id:
                return donation
        return None


class TransactionRecord(BaseModel):
    """Global transaction-id index entry (idempotency and uniqueness)."""

    transaction_id: str
    kind: TransactionKind
    owner_id: str = Field(..., description="Donor id for donations, campaign id for withdrawals")
    campaign_id: str
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

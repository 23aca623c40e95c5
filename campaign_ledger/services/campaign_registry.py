"""
Campaign Registry - owns organization, donor and campaign records.

Responsibilities:
- Registration sync for organizations and donors (idempotent: the first call
  creates the record, later calls return it)
- Campaign creation with category validation
- Lifecycle transitions active -> completed | cancelled
- Category lookup (exact, case-sensitive)

Reads always go to the backend; compliance decisions never see a cached copy.
"""

import logging
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from ..config import LedgerConfig
from ..constants import CAMPAIGN_ID_PREFIX, DONOR_ID_PREFIX, ORGANIZATION_ID_PREFIX
from ..db.repository import LedgerRepositories
from ..exceptions import NotFound, ValidationError
from ..models.ledger import (
    Campaign,
    CampaignStatus,
    Category,
    Donor,
    Organization,
    OrganizationStatus,
    PlanInsights,
    utcnow,
)
from ..scorers.compliance import allocation_delta, refresh_campaign
from ..utils.ids import new_id
from ..utils.locks import campaign_locks, organization_locks
from ..utils.money import parse_amount

logger = logging.getLogger(__name__)


class CampaignRegistry:
    """Campaign, organization and donor records."""

    def __init__(self, repos: LedgerRepositories, config: Optional[LedgerConfig] = None):
        self.repos = repos
        self.config = config or LedgerConfig()

    # ------------------------------------------------------------------
    # Registration sync
    # ------------------------------------------------------------------

    def register_organization(self, org_id: str, name: str, verified: bool = False) -> Organization:
        """Create the organization on first sync; return the stored one afterwards."""
        if not org_id or not name:
            raise ValidationError("org_id and name are required")
        existing = self.repos.organizations.get(org_id)
        if existing:
            return existing

        organization = Organization(
            org_id=org_id,
            tracking_id=new_id(ORGANIZATION_ID_PREFIX),
            name=name,
            verified=verified,
            last_synced_at=utcnow(),
        )
        if not self.repos.organizations.insert(organization):
            # Concurrent first sync won
            return self.repos.organizations.require(org_id)
        logger.info(f"Registered organization {org_id} as {organization.tracking_id}")
        return organization

    def register_donor(self, donor_id: str, name: str) -> Donor:
        """Create the donor on first sync; return the stored one afterwards."""
        if not donor_id or not name:
            raise ValidationError("donor_id and name are required")
        existing = self.repos.donors.get(donor_id)
        if existing:
            return existing

        donor = Donor(donor_id=donor_id, tracking_id=new_id(DONOR_ID_PREFIX), name=name, last_synced_at=utcnow())
        if not self.repos.donors.insert(donor):
            return self.repos.donors.require(donor_id)
        logger.info(f"Registered donor {donor_id} as {donor.tracking_id}")
        return donor

    def get_organization(self, org_id: str) -> Organization:
        return self.repos.organizations.require(org_id)

    def get_donor(self, donor_id: str) -> Donor:
        return self.repos.donors.require(donor_id)

    def set_organization_status(self, org_id: str, status: OrganizationStatus) -> Organization:
        """Soft status change; organizations are never deleted."""
        status = OrganizationStatus(status)

        def apply(organization: Organization) -> bool:
            if organization.status == status:
                return False
            organization.status = status
            return True

        with organization_locks.hold(org_id):
            organization = self.repos.organizations.mutate(org_id, apply, self.config.cas_max_attempts)
        logger.info(f"Organization {org_id} status: {status.value}")
        return organization

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------

    def create_campaign(
        self,
        org_id: str,
        title: str,
        target_amount: Any,
        categories: Iterable[Mapping[str, Any] | Category],
        description: str = "",
        plan_insights: Optional[PlanInsights | Mapping[str, Any]] = None,
    ) -> Campaign:
        """
        Create an active campaign for an organization.

        Args:
            org_id: Owning organization (must be registered and active)
            title: Campaign title
            target_amount: Fundraising goal, > 0
            categories: Budget lines as {"name", "budget"} mappings or Category objects;
                names unique, budgets > 0. The budgets need not sum to the target.

        Raises:
            NotFound: unknown organization
            ValidationError: invalid amounts, duplicate category names, suspended organization
        """
        organization = self.repos.organizations.require(org_id)
        if organization.status != OrganizationStatus.ACTIVE:
            raise ValidationError(f"Organization {org_id} is {organization.status.value}", {"orgId": org_id})
        if not title or not title.strip():
            raise ValidationError("title is required")

        target = parse_amount(target_amount, "targetAmount")
        if target <= 0:
            raise ValidationError("targetAmount must be greater than 0", {"targetAmount": str(target)})

        parsed_categories = self._parse_categories(categories)
        if isinstance(plan_insights, Mapping):
            plan_insights = PlanInsights.model_validate(plan_insights)

        campaign = Campaign(
            campaign_id=new_id(CAMPAIGN_ID_PREFIX),
            org_id=org_id,
            title=title.strip(),
            description=description or "",
            target_amount=target,
            categories=parsed_categories,
            plan_insights=plan_insights,
        )
        refresh_campaign(campaign, self.config.neutral_trust_score)
        if not self.repos.campaigns.insert(campaign):
            raise ValidationError(f"Campaign id collision: {campaign.campaign_id}")

        def attach(org: Organization) -> bool:
            if campaign.campaign_id in org.campaign_ids:
                return False
            org.campaign_ids.append(campaign.campaign_id)
            org.total_campaigns = len(org.campaign_ids)
            return True

        with organization_locks.hold(org_id):
            self.repos.organizations.mutate(org_id, attach, self.config.cas_max_attempts)

        delta = allocation_delta(campaign)
        if delta != 0:
            logger.info(f"Campaign {campaign.campaign_id} allocation delta {delta} (target {target})")
        logger.info(f"Created campaign {campaign.campaign_id} for {org_id} with {len(parsed_categories)} categories")
        return campaign

    def _parse_categories(self, categories: Iterable[Mapping[str, Any] | Category]) -> list[Category]:
        parsed: list[Category] = []
        seen: set[str] = set()
        for raw in categories or []:
            if isinstance(raw, Category):
                name, budget = raw.name, raw.budget
            elif isinstance(raw, Mapping):
                name, budget = raw.get("name"), raw.get("budget")
            else:
                raise ValidationError(f"Invalid category entry: {raw!r}")

            if not isinstance(name, str) or not name.strip():
                raise ValidationError("Category name is required")
            if name in seen:
                raise ValidationError(f"Duplicate category name: {name}", {"category": name})
            amount = parse_amount(budget, f"budget of {name}")
            if amount <= 0:
                raise ValidationError(f"Category budget must be greater than 0: {name}", {"category": name})

            seen.add(name)
            parsed.append(Category(name=name, budget=amount))
        return parsed

    def get_campaign(self, campaign_id: str) -> Campaign:
        """Load the latest committed campaign or raise NotFound."""
        return self.repos.campaigns.require(campaign_id)

    def find_category(self, campaign: Campaign, name: str) -> Category:
        """Exact, case-sensitive category lookup."""
        category = campaign.find_category(name)
        if category is None:
            raise NotFound(
                f"Category '{name}' not found in campaign {campaign.campaign_id}",
                {"campaignId": campaign.campaign_id, "category": name},
            )
        return category

    def allocation_delta(self, campaign: Campaign | str) -> Decimal:
        """target_amount - sum(budgets): positive is under-allocated, negative over-allocated."""
        if isinstance(campaign, str):
            campaign = self.get_campaign(campaign)
        return allocation_delta(campaign)

    def list_campaigns(self, org_id: Optional[str] = None) -> list[Campaign]:
        if org_id is None:
            return self.repos.campaigns.list()
        return self.repos.campaigns.list_for_organization(org_id)

    def complete_campaign(self, campaign_id: str) -> Campaign:
        return self._transition(campaign_id, CampaignStatus.COMPLETED)

    def cancel_campaign(self, campaign_id: str) -> Campaign:
        return self._transition(campaign_id, CampaignStatus.CANCELLED)

    def _transition(self, campaign_id: str, target: CampaignStatus) -> Campaign:
        def apply(campaign: Campaign) -> bool:
            if campaign.status != CampaignStatus.ACTIVE:
                raise ValidationError(
                    f"Campaign {campaign_id} is {campaign.status.value}; "
                    f"only active campaigns can become {target.value}",
                    {"campaignId": campaign_id, "status": campaign.status.value},
                )
            campaign.status = target
            campaign.updated_at = utcnow()
            return True

        with campaign_locks.hold(campaign_id):
            campaign = self.repos.campaigns.mutate(campaign_id, apply, self.config.cas_max_attempts)
        logger.info(f"Campaign {campaign_id} -> {target.value}")
        return campaign

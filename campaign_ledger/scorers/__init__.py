"""Compliance and trust scoring."""

from .compliance import (
    CategoryReport,
    allocation_delta,
    average_score,
    average_verification_score,
    campaign_compliance_rate,
    campaign_scores,
    campaign_trust_score,
    category_compliance,
    category_report,
    find_stale_fields,
    organization_trust_score,
    refresh_campaign,
    refresh_donor,
    refresh_organization,
    summarize_campaign,
    utilization_rate,
)

__all__ = [
    "CategoryReport",
    "allocation_delta",
    "average_score",
    "average_verification_score",
    "campaign_compliance_rate",
    "campaign_scores",
    "campaign_trust_score",
    "category_compliance",
    "category_report",
    "find_stale_fields",
    "organization_trust_score",
    "refresh_campaign",
    "refresh_donor",
    "refresh_organization",
    "summarize_campaign",
    "utilization_rate",
]

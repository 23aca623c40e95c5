"""Ledger data model and service request/response schemas."""

from .api import (
    CampaignQuery,
    ComplianceQuery,
    DonationReceipt,
    DonationRequest,
    HistoryQuery,
    WithdrawalReceipt,
    WithdrawalRequest,
)
from .ledger import (
    Campaign,
    CampaignStatus,
    Category,
    Donation,
    DonationRef,
    Donor,
    Organization,
    OrganizationStatus,
    PlanInsights,
    TransactionKind,
    TransactionRecord,
    Withdrawal,
)

__all__ = [
    # Ledger
    "Campaign",
    "CampaignStatus",
    "Category",
    "Donation",
    "DonationRef",
    "Donor",
    "Organization",
    "OrganizationStatus",
    "PlanInsights",
    "TransactionKind",
    "TransactionRecord",
    "Withdrawal",
    # Service bodies
    "CampaignQuery",
    "ComplianceQuery",
    "DonationReceipt",
    "DonationRequest",
    "HistoryQuery",
    "WithdrawalReceipt",
    "WithdrawalRequest",
]

"""
Request and response bodies of the ledger service.

Field names are camelCase on the wire and snake_case in Python.
"""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import HISTORY_TYPES


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")


class DonationRequest(_Body):
    """Donation submission."""

    campaign_id: str = Field(..., alias="campaignId", min_length=1)
    amount: Decimal
    category: str = Field(..., min_length=1)
    donor_id: str = Field(..., alias="donorId", min_length=1)
    transaction_id: Optional[str] = Field(None, alias="transactionId", min_length=1)
    rail_transaction_id: Optional[str] = Field(None, alias="railTransactionId")


class WithdrawalRequest(_Body):
    """Withdrawal submission."""

    campaign_id: str = Field(..., alias="campaignId", min_length=1)
    category: str = Field(..., min_length=1)
    amount: Decimal
    reason: str = Field(..., min_length=1)
    org_id: str = Field(..., alias="orgId", min_length=1)
    transaction_id: Optional[str] = Field(None, alias="transactionId", min_length=1)
    rail_transaction_id: Optional[str] = Field(None, alias="railTransactionId")


class ComplianceQuery(_Body):
    campaign_id: str = Field(..., alias="campaignId", min_length=1)
    category: str = Field(..., min_length=1)


class HistoryQuery(_Body):
    campaign_id: str = Field(..., alias="campaignId", min_length=1)
    type: Literal["donations", "withdrawals", "all"] = "all"

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, value):
        if value is None:
            return "all"
        if isinstance(value, str) and value.lower() in HISTORY_TYPES:
            return value.lower()
        return value


class CampaignQuery(_Body):
    campaign_id: str = Field(..., alias="campaignId", min_length=1)


class DonationReceipt(_Body):
    transaction_id: str = Field(..., alias="transactionId")
    verification_score: float = Field(..., alias="verificationScore", ge=0.0, le=1.0)


class WithdrawalReceipt(_Body):
    transaction_id: str = Field(..., alias="transactionId")
    ai_verification_score: float = Field(..., alias="aiVerificationScore", ge=0.0, le=1.0)

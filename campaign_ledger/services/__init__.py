"""Ledger services: registry, recorders, reconciliation and the request facade."""

from .campaign_registry import CampaignRegistry
from .donation_recorder import DonationRecorder, DonationResult
from .ledger_service import LedgerService
from .reconciliation import PropagationEvent, ReconciliationReport, ReconciliationService
from .withdrawal_processor import WithdrawalProcessor, WithdrawalResult, WithdrawalStage, check_budget

__all__ = [
    "CampaignRegistry",
    "DonationRecorder",
    "DonationResult",
    "LedgerService",
    "PropagationEvent",
    "ReconciliationReport",
    "ReconciliationService",
    "WithdrawalProcessor",
    "WithdrawalResult",
    "WithdrawalStage",
    "check_budget",
]

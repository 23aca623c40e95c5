"""
Global constants for the campaign ledger.

Centralizes policy defaults and magic numbers so they can be tuned in one place.
Runtime overrides go through LedgerConfig (env vars or config/ledger.yaml).
"""

from decimal import Decimal

# Identifier prefixes
ORGANIZATION_ID_PREFIX = "NGO"
DONOR_ID_PREFIX = "USR"
CAMPAIGN_ID_PREFIX = "CMP"
DONATION_ID_PREFIX = "DON"
WITHDRAWAL_ID_PREFIX = "WTH"
ID_RANDOM_LENGTH = 16  # 16 symbols from a 64-char alphabet ~ 96 bits

# Policy thresholds
PLAUSIBILITY_THRESHOLD = 0.6  # Withdrawal reason score below this is rejected
FRAUD_RISK_THRESHOLD = 0.7  # Donation risk above this is blocked for review
MAX_DONATION_AMOUNT = Decimal("1000000")  # Single-transaction anti-abuse ceiling

# Score scales and neutral defaults
TRUST_SCALE_MAX = 100.0  # Donation fraud/trust scores are 0-100
VERIFICATION_SCALE_MAX = 1.0  # Withdrawal AI verification scores are 0-1
NEUTRAL_TRUST_SCORE = 100.0  # Average over no events (0-100 scale)
NEUTRAL_VERIFICATION_SCORE = 1.0  # Average over no events (0-1 scale)
FULL_COMPLIANCE_RATE = 100.0  # Compliance rate with zero withdrawals

# Collaborator fallbacks
FRAUD_FALLBACK_TRUST_SCORE = 50.0  # Trust score recorded when fraud scoring is unavailable
PLAUSIBILITY_FALLBACK_SCORE = 0.0  # Withdrawal outage fails closed
COLLABORATOR_TIMEOUT_SECONDS = 10.0
COLLABORATOR_MAX_WORKERS = 32  # Threads per collaborator; calls past their deadline still hold one
FRAUD_WINDOW_SIZE = 10  # Recent donations sent to the fraud scorer

# Concurrency and propagation
CAS_MAX_ATTEMPTS = 5  # Re-read/re-validate attempts on version conflicts
PROPAGATION_MAX_RETRIES = 3
PROPAGATION_INITIAL_BACKOFF_SECONDS = 0.5  # Doubles each retry: 0.5s, 1s, 2s
PROPAGATION_WORKERS = 4

# Transaction history query types
HISTORY_TYPES = ("donations", "withdrawals", "all")

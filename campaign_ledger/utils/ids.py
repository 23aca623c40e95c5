"""
Identifier generation for organizations, donors, campaigns and transactions.

Ids look like ``DON-V1StGXR8_Z5jdHi6`` - a human-readable prefix for debugging
plus 16 symbols from a URL-safe alphabet drawn from the OS CSPRNG (~96 bits).
They double as cross-system correlation ids and idempotency keys.

Usage:
    from campaign_ledger.utils.ids import new_id

    campaign_id = new_id("CMP")
"""

import re
import secrets

from ..constants import (
    CAMPAIGN_ID_PREFIX,
    DONATION_ID_PREFIX,
    DONOR_ID_PREFIX,
    ID_RANDOM_LENGTH,
    ORGANIZATION_ID_PREFIX,
    WITHDRAWAL_ID_PREFIX,
)

# Same alphabet nanoid uses
ID_ALPHABET = "useandom-26T198340PX75pxJACKVERYMINDBUSHWOLF_GQZbfghjklqvwyzrict"

_PREFIX_PATTERN = re.compile(r"^[A-Z][A-Z0-9]{0,15}$")

LEDGER_ID_PREFIXES = frozenset(
    {ORGANIZATION_ID_PREFIX, DONOR_ID_PREFIX, CAMPAIGN_ID_PREFIX, DONATION_ID_PREFIX, WITHDRAWAL_ID_PREFIX}
)


def new_id(prefix: str, length: int = ID_RANDOM_LENGTH) -> str:
    """
    Generate a prefixed, unguessable identifier.

    Args:
        prefix: Upper-case tag such as "CMP" or "DON"
        length: Number of random symbols

    Returns:
        Identifier string "{prefix}-{random}"
    """
    if not _PREFIX_PATTERN.match(prefix or ""):
        raise ValueError(f"Invalid id prefix: {prefix!r}")
    suffix = "".join(secrets.choice(ID_ALPHABET) for _ in range(length))
    return f"{prefix}-{suffix}"


def id_prefix(identifier: str) -> str:
    """Return the prefix part of an identifier ("" if it has none)."""
    head, sep, _ = (identifier or "").partition("-")
    return head if sep else ""


def has_foreign_prefix(identifier: str, expected: str) -> bool:
    """True when an identifier carries a ledger prefix other than `expected`.

    Ids without a ledger prefix (payment-rail ids, client UUIDs) pass.
    """
    prefix = id_prefix(identifier)
    return prefix in LEDGER_ID_PREFIXES and prefix != expected

"""Campaign ledger and compliance engine for donation transparency."""

__version__ = "0.1.0"

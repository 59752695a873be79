"""StampLedger - credit ledger and timestamp anchoring service."""

__version__ = "0.1.0"

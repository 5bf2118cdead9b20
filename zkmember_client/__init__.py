"""Anonymous group membership client: ledger sync and proof submission."""

__version__ = "0.1.0"
